from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, TypeVar

from payrecon.domain.dtos import EventMetadata
from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import ProviderError
from payrecon.domain.models import NormalizedEvent

T = TypeVar("T")

# Provider-side status reduced to what reconciliation acts on.
STATUS_SUCCEEDED = "succeeded"
STATUS_AUTHORIZED = "authorized"
STATUS_PROCESSING = "processing"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


@dataclass
class CreatePaymentRequest:
    amount: Decimal
    currency: str
    metadata: EventMetadata
    reference: str | None = None
    success_url: str | None = None
    cancel_url: str | None = None


@dataclass
class CreatedPayment:
    provider_payment_id: str
    client_secret: str | None = None
    redirect_url: str | None = None


@dataclass
class ProviderPaymentDetail:
    """Read-only snapshot of a provider payment."""

    id: str
    status: str
    amount: Decimal | None
    currency: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    charge_id: str | None = None
    created_at: datetime | None = None
    raw_status: str | None = None
    raw: dict[str, Any] | None = None


@dataclass
class ProviderPaymentSummary:
    id: str
    status: str
    amount: Decimal | None
    currency: str | None
    created_at: datetime | None = None
    customer_email: str | None = None
    raw_status: str | None = None


@dataclass
class ProviderRefundResult:
    """Normalized result for provider refund attempts."""

    refund_id: str | None
    status: str
    amount: Decimal
    payload: dict[str, Any] | None = None


@dataclass
class CaptureResult:
    status: str
    amount: Decimal | None = None
    charge_id: str | None = None


class PaymentProvider(ABC):
    """Abstract payment provider.

    Implementations never touch the ledger. Network failures surface as
    ``ProviderError`` with ``retryable`` set for timeouts, connection
    problems, rate limits and provider 5xx responses.
    """

    name: ProviderName
    timeout_seconds: float = 15.0

    async def _bounded(self, call: Awaitable[T], operation: str) -> T:
        """Await ``call`` under the configured timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ProviderError(
                "timeout",
                f"{self.name.value} {operation} timed out after {self.timeout_seconds}s",
                retryable=True,
                provider=self.name.value,
            ) from exc

    @abstractmethod
    async def create_payment(self, request: CreatePaymentRequest) -> CreatedPayment:
        """Create a payment at the provider; no local side effect."""

    @abstractmethod
    async def retrieve_payment(self, external_id: str) -> ProviderPaymentDetail:
        """Fetch current provider state for ``external_id``."""

    @abstractmethod
    async def capture_payment(
        self, external_id: str, amount: Decimal | None = None, currency: str | None = None
    ) -> CaptureResult:
        """Capture an authorized payment, fully when ``amount`` is None."""

    @abstractmethod
    async def refund_payment(
        self,
        external_id: str,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
        currency: str | None = None,
    ) -> ProviderRefundResult:
        """Issue a refund of ``amount`` in major currency units."""

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature_header: str | None, secret: str) -> NormalizedEvent:
        """Authenticate a webhook delivery and normalize it.

        Raises ``SignatureError`` when the signature does not match. Returns
        an event with ``kind=None`` for event types that are not acted on.
        """

    @abstractmethod
    async def list_recent_payments(
        self, since: datetime, status_filter: str | None = None
    ) -> list[ProviderPaymentSummary]:
        """Payments created at the provider since ``since``."""


def normalized_event(
    provider: ProviderName,
    *,
    external_payment_id: str | None,
    kind: Any,
    raw_metadata: dict[str, Any] | None = None,
    **fields: Any,
) -> NormalizedEvent:
    """Build a ``NormalizedEvent`` validating metadata into the closed struct."""
    metadata, error = EventMetadata.parse(raw_metadata) if raw_metadata is not None else (None, None)
    return NormalizedEvent(
        provider=provider,
        external_payment_id=external_payment_id,
        kind=kind,
        metadata=metadata,
        metadata_error=error,
        **fields,
    )
