from __future__ import annotations

import json
import pathlib
import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from payrecon.config import Settings
from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import ProviderError, SignatureError
from payrecon.domain.models import NormalizedEvent
from payrecon.domain.statuses import EventKind
from payrecon.main import create_app
from payrecon.providers.base import (
    STATUS_PROCESSING,
    STATUS_SUCCEEDED,
    CaptureResult,
    CreatedPayment,
    CreatePaymentRequest,
    PaymentProvider,
    ProviderPaymentDetail,
    ProviderPaymentSummary,
    ProviderRefundResult,
    normalized_event,
)
from payrecon.repositories.memory_store import InMemoryLedgerStore
from payrecon.services.reconciler import Reconciler

METADATA: dict[str, str] = {
    "customerName": "Aisha Khan",
    "customerEmail": "Aisha.Khan@Example.com",
    "customerPhone": "+971500000000",
    "shippingCity": "Dubai",
    "shippingAddress": "12 Marina Walk",
    "subtotal": "90.00",
    "tax": "4.50",
    "shippingCost": "5.50",
    "total": "100.00",
    "orderItems": json.dumps(
        [
            {"id": "beans-250", "name": "House Beans 250g", "price": "40.00", "quantity": 2},
            {"id": "filter-v60", "name": "V60 Filters", "price": "10.00", "quantity": 1},
        ]
    ),
}


class FakeProvider(PaymentProvider):
    """In-test provider keeping payments in a dict and recording calls."""

    def __init__(self, name: ProviderName = ProviderName.STRIPE):
        self.name = name
        self.payments: dict[str, ProviderPaymentDetail] = {}
        self.refund_calls: list[dict[str, Any]] = []
        self.capture_calls: list[dict[str, Any]] = []
        self.created: list[CreatePaymentRequest] = []
        self.refund_error: ProviderError | None = None

    def add_payment(
        self,
        payment_id: str,
        status: str = STATUS_SUCCEEDED,
        amount: Decimal = Decimal("100.00"),
        metadata: dict[str, Any] | None = None,
        raw_status: str | None = None,
    ) -> ProviderPaymentDetail:
        detail = ProviderPaymentDetail(
            id=payment_id,
            status=status,
            raw_status=raw_status or status,
            amount=amount,
            currency="AED",
            metadata=dict(METADATA if metadata is None else metadata),
            charge_id=f"ch_{payment_id}",
            created_at=datetime.now(timezone.utc),
        )
        self.payments[payment_id] = detail
        return detail

    async def create_payment(self, request: CreatePaymentRequest) -> CreatedPayment:
        self.created.append(request)
        payment_id = f"pi_fake_{len(self.created)}"
        self.add_payment(
            payment_id,
            status=STATUS_PROCESSING,
            amount=request.amount,
            metadata=request.metadata.to_provider_metadata(),
        )
        return CreatedPayment(provider_payment_id=payment_id, client_secret=f"{payment_id}_secret")

    async def retrieve_payment(self, external_id: str) -> ProviderPaymentDetail:
        if external_id not in self.payments:
            raise ProviderError("resource_missing", f"No such payment: {external_id}", provider=self.name.value)
        return self.payments[external_id]

    async def capture_payment(
        self, external_id: str, amount: Decimal | None = None, currency: str | None = None
    ) -> CaptureResult:
        self.capture_calls.append({"external_id": external_id, "amount": amount})
        self.payments[external_id].status = STATUS_SUCCEEDED
        return CaptureResult(status=STATUS_SUCCEEDED, amount=amount, charge_id=f"ch_{external_id}")

    async def refund_payment(
        self,
        external_id: str,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
        currency: str | None = None,
    ) -> ProviderRefundResult:
        self.refund_calls.append(
            {"external_id": external_id, "amount": amount, "reason": reason, "idempotency_key": idempotency_key}
        )
        if self.refund_error is not None:
            raise self.refund_error
        return ProviderRefundResult(refund_id=f"re_{len(self.refund_calls)}", status="succeeded", amount=amount)

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str | None, secret: str) -> NormalizedEvent:
        if signature_header != secret:
            raise SignatureError("bad signature")
        body = json.loads(raw_body)
        return normalized_event(
            self.name,
            external_payment_id=body.get("id"),
            kind=EventKind(body["kind"]) if body.get("kind") else None,
            raw_metadata=body.get("metadata"),
            amount=Decimal(body["amount"]) if body.get("amount") else None,
            event_id=body.get("event_id"),
            event_type=body.get("type"),
        )

    async def list_recent_payments(
        self, since: datetime, status_filter: str | None = None
    ) -> list[ProviderPaymentSummary]:
        return [
            ProviderPaymentSummary(
                id=detail.id,
                status=detail.status,
                raw_status=detail.raw_status,
                amount=detail.amount,
                currency=detail.currency,
                created_at=detail.created_at,
                customer_email=detail.metadata.get("customerEmail"),
            )
            for detail in self.payments.values()
            if not status_filter or detail.status == status_filter
        ]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_bearer_token="testtoken",
        admin_bearer_token="admintoken",
        api_basic_username="docs",
        api_basic_password="docs",
        stripe_secret_key="",
        stripe_webhook_secret="whsec_test",
        tabby_secret_key="",
        tabby_webhook_secret="tabby_test",
        db_host="",
    )


@pytest.fixture
def ledger() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def reconciler(ledger: InMemoryLedgerStore) -> Reconciler:
    return Reconciler(ledger)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def client(settings: Settings, ledger: InMemoryLedgerStore, fake_provider: FakeProvider) -> TestClient:
    app = create_app(settings, ledger=ledger, providers={ProviderName.STRIPE: fake_provider})
    return TestClient(app)


@pytest.fixture
def admin_headers(settings: Settings) -> dict[str, str]:
    return {"Authorization": f"Bearer {settings.admin_bearer_token}"}


@pytest.fixture
def storefront_headers(settings: Settings) -> dict[str, str]:
    return {"Authorization": f"Bearer {settings.api_bearer_token}"}


@pytest.fixture
def make_event() -> Callable[..., NormalizedEvent]:
    def _make(
        kind: EventKind | None = EventKind.SUCCEEDED,
        external_payment_id: str | None = "pi_123",
        amount: str | None = "100.00",
        metadata: dict[str, Any] | None = None,
        **fields: Any,
    ) -> NormalizedEvent:
        return normalized_event(
            fields.pop("provider", ProviderName.STRIPE),
            external_payment_id=external_payment_id,
            kind=kind,
            raw_metadata=dict(METADATA if metadata is None else metadata),
            amount=Decimal(amount) if amount is not None else None,
            currency=fields.pop("currency", "AED"),
            **fields,
        )

    return _make
