from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

from payrecon.domain.enums import ProviderName, ReconcileResult
from payrecon.domain.models import Order, Payment
from payrecon.domain.statuses import EventKind
from payrecon.providers.base import (
    STATUS_SUCCEEDED,
    PaymentProvider,
    ProviderPaymentDetail,
    ProviderPaymentSummary,
    normalized_event,
)
from payrecon.providers.factory import get_provider_by_name
from payrecon.repositories.base import LedgerStore

from .reconciler import Reconciler


@dataclass
class ProviderAttempt:
    provider: ProviderName
    summary: ProviderPaymentSummary
    has_order: bool = False


@dataclass
class IncompleteSummary:
    attempts: list[ProviderAttempt] = field(default_factory=list)
    by_status: dict[str, int] = field(default_factory=dict)

    @property
    def without_orders(self) -> int:
        return sum(1 for attempt in self.attempts if not attempt.has_order)


@dataclass
class Inspection:
    detail: ProviderPaymentDetail
    order: Optional[Order]
    payment: Optional[Payment]


@dataclass
class RecoveryResult:
    success: bool
    message: str
    status: str | None = None
    order: Optional[Order] = None
    result: ReconcileResult | None = None


class RecoveryTool:
    """Operator tooling for payments whose webhook never reached us."""

    def __init__(
        self,
        ledger: LedgerStore,
        reconciler: Reconciler,
        providers: Mapping[ProviderName, PaymentProvider],
        default_window: timedelta = timedelta(hours=168),
    ):
        self.ledger = ledger
        self.reconciler = reconciler
        self.providers = providers
        self.default_window = default_window
        self.logger = logging.getLogger(__name__)

    async def _attempts(self, window: timedelta | None, succeeded: bool) -> list[ProviderAttempt]:
        since = datetime.now(timezone.utc) - (window or self.default_window)
        attempts: list[ProviderAttempt] = []
        for name, provider in self.providers.items():
            summaries = await provider.list_recent_payments(since, STATUS_SUCCEEDED if succeeded else None)
            if not succeeded:
                summaries = [s for s in summaries if s.status != STATUS_SUCCEEDED]
            known = await asyncio.to_thread(self.ledger.existing_external_ids, name, [s.id for s in summaries])
            attempts.extend(ProviderAttempt(name, s, has_order=s.id in known) for s in summaries)
        return attempts

    async def find_orphaned_payments(self, window: timedelta | None = None) -> list[ProviderAttempt]:
        """Provider-side successes with no local payment."""
        attempts = await self._attempts(window, succeeded=True)
        orphans = [attempt for attempt in attempts if not attempt.has_order]
        self.logger.info("orphan scan finished", extra={"event": "orphans", "outcome": f"{len(orphans)} found"})
        return orphans

    async def find_incomplete_payments(self, window: timedelta | None = None) -> IncompleteSummary:
        """Provider-side attempts that never succeeded, grouped by provider status."""
        attempts = await self._attempts(window, succeeded=False)
        by_status = Counter(a.summary.raw_status or a.summary.status for a in attempts)
        return IncompleteSummary(attempts=attempts, by_status=dict(by_status))

    async def inspect(self, external_id: str, provider_name: ProviderName | None = None) -> Inspection:
        name, provider = get_provider_by_name(self.providers, provider_name)
        detail = await provider.retrieve_payment(external_id)
        payment = await asyncio.to_thread(self.ledger.get_payment_by_external, name, external_id)
        order = await asyncio.to_thread(self.ledger.get_order, payment.order_id) if payment else None
        return Inspection(detail=detail, order=order, payment=payment)

    async def recover(self, external_id: str, provider_name: ProviderName | None = None) -> RecoveryResult:
        name, provider = get_provider_by_name(self.providers, provider_name)
        existing = await asyncio.to_thread(self.ledger.get_order_by_external_ref, external_id)
        if existing is not None:
            return RecoveryResult(True, "Order already exists", order=existing)

        detail = await provider.retrieve_payment(external_id)
        if detail.status != STATUS_SUCCEEDED:
            return RecoveryResult(
                False,
                f"Payment status is {detail.raw_status or detail.status}, not succeeded",
                status=detail.raw_status or detail.status,
            )

        event = normalized_event(
            name,
            external_payment_id=detail.id,
            kind=EventKind.SUCCEEDED,
            raw_metadata=detail.metadata,
            amount=detail.amount,
            currency=detail.currency,
            charge_id=detail.charge_id,
            raw_timestamp=detail.created_at,
            event_type="recovery",
        )
        outcome = await asyncio.to_thread(self.reconciler.handle_event, event)
        self.logger.info(
            "payment recovered",
            extra={
                "provider": name,
                "external_payment_id": external_id,
                "order_id": outcome.order.id if outcome.order else None,
                "outcome": outcome.result,
            },
        )
        return RecoveryResult(
            True,
            "Order recovered successfully",
            status=detail.raw_status or detail.status,
            order=outcome.order,
            result=outcome.result,
        )
