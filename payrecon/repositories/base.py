from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterable

from payrecon.domain.enums import ProviderName
from payrecon.domain.models import MaterializationDraft, Order, Payment, RefundRecord
from payrecon.domain.statuses import OrderStatus, PaymentStatus


@dataclass
class TransitionPlan:
    """Changes to apply to a payment and its order in one transaction.

    ``None`` fields are left untouched; ``metadata`` is merged into
    ``provider_metadata``; ``refund`` is appended to the refund history,
    ``settle_refund`` overwrites the stored row with the same id and
    ``release_refund_id`` drops a reserved row.
    """

    payment_status: PaymentStatus | None = None
    amount: Decimal | None = None
    order_status: OrderStatus | None = None
    failure_reason: str | None = None
    charge_id: str | None = None
    refunded_amount: Decimal | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    refund: RefundRecord | None = None
    settle_refund: RefundRecord | None = None
    release_refund_id: int | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.payment_status is None
            and self.order_status is None
            and self.failure_reason is None
            and self.charge_id is None
            and self.refunded_amount is None
            and not self.metadata
            and self.amount is None
            and self.refund is None
            and self.settle_refund is None
            and self.release_refund_id is None
        )


@dataclass
class RefundTotals:
    """Sums over a payment's refund rows, read under the same lock as the payment."""

    settled: Decimal = Decimal("0.00")
    reserved: Decimal = Decimal("0.00")


# Called with the locked current payment, order and refund totals; returns None for a no-op.
Decider = Callable[[Payment, Order, RefundTotals], "TransitionPlan | None"]


@dataclass
class TransitionResult:
    order: Order
    payment: Payment
    changed: bool
    refund: RefundRecord | None = None


class LedgerStore(ABC):
    """Persistence for orders, payments and their relationship.

    Reads are transaction-free. ``materialize`` and ``transition`` each run in
    exactly one transaction and are the only write paths for orders/payments.
    """

    @abstractmethod
    def get_payment(self, payment_id: int) -> Payment | None:
        ...

    @abstractmethod
    def get_payment_by_external(self, provider: ProviderName, external_payment_id: str) -> Payment | None:
        ...

    @abstractmethod
    def get_payment_by_charge(self, provider: ProviderName, charge_id: str) -> Payment | None:
        ...

    @abstractmethod
    def get_order(self, order_id: int) -> Order | None:
        ...

    @abstractmethod
    def get_order_by_external_ref(self, external_payment_ref: str) -> Order | None:
        ...

    @abstractmethod
    def existing_external_ids(self, provider: ProviderName, external_ids: Iterable[str]) -> set[str]:
        """Subset of ``external_ids`` that already have a local payment."""

    @abstractmethod
    def materialize(self, draft: MaterializationDraft) -> tuple[Order, Payment]:
        """Create customer (if new), order, items and payment atomically.

        Raises ``ConcurrentCreationDetected`` when a payment or order for the
        draft's external id already exists, whether found by the in-transaction
        re-check or by the unique constraint.
        """

    @abstractmethod
    def transition(self, payment_id: int, decide: Decider) -> TransitionResult:
        """Lock the payment and its order, ask ``decide`` for a plan, apply it.

        ``decide`` also receives the payment's refund totals, computed inside
        the same transaction.

        Exceptions raised by ``decide`` abort the transaction unchanged.
        """

    @abstractmethod
    def get_refund_by_idempotency_key(self, idempotency_key: str) -> RefundRecord | None:
        ...

    @abstractmethod
    def list_refunds(self, payment_id: int) -> list[RefundRecord]:
        ...

    @abstractmethod
    def record_webhook(
        self,
        *,
        provider: ProviderName,
        event_id: str | None,
        event_type: str | None,
        external_payment_id: str | None,
        outcome: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        ...

    @abstractmethod
    def status_counts(self) -> dict[str, dict[str, int]]:
        """Counts of payments and orders grouped by status."""
