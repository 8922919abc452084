from __future__ import annotations

import copy
import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import ConcurrentCreationDetected, NotFound
from payrecon.domain.models import REFUND_RESERVED, Customer, MaterializationDraft, Order, Payment, RefundRecord

from .base import Decider, LedgerStore, RefundTotals, TransitionResult


class InMemoryLedgerStore(LedgerStore):
    """Process-local ledger used when no database is configured and in tests.

    A re-entrant lock plays the role of the database transaction and the
    dict indexes play the role of the unique constraints. Objects are copied
    in and out so callers never hold live references to stored rows.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.customers: Dict[int, Customer] = {}
        self.orders: Dict[int, Order] = {}
        self.payments: Dict[int, Payment] = {}
        self.refunds: Dict[int, RefundRecord] = {}
        self.webhooks: Dict[tuple[str, str], dict[str, Any]] = {}
        self.by_email: Dict[str, int] = {}
        self.by_external: Dict[tuple[str, str], int] = {}
        self.by_order_ref: Dict[str, int] = {}
        self.by_refund_key: Dict[str, int] = {}

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _next_id(table: Dict[int, Any]) -> int:
        return max(table.keys(), default=0) + 1

    def get_payment(self, payment_id: int) -> Optional[Payment]:
        with self._lock:
            payment = self.payments.get(payment_id)
            return copy.deepcopy(payment)

    def get_payment_by_external(self, provider: ProviderName, external_payment_id: str) -> Optional[Payment]:
        with self._lock:
            payment_id = self.by_external.get((ProviderName(provider).value, external_payment_id))
            return self.get_payment(payment_id) if payment_id else None

    def get_payment_by_charge(self, provider: ProviderName, charge_id: str) -> Optional[Payment]:
        with self._lock:
            for payment in self.payments.values():
                if payment.provider == provider and payment.external_charge_id == charge_id:
                    return copy.deepcopy(payment)
        return None

    def get_order(self, order_id: int) -> Optional[Order]:
        with self._lock:
            return copy.deepcopy(self.orders.get(order_id))

    def get_order_by_external_ref(self, external_payment_ref: str) -> Optional[Order]:
        with self._lock:
            order_id = self.by_order_ref.get(external_payment_ref)
            return self.get_order(order_id) if order_id else None

    def existing_external_ids(self, provider: ProviderName, external_ids: Iterable[str]) -> set[str]:
        key = ProviderName(provider).value
        with self._lock:
            return {ext for ext in external_ids if (key, ext) in self.by_external}

    def materialize(self, draft: MaterializationDraft) -> tuple[Order, Payment]:
        payment = copy.deepcopy(draft.payment)
        order = copy.deepcopy(draft.order)
        key = (ProviderName(payment.provider).value, payment.external_payment_id)
        with self._lock:
            if key in self.by_external or payment.external_payment_id in self.by_order_ref:
                raise ConcurrentCreationDetected(key[0], key[1])
            now = self._now()

            email = draft.customer.email.lower()
            customer_id = self.by_email.get(email)
            if customer_id is None:
                customer = copy.deepcopy(draft.customer)
                customer.id = self._next_id(self.customers)
                self.customers[customer.id] = customer
                self.by_email[email] = customer.id
                customer_id = customer.id

            order.id = self._next_id(self.orders)
            order.customer_id = customer_id
            order.external_payment_ref = payment.external_payment_id
            order.created_at = order.updated_at = now
            payment.id = self._next_id(self.payments)
            payment.order_id = order.id
            payment.created_at = payment.updated_at = now

            self.orders[order.id] = order
            self.payments[payment.id] = payment
            self.by_external[key] = payment.id
            self.by_order_ref[payment.external_payment_id] = order.id
            return copy.deepcopy(order), copy.deepcopy(payment)

    def _refund_totals(self, payment_id: int) -> RefundTotals:
        totals = RefundTotals()
        for refund in self.refunds.values():
            if refund.payment_id != payment_id:
                continue
            if refund.status == REFUND_RESERVED:
                totals.reserved += refund.amount
            else:
                totals.settled += refund.amount
        return totals

    def transition(self, payment_id: int, decide: Decider) -> TransitionResult:
        with self._lock:
            stored_payment = self.payments.get(payment_id)
            if stored_payment is None or stored_payment.order_id not in self.orders:
                raise NotFound(f"payment {payment_id} not found")
            stored_order = self.orders[stored_payment.order_id]
            plan = decide(
                copy.deepcopy(stored_payment), copy.deepcopy(stored_order), self._refund_totals(payment_id)
            )
            if plan is None or plan.is_empty:
                return TransitionResult(copy.deepcopy(stored_order), copy.deepcopy(stored_payment), changed=False)

            # Work on copies so a failure below leaves the stored rows untouched
            payment = copy.deepcopy(stored_payment)
            order = copy.deepcopy(stored_order)
            refund: RefundRecord | None = None
            now = self._now()
            if plan.refund is not None:
                refund = copy.deepcopy(plan.refund)
                key = refund.idempotency_key
                if key and key in self.by_refund_key:
                    raise ConcurrentCreationDetected("refund", key)
                refund.id = self._next_id(self.refunds)
                refund.payment_id = payment_id
                refund.created_at = now
            if plan.settle_refund is not None:
                stored_refund = self.refunds.get(plan.settle_refund.id or 0)
                if stored_refund is None or stored_refund.payment_id != payment_id:
                    raise NotFound(f"refund {plan.settle_refund.id} not found")
                refund = copy.deepcopy(stored_refund)
                refund.status = plan.settle_refund.status
                refund.amount = plan.settle_refund.amount
                refund.provider_refund_id = plan.settle_refund.provider_refund_id
            if plan.release_refund_id is not None:
                released = self.refunds.get(plan.release_refund_id)
                if released is None or released.payment_id != payment_id or released.status != REFUND_RESERVED:
                    raise NotFound(f"reserved refund {plan.release_refund_id} not found")
            if plan.payment_status is not None:
                payment.status = plan.payment_status
            if plan.amount is not None:
                payment.amount = plan.amount
            if plan.failure_reason is not None:
                payment.failure_reason = plan.failure_reason
            if plan.charge_id is not None:
                payment.external_charge_id = plan.charge_id
            if plan.refunded_amount is not None:
                payment.refunded_amount = plan.refunded_amount
            if payment.refunded_amount > payment.amount:
                raise ValueError("refunded_amount cannot exceed amount")
            if plan.metadata:
                payment.provider_metadata.update(plan.metadata)
            payment.updated_at = now
            if plan.order_status is not None:
                order.status = plan.order_status
                order.updated_at = now

            self.payments[payment_id] = payment
            self.orders[order.id] = order
            if refund is not None:
                self.refunds[refund.id] = refund
                if refund.idempotency_key:
                    self.by_refund_key[refund.idempotency_key] = refund.id
            if plan.release_refund_id is not None:
                released = self.refunds.pop(plan.release_refund_id)
                if released.idempotency_key:
                    self.by_refund_key.pop(released.idempotency_key, None)
            return TransitionResult(
                copy.deepcopy(order), copy.deepcopy(payment), changed=True, refund=copy.deepcopy(refund)
            )

    def get_refund_by_idempotency_key(self, idempotency_key: str) -> Optional[RefundRecord]:
        with self._lock:
            refund_id = self.by_refund_key.get(idempotency_key)
            return copy.deepcopy(self.refunds.get(refund_id)) if refund_id else None

    def list_refunds(self, payment_id: int) -> list[RefundRecord]:
        with self._lock:
            return [copy.deepcopy(r) for r in self.refunds.values() if r.payment_id == payment_id]

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
        if not event_id:
            return
        key = (ProviderName(provider).value, event_id)
        with self._lock:
            self.webhooks.setdefault(
                key,
                {
                    "event_type": event_type,
                    "external_payment_id": external_payment_id,
                    "outcome": outcome,
                    "payload": payload or {},
                    "received_at": self._now(),
                },
            )

    def status_counts(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {
                "payments": dict(Counter(p.status.value for p in self.payments.values())),
                "orders": dict(Counter(o.status.value for o in self.orders.values())),
            }
