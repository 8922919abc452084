from __future__ import annotations

import logging
from decimal import Decimal

from payrecon.domain.enums import CaptureState, ReconcileResult
from payrecon.domain.errors import (
    ConcurrentCreationDetected,
    InvalidAmount,
    InvalidMetadata,
    InvalidState,
    NotFound,
)
from payrecon.domain.models import (
    Customer,
    MaterializationDraft,
    NormalizedEvent,
    Order,
    OrderItem,
    Payment,
    REFUND_RESERVED,
    ReconcileOutcome,
    RefundRecord,
)
from payrecon.domain.statuses import EventKind, OrderStatus, PaymentStatus
from payrecon.repositories.base import LedgerStore, RefundTotals, TransitionPlan, TransitionResult
from payrecon.utils.money import ZERO, to_money


class Reconciler:
    """Turns normalized provider events into ledger state.

    This is the only component that creates orders. Webhook ingress,
    checkout confirmation and recovery all go through ``handle_event``; the
    refund/capture orchestrator goes through ``reserve_refund``,
    ``release_refund``, ``apply_refund`` and ``apply_capture``. Calls are
    synchronous and meant to run in a worker thread.
    """

    def __init__(self, ledger: LedgerStore, default_currency: str = "AED"):
        self.ledger = ledger
        self.default_currency = default_currency
        self.logger = logging.getLogger(__name__)

    def handle_event(self, event: NormalizedEvent, *, materialize_authorized: bool = False) -> ReconcileOutcome:
        log_extra = {
            "provider": event.provider,
            "external_payment_id": event.external_payment_id,
            "kind": event.kind,
            "event_id": event.event_id,
        }
        if event.kind is None:
            self.logger.info("event type not handled", extra={**log_extra, "event": event.event_type})
            return ReconcileOutcome(ReconcileResult.IGNORED, detail=f"unhandled event type {event.event_type}")

        payment = self._lookup(event)
        if payment is not None:
            return self._update(payment, event)

        creates = event.kind == EventKind.SUCCEEDED or (
            materialize_authorized and event.kind == EventKind.AUTHORIZED
        )
        if not creates or not event.external_payment_id:
            self.logger.info("event for unknown payment discarded", extra={**log_extra, "outcome": "discarded"})
            return ReconcileOutcome(ReconcileResult.DISCARDED, detail="no local payment for event")

        draft = self._draft(event)
        try:
            order, payment = self.ledger.materialize(draft)
        except ConcurrentCreationDetected:
            self.logger.info("concurrent materialization; applying as update", extra=log_extra)
            payment = self.ledger.get_payment_by_external(event.provider, event.external_payment_id)
            if payment is None:
                raise
            return self._update(payment, event)
        self.logger.info(
            "order materialized",
            extra={
                **log_extra,
                "order_id": order.id,
                "payment_id": payment.id,
                "status": payment.status,
                "order_status": order.status,
                "amount": payment.amount,
                "outcome": "created",
            },
        )
        return ReconcileOutcome(ReconcileResult.CREATED, order=order, payment=payment)

    def apply_capture(
        self, payment: Payment, charge_id: str | None = None, amount: Decimal | None = None
    ) -> ReconcileOutcome:
        """Record a successful provider capture as a SUCCEEDED transition.

        ``amount`` is what the provider actually captured; a partial capture
        lowers the payment amount to it.
        """
        event = NormalizedEvent(
            provider=payment.provider,
            external_payment_id=payment.external_payment_id,
            kind=EventKind.SUCCEEDED,
            amount=amount if amount is not None else payment.amount,
            currency=payment.currency,
            charge_id=charge_id,
            event_type="capture",
        )
        return self._update(payment, event)

    def reserve_refund(
        self,
        payment_id: int,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> TransitionResult:
        """Hold back ``amount`` on the payment before the provider is asked to refund it.

        The bounds check runs under the payment lock and counts other
        in-flight reservations, so concurrent requests can never together
        exceed the refundable amount.
        """

        def decide(payment: Payment, order: Order, totals: RefundTotals) -> TransitionPlan:
            committed = max(payment.refunded_amount, totals.settled) + totals.reserved
            available = max(payment.amount - committed, ZERO)
            if amount <= ZERO or amount > available:
                raise InvalidAmount(
                    f"refund amount must be greater than 0 and at most {available} {payment.currency}"
                )
            if not payment.status.is_settled:
                raise InvalidState(f"payment {payment.id} cannot be refunded in status {payment.status.value}")
            return TransitionPlan(
                refund=RefundRecord(
                    payment_id=payment_id,
                    provider=payment.provider,
                    amount=amount,
                    status=REFUND_RESERVED,
                    reason=reason,
                    idempotency_key=idempotency_key,
                )
            )

        result = self.ledger.transition(payment_id, decide)
        self.logger.info(
            "refund reserved",
            extra={
                "payment_id": payment_id,
                "amount": amount,
                "idempotency_key": idempotency_key,
                "refunded_amount": result.payment.refunded_amount,
            },
        )
        return result

    def release_refund(self, payment_id: int, refund_id: int) -> None:
        """Drop a reservation whose provider refund did not go through."""
        self.ledger.transition(payment_id, lambda p, o, t: TransitionPlan(release_refund_id=refund_id))
        self.logger.info("refund reservation released", extra={"payment_id": payment_id, "refund_id": refund_id})

    def apply_refund(self, payment_id: int, refund: RefundRecord) -> TransitionResult:
        """Record a completed provider refund and raise ``refunded_amount``.

        A ``refund`` carrying an id settles that reservation; one without is
        appended. The new total is the larger of the stored amount (which a
        webhook may already have raised) and the sum of settled refunds
        including this one.
        """

        def decide(payment: Payment, order: Order, totals: RefundTotals) -> TransitionPlan:
            refunded = min(max(payment.refunded_amount, totals.settled + refund.amount), payment.amount)
            if refund.id is None:
                plan = TransitionPlan(refund=refund, refunded_amount=refunded)
            else:
                plan = TransitionPlan(settle_refund=refund, refunded_amount=refunded)
            if payment.status.is_settled:
                plan.payment_status = self._refund_status(payment, refunded)
                if refunded == payment.amount and order.status.can_become(OrderStatus.REFUNDED):
                    plan.order_status = OrderStatus.REFUNDED
            return plan

        result = self.ledger.transition(payment_id, decide)
        self.logger.info(
            "refund applied",
            extra={
                "payment_id": payment_id,
                "order_id": result.order.id,
                "amount": refund.amount,
                "refunded_amount": result.payment.refunded_amount,
                "status": result.payment.status,
                "order_status": result.order.status,
                "refund_id": refund.provider_refund_id,
            },
        )
        return result

    def _lookup(self, event: NormalizedEvent) -> Payment | None:
        payment = None
        if event.external_payment_id:
            payment = self.ledger.get_payment_by_external(event.provider, event.external_payment_id)
        if payment is None and event.charge_id:
            payment = self.ledger.get_payment_by_charge(event.provider, event.charge_id)
        return payment

    def _update(self, payment: Payment, event: NormalizedEvent) -> ReconcileOutcome:
        if payment.id is None:
            raise NotFound(f"payment {payment.external_payment_id} has not been stored")
        result = self.ledger.transition(payment.id, lambda p, o, t: self._plan(p, o, event))
        outcome = ReconcileResult.UPDATED if result.changed else ReconcileResult.UNCHANGED
        self.logger.info(
            "payment reconciled",
            extra={
                "provider": event.provider,
                "external_payment_id": payment.external_payment_id,
                "kind": event.kind,
                "event_id": event.event_id,
                "payment_id": result.payment.id,
                "order_id": result.order.id,
                "status": result.payment.status,
                "order_status": result.order.status,
                "outcome": outcome,
            },
        )
        return ReconcileOutcome(outcome, order=result.order, payment=result.payment)

    def _plan(self, payment: Payment, order: Order, event: NormalizedEvent) -> TransitionPlan | None:
        kind = event.kind
        if kind == EventKind.CREATED:
            return None
        if kind == EventKind.AUTHORIZED:
            return self._plan_authorized(payment, order)
        if kind == EventKind.SUCCEEDED:
            return self._plan_succeeded(payment, order, event)
        if kind in (EventKind.FAILED, EventKind.CANCELLED):
            return self._plan_failed(payment, order, event)
        if kind == EventKind.REFUNDED:
            return self._plan_refunded(payment, order, event)
        if kind == EventKind.DISPUTED:
            return self._plan_disputed(payment, order)
        return None

    def _plan_authorized(self, payment: Payment, order: Order) -> TransitionPlan | None:
        if payment.status != PaymentStatus.PROCESSING:
            self._stale(payment, EventKind.AUTHORIZED)
            return None
        plan = TransitionPlan()
        if payment.provider_metadata.get("capture_state") != CaptureState.AUTHORIZED.value:
            plan.metadata["capture_state"] = CaptureState.AUTHORIZED.value
        if order.status.can_become(OrderStatus.PROCESSING):
            plan.order_status = OrderStatus.PROCESSING
        return plan

    def _plan_succeeded(self, payment: Payment, order: Order, event: NormalizedEvent) -> TransitionPlan | None:
        if payment.status == PaymentStatus.PROCESSING:
            plan = TransitionPlan(payment_status=PaymentStatus.SUCCEEDED, charge_id=event.charge_id)
            if payment.provider_metadata.get("capture_state") == CaptureState.AUTHORIZED.value:
                plan.metadata["capture_state"] = CaptureState.CAPTURED.value
                captured = to_money(event.amount)
                # Partial capture: only the captured part was ever charged
                if captured is not None and ZERO < captured < payment.amount:
                    plan.amount = captured
            if order.status.can_become(OrderStatus.PROCESSING):
                plan.order_status = OrderStatus.PROCESSING
            return plan
        if payment.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            # Terminal locally; a late success needs manual review, not an order flip.
            self.logger.warning(
                "success for terminal payment ignored",
                extra={
                    "payment_id": payment.id,
                    "external_payment_id": payment.external_payment_id,
                    "status": payment.status,
                    "reason": payment.failure_reason,
                },
            )
            return None
        if event.charge_id and not payment.external_charge_id:
            return TransitionPlan(charge_id=event.charge_id)
        return None

    def _plan_failed(self, payment: Payment, order: Order, event: NormalizedEvent) -> TransitionPlan | None:
        if payment.status != PaymentStatus.PROCESSING:
            self._stale(payment, event.kind)
            return None
        status = PaymentStatus.FAILED if event.kind == EventKind.FAILED else PaymentStatus.CANCELLED
        plan = TransitionPlan(payment_status=status, failure_reason=event.failure_reason)
        if order.status.can_become(OrderStatus.CANCELLED):
            plan.order_status = OrderStatus.CANCELLED
        return plan

    def _plan_refunded(self, payment: Payment, order: Order, event: NormalizedEvent) -> TransitionPlan | None:
        if not payment.status.is_settled:
            self._stale(payment, EventKind.REFUNDED)
            return None
        # Providers report the cumulative refunded total, so this is a high-water mark.
        reported = to_money(event.amount) if event.amount is not None else payment.amount
        refunded = min(max(payment.refunded_amount, reported), payment.amount)
        if refunded == payment.refunded_amount:
            return None
        plan = TransitionPlan(
            refunded_amount=refunded,
            payment_status=self._refund_status(payment, refunded),
            charge_id=event.charge_id if not payment.external_charge_id else None,
        )
        if refunded == payment.amount and order.status.can_become(OrderStatus.REFUNDED):
            plan.order_status = OrderStatus.REFUNDED
        return plan

    def _plan_disputed(self, payment: Payment, order: Order) -> TransitionPlan | None:
        # Disputes are treated as failures and cancel the order where it has not shipped.
        if payment.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            return None
        plan = TransitionPlan(payment_status=PaymentStatus.FAILED, failure_reason="disputed")
        if order.status.can_become(OrderStatus.CANCELLED):
            plan.order_status = OrderStatus.CANCELLED
        return plan

    @staticmethod
    def _refund_status(payment: Payment, refunded: Decimal) -> PaymentStatus:
        if refunded >= payment.amount:
            return PaymentStatus.REFUNDED
        if refunded > ZERO:
            return PaymentStatus.PARTIALLY_REFUNDED
        return payment.status

    def _stale(self, payment: Payment, kind: EventKind | None) -> None:
        self.logger.info(
            "stale or disallowed transition ignored",
            extra={
                "payment_id": payment.id,
                "external_payment_id": payment.external_payment_id,
                "status": payment.status,
                "kind": kind,
            },
        )

    def _draft(self, event: NormalizedEvent) -> MaterializationDraft:
        meta = event.metadata
        if meta is None:
            raise InvalidMetadata(event.metadata_error or "metadata missing")
        total = to_money(event.amount) if event.amount is not None else to_money(meta.total)
        if total is None:
            raise InvalidMetadata("payment amount missing")
        items = [
            OrderItem(
                product_ref=item.product_ref,
                name=item.name or item.product_ref,
                quantity=item.quantity,
                unit_price=to_money(item.unit_price),
                variation_ref=item.variation_ref,
            )
            for item in meta.items
        ] or [OrderItem(product_ref="order-total", name="Order total", quantity=1, unit_price=total)]

        authorized_only = event.kind == EventKind.AUTHORIZED
        customer = Customer(
            email=meta.customer_email,
            name=meta.customer_name,
            phone=meta.customer_phone,
            city=meta.shipping_city,
            address=meta.shipping_address,
        )
        order = Order(
            customer_name=meta.customer_name,
            customer_email=meta.customer_email,
            customer_phone=meta.customer_phone,
            shipping_city=meta.shipping_city,
            shipping_address=meta.shipping_address,
            total=total,
            subtotal=to_money(meta.subtotal, default=total),
            tax=to_money(meta.tax, default=ZERO),
            shipping_cost=to_money(meta.shipping_cost, default=ZERO),
            discount=to_money(meta.discount, default=ZERO),
            status=OrderStatus.NEW if authorized_only else OrderStatus.PROCESSING,
            external_payment_ref=event.external_payment_id,
            payment_provider=event.provider,
            items=items,
        )
        payment = Payment(
            provider=event.provider,
            external_payment_id=event.external_payment_id or "",
            amount=total,
            currency=(event.currency or self.default_currency).upper(),
            status=PaymentStatus.PROCESSING if authorized_only else PaymentStatus.SUCCEEDED,
            external_charge_id=event.charge_id,
            provider_metadata={"capture_state": CaptureState.AUTHORIZED.value} if authorized_only else {},
        )
        return MaterializationDraft(customer=customer, order=order, payment=payment)

    def require_capturable(self, payment: Payment) -> None:
        if (
            payment.status != PaymentStatus.PROCESSING
            or payment.provider_metadata.get("capture_state") != CaptureState.AUTHORIZED.value
        ):
            raise InvalidState(f"payment {payment.id} is not awaiting capture (status {payment.status.value})")
