from __future__ import annotations

import threading
from collections import Counter
from decimal import Decimal

import pytest

from payrecon.domain.enums import ReconcileResult
from payrecon.domain.errors import InvalidMetadata
from payrecon.domain.statuses import EventKind, OrderStatus, PaymentStatus


def test_success_materializes_order_and_payment(reconciler, ledger, make_event) -> None:
    outcome = reconciler.handle_event(make_event())

    assert outcome.result == ReconcileResult.CREATED
    assert outcome.order.status == OrderStatus.PROCESSING
    assert outcome.order.external_payment_ref == "pi_123"
    assert outcome.order.customer_email == "aisha.khan@example.com"
    assert outcome.order.total == Decimal("100.00")
    assert outcome.order.tax == Decimal("4.50")
    assert [item.product_ref for item in outcome.order.items] == ["beans-250", "filter-v60"]
    assert outcome.payment.status == PaymentStatus.SUCCEEDED
    assert outcome.payment.order_id == outcome.order.id
    assert outcome.payment.refunded_amount == Decimal("0.00")
    assert len(ledger.customers) == 1


def test_missing_items_fall_back_to_single_total_line(reconciler, make_event) -> None:
    metadata = {
        "customerName": "Omar",
        "customerEmail": "omar@example.com",
        "shippingCity": "Abu Dhabi",
        "shippingAddress": "Corniche Rd",
    }
    outcome = reconciler.handle_event(make_event(metadata=metadata, amount="75.00"))

    assert outcome.result == ReconcileResult.CREATED
    order = outcome.order
    assert order.subtotal == Decimal("75.00")
    assert order.tax == Decimal("0.00")
    assert len(order.items) == 1
    assert order.items[0].product_ref == "order-total"
    assert order.items[0].unit_price == Decimal("75.00")


def test_redelivery_is_idempotent(reconciler, ledger, make_event) -> None:
    first = reconciler.handle_event(make_event(event_id="evt_1"))
    second = reconciler.handle_event(make_event(event_id="evt_1"))

    assert first.result == ReconcileResult.CREATED
    assert second.result == ReconcileResult.UNCHANGED
    assert second.order.id == first.order.id
    assert len(ledger.orders) == 1
    assert len(ledger.payments) == 1


def test_concurrent_success_creates_exactly_one_order(reconciler, ledger, make_event) -> None:
    workers = 8
    barrier = threading.Barrier(workers)
    results: list[ReconcileResult] = []
    lock = threading.Lock()

    def deliver() -> None:
        barrier.wait()
        outcome = reconciler.handle_event(make_event())
        with lock:
            results.append(outcome.result)

    threads = [threading.Thread(target=deliver) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    counts = Counter(results)
    assert counts[ReconcileResult.CREATED] == 1
    assert counts[ReconcileResult.UNCHANGED] == workers - 1
    assert len(ledger.orders) == 1
    assert len(ledger.payments) == 1


def test_same_customer_is_reused_across_orders(reconciler, ledger, make_event) -> None:
    reconciler.handle_event(make_event(external_payment_id="pi_a"))
    reconciler.handle_event(make_event(external_payment_id="pi_b"))

    assert len(ledger.orders) == 2
    assert len(ledger.customers) == 1
    assert {o.customer_id for o in ledger.orders.values()} == {1}


def test_non_success_for_unknown_payment_is_discarded(reconciler, ledger, make_event) -> None:
    for kind in (EventKind.CREATED, EventKind.FAILED, EventKind.CANCELLED, EventKind.REFUNDED):
        outcome = reconciler.handle_event(make_event(kind=kind))
        assert outcome.result == ReconcileResult.DISCARDED
    assert ledger.orders == {}


def test_failed_before_succeeded_still_creates_order(reconciler, make_event) -> None:
    assert reconciler.handle_event(make_event(kind=EventKind.FAILED)).result == ReconcileResult.DISCARDED

    outcome = reconciler.handle_event(make_event(kind=EventKind.SUCCEEDED))

    assert outcome.result == ReconcileResult.CREATED
    assert outcome.payment.status == PaymentStatus.SUCCEEDED


def test_unhandled_event_type_is_ignored(reconciler, ledger, make_event) -> None:
    outcome = reconciler.handle_event(make_event(kind=None, event_type="customer.updated"))

    assert outcome.result == ReconcileResult.IGNORED
    assert ledger.orders == {}


def test_invalid_metadata_raises_and_creates_nothing(reconciler, ledger, make_event) -> None:
    metadata = {"customerName": "No Email", "shippingCity": "Dubai", "shippingAddress": "x"}

    with pytest.raises(InvalidMetadata):
        reconciler.handle_event(make_event(metadata=metadata))

    assert ledger.orders == {}
    assert ledger.customers == {}


def test_late_failure_does_not_override_success(reconciler, make_event) -> None:
    reconciler.handle_event(make_event())

    outcome = reconciler.handle_event(make_event(kind=EventKind.FAILED, failure_reason="card_declined"))

    assert outcome.result == ReconcileResult.UNCHANGED
    assert outcome.payment.status == PaymentStatus.SUCCEEDED
    assert outcome.order.status == OrderStatus.PROCESSING


def test_authorized_materialization_then_failure_cancels_order(reconciler, make_event) -> None:
    created = reconciler.handle_event(make_event(kind=EventKind.AUTHORIZED), materialize_authorized=True)
    assert created.result == ReconcileResult.CREATED
    assert created.order.status == OrderStatus.NEW
    assert created.payment.status == PaymentStatus.PROCESSING
    assert created.payment.provider_metadata["capture_state"] == "authorized"

    failed = reconciler.handle_event(make_event(kind=EventKind.CANCELLED, failure_reason="expired"))
    assert failed.payment.status == PaymentStatus.CANCELLED
    assert failed.order.status == OrderStatus.CANCELLED

    late = reconciler.handle_event(make_event())
    assert late.result == ReconcileResult.UNCHANGED
    assert late.payment.status == PaymentStatus.CANCELLED


def test_authorized_webhook_without_checkout_is_discarded(reconciler, ledger, make_event) -> None:
    outcome = reconciler.handle_event(make_event(kind=EventKind.AUTHORIZED))

    assert outcome.result == ReconcileResult.DISCARDED
    assert ledger.orders == {}


def test_authorized_event_moves_new_order_to_processing(reconciler, make_event) -> None:
    reconciler.handle_event(make_event(kind=EventKind.AUTHORIZED), materialize_authorized=True)

    outcome = reconciler.handle_event(make_event(kind=EventKind.AUTHORIZED))

    assert outcome.result == ReconcileResult.UPDATED
    assert outcome.order.status == OrderStatus.PROCESSING
    assert outcome.payment.status == PaymentStatus.PROCESSING


def test_refund_events_use_cumulative_total_and_cascade(reconciler, make_event) -> None:
    reconciler.handle_event(make_event())

    partial = reconciler.handle_event(make_event(kind=EventKind.REFUNDED, amount="40.00"))
    assert partial.payment.status == PaymentStatus.PARTIALLY_REFUNDED
    assert partial.payment.refunded_amount == Decimal("40.00")
    assert partial.order.status == OrderStatus.PROCESSING

    stale = reconciler.handle_event(make_event(kind=EventKind.REFUNDED, amount="30.00"))
    assert stale.result == ReconcileResult.UNCHANGED
    assert stale.payment.refunded_amount == Decimal("40.00")

    full = reconciler.handle_event(make_event(kind=EventKind.REFUNDED, amount="100.00"))
    assert full.payment.status == PaymentStatus.REFUNDED
    assert full.payment.refunded_amount == Decimal("100.00")
    assert full.order.status == OrderStatus.REFUNDED


def test_refund_event_never_exceeds_payment_amount(reconciler, make_event) -> None:
    reconciler.handle_event(make_event())

    outcome = reconciler.handle_event(make_event(kind=EventKind.REFUNDED, amount="250.00"))

    assert outcome.payment.refunded_amount == Decimal("100.00")
    assert outcome.payment.status == PaymentStatus.REFUNDED


def test_full_refund_cascades_even_after_shipping(reconciler, ledger, make_event) -> None:
    created = reconciler.handle_event(make_event())
    ledger.orders[created.order.id].status = OrderStatus.SHIPPED

    outcome = reconciler.handle_event(make_event(kind=EventKind.REFUNDED, amount=None))

    assert outcome.payment.status == PaymentStatus.REFUNDED
    assert outcome.order.status == OrderStatus.REFUNDED


def test_dispute_found_by_charge_id_fails_payment(reconciler, make_event) -> None:
    reconciler.handle_event(make_event(charge_id="ch_555"))

    outcome = reconciler.handle_event(
        make_event(kind=EventKind.DISPUTED, external_payment_id=None, charge_id="ch_555")
    )

    assert outcome.result == ReconcileResult.UPDATED
    assert outcome.payment.status == PaymentStatus.FAILED
    assert outcome.payment.failure_reason == "disputed"
    assert outcome.order.status == OrderStatus.CANCELLED


def test_dispute_leaves_shipped_order_alone(reconciler, ledger, make_event) -> None:
    created = reconciler.handle_event(make_event())
    ledger.orders[created.order.id].status = OrderStatus.SHIPPED

    outcome = reconciler.handle_event(make_event(kind=EventKind.DISPUTED))

    assert outcome.payment.status == PaymentStatus.FAILED
    assert outcome.order.status == OrderStatus.SHIPPED
