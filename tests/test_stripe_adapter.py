from __future__ import annotations

import asyncio
import time
from decimal import Decimal

import pytest
import stripe  # type: ignore[import-untyped]

from payrecon.domain.errors import ProviderError
from payrecon.domain.statuses import EventKind
from payrecon.providers.base import STATUS_AUTHORIZED, STATUS_SUCCEEDED
from payrecon.providers.stripe_card import StripeCardProvider


@pytest.fixture
def provider(settings) -> StripeCardProvider:
    return StripeCardProvider(settings.model_copy(update={"stripe_secret_key": "sk_test_123"}))


def test_failed_intent_carries_error_message(provider) -> None:
    event = provider.normalize_event(
        {
            "id": "evt_1",
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": "pi_9",
                    "amount": 2500,
                    "currency": "aed",
                    "last_payment_error": {"message": "Your card was declined."},
                    "metadata": {},
                }
            },
        }
    )

    assert event.kind == EventKind.FAILED
    assert event.external_payment_id == "pi_9"
    assert event.amount == Decimal("25.00")
    assert event.failure_reason == "Your card was declined."


def test_charge_refunded_reports_cumulative_total(provider) -> None:
    event = provider.normalize_event(
        {
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 6000, "currency": "aed"}},
        }
    )

    assert event.kind == EventKind.REFUNDED
    assert event.external_payment_id == "pi_1"
    assert event.charge_id == "ch_1"
    assert event.amount == Decimal("60.00")


def test_zero_decimal_currency_amounts(provider) -> None:
    event = provider.normalize_event(
        {
            "id": "evt_3",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_jp", "amount": 5000, "currency": "jpy", "metadata": {}}},
        }
    )

    assert event.amount == Decimal("5000.00")
    assert event.currency == "JPY"
    assert event.metadata is None
    assert event.metadata_error is not None


def test_unknown_event_type_has_no_kind(provider) -> None:
    event = provider.normalize_event({"id": "evt_4", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}})

    assert event.kind is None
    assert event.event_type == "invoice.paid"


def test_refund_forwards_minor_units_reason_and_idempotency_key(provider, monkeypatch) -> None:
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return {"id": "re_1", "status": "succeeded", "amount": kwargs["amount"]}

    monkeypatch.setattr(stripe.Refund, "create", fake_create)

    result = asyncio.run(
        provider.refund_payment("pi_1", Decimal("40.00"), reason="damaged item", idempotency_key="key-1", currency="AED")
    )

    assert calls[0]["payment_intent"] == "pi_1"
    assert calls[0]["amount"] == 4000
    assert calls[0]["reason"] == "requested_by_customer"
    assert calls[0]["idempotency_key"] == "key-1"
    assert result.refund_id == "re_1"
    assert result.amount == Decimal("40.00")


def test_connection_error_is_retryable(provider, monkeypatch) -> None:
    def fake_create(**kwargs):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.Refund, "create", fake_create)

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(provider.refund_payment("pi_1", Decimal("10.00")))

    assert excinfo.value.retryable is True
    assert excinfo.value.code == "network"


def test_invalid_request_is_not_retryable(provider, monkeypatch) -> None:
    def fake_create(**kwargs):
        raise stripe.InvalidRequestError("Refund exceeds charge", param="amount", code="amount_too_large", http_status=400)

    monkeypatch.setattr(stripe.Refund, "create", fake_create)

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(provider.refund_payment("pi_1", Decimal("999.00")))

    assert excinfo.value.retryable is False
    assert excinfo.value.code == "amount_too_large"


def test_slow_provider_times_out(settings, monkeypatch) -> None:
    provider = StripeCardProvider(
        settings.model_copy(update={"stripe_secret_key": "sk_test_123", "provider_timeout_seconds": 0.05})
    )

    def slow_retrieve(intent_id, **kwargs):
        time.sleep(0.3)
        return {"id": intent_id, "status": "succeeded"}

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", slow_retrieve)

    with pytest.raises(ProviderError) as excinfo:
        asyncio.run(provider.retrieve_payment("pi_slow"))

    assert excinfo.value.code == "timeout"
    assert excinfo.value.retryable is True


def test_retrieve_maps_requires_capture_to_authorized(provider, monkeypatch) -> None:
    def fake_retrieve(intent_id, **kwargs):
        return {
            "id": intent_id,
            "status": "requires_capture",
            "amount": 12000,
            "currency": "aed",
            "latest_charge": "ch_x",
            "created": 1700000000,
            "metadata": {"customerEmail": "a@b.co"},
        }

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)

    detail = asyncio.run(provider.retrieve_payment("pi_hold"))

    assert detail.status == STATUS_AUTHORIZED
    assert detail.raw_status == "requires_capture"
    assert detail.amount == Decimal("120.00")
    assert detail.charge_id == "ch_x"


def test_list_recent_payments_filters_by_status(provider, monkeypatch) -> None:
    class Page:
        def auto_paging_iter(self):
            yield {"id": "pi_a", "status": "succeeded", "amount": 1000, "currency": "aed", "created": 1700000000, "metadata": {}}
            yield {"id": "pi_b", "status": "canceled", "amount": 2000, "currency": "aed", "created": 1700000100, "metadata": {}}

    seen = {}

    def fake_list(**kwargs):
        seen.update(kwargs)
        return Page()

    monkeypatch.setattr(stripe.PaymentIntent, "list", fake_list)

    from datetime import datetime, timezone

    since = datetime(2023, 11, 14, tzinfo=timezone.utc)
    summaries = asyncio.run(provider.list_recent_payments(since, STATUS_SUCCEEDED))

    assert [s.id for s in summaries] == ["pi_a"]
    assert seen["created"] == {"gte": int(since.timestamp())}


def test_three_decimal_currency_uses_thousandths(provider, monkeypatch) -> None:
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return {"id": "re_kwd", "status": "succeeded", "amount": kwargs["amount"]}

    monkeypatch.setattr(stripe.Refund, "create", fake_create)

    result = asyncio.run(provider.refund_payment("pi_kw", Decimal("12.50"), currency="KWD"))
    event = provider.normalize_event(
        {
            "id": "evt_kwd",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_kw", "amount": 25000, "currency": "kwd", "metadata": {}}},
        }
    )

    assert calls[0]["amount"] == 12500
    assert result.amount == Decimal("12.50")
    assert event.amount == Decimal("25.00")
