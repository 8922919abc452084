from __future__ import annotations

import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient

from payrecon.config import Settings
from payrecon.domain.enums import ProviderName
from payrecon.domain.statuses import OrderStatus, PaymentStatus
from payrecon.main import create_app
from payrecon.providers.stripe_card import StripeCardProvider
from payrecon.providers.tabby_bnpl import TabbyBnplProvider

METADATA = {
    "customerName": "Aisha Khan",
    "customerEmail": "aisha@example.com",
    "shippingCity": "Dubai",
    "shippingAddress": "12 Marina Walk",
}


def stripe_signature(payload: str, secret: str, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def intent_event(event_type: str, intent_id: str = "pi_123", **obj: Any) -> dict[str, Any]:
    data = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": 10000,
        "amount_received": 10000,
        "currency": "aed",
        "status": "succeeded",
        "latest_charge": f"ch_{intent_id}",
        "metadata": METADATA,
    }
    data.update(obj)
    return {
        "id": f"evt_{event_type}_{intent_id}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": data},
    }


@pytest.fixture
def stripe_settings(settings: Settings) -> Settings:
    return settings.model_copy(update={"stripe_secret_key": "sk_test_123", "tabby_secret_key": "tabby_sk_test"})


@pytest.fixture
def app(stripe_settings, ledger):
    providers = {
        ProviderName.STRIPE: StripeCardProvider(stripe_settings),
        ProviderName.TABBY: TabbyBnplProvider(stripe_settings),
    }
    return create_app(stripe_settings, ledger=ledger, providers=providers)


@pytest.fixture
def webhook_client(app) -> TestClient:
    return TestClient(app)


def post_stripe(client: TestClient, event: dict[str, Any], secret: str = "whsec_test"):
    payload = json.dumps(event)
    return client.post(
        "/api/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": stripe_signature(payload, secret), "Content-Type": "application/json"},
    )


def test_signed_success_creates_order(webhook_client, ledger) -> None:
    response = post_stripe(webhook_client, intent_event("payment_intent.succeeded"))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    payment = ledger.get_payment_by_external(ProviderName.STRIPE, "pi_123")
    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.amount == Decimal("100.00")
    assert payment.external_charge_id == "ch_pi_123"
    assert ledger.get_order(payment.order_id).status == OrderStatus.PROCESSING
    assert ledger.webhooks[("stripe", "evt_payment_intent.succeeded_pi_123")]["outcome"] == "created"


def test_redelivered_success_is_acknowledged_once(webhook_client, ledger) -> None:
    event = intent_event("payment_intent.succeeded")

    assert post_stripe(webhook_client, event).status_code == 200
    assert post_stripe(webhook_client, event).status_code == 200

    assert len(ledger.orders) == 1


def test_bad_signature_is_rejected(webhook_client, ledger) -> None:
    response = post_stripe(webhook_client, intent_event("payment_intent.succeeded"), secret="whsec_wrong")

    assert response.status_code == 400
    assert ledger.orders == {}


def test_missing_signature_is_rejected(webhook_client) -> None:
    response = webhook_client.post("/api/webhooks/stripe", content=json.dumps(intent_event("payment_intent.succeeded")))

    assert response.status_code == 400


def test_unhandled_event_type_is_acknowledged(webhook_client, ledger) -> None:
    event = {"id": "evt_cus", "type": "customer.created", "created": int(time.time()), "data": {"object": {"id": "cus_1"}}}

    response = post_stripe(webhook_client, event)

    assert response.status_code == 200
    assert ledger.orders == {}


def test_invalid_metadata_is_acknowledged_without_order(webhook_client, ledger) -> None:
    event = intent_event("payment_intent.succeeded", metadata={"customerName": "Nobody"})

    response = post_stripe(webhook_client, event)

    assert response.status_code == 200
    assert ledger.orders == {}
    assert ledger.webhooks[("stripe", event["id"])]["outcome"] == "invalid_metadata"


def test_refund_and_dispute_events_update_payment(webhook_client, ledger) -> None:
    post_stripe(webhook_client, intent_event("payment_intent.succeeded"))
    refund = {
        "id": "evt_refund",
        "type": "charge.refunded",
        "created": int(time.time()),
        "data": {"object": {"id": "ch_pi_123", "payment_intent": "pi_123", "amount": 10000, "amount_refunded": 4000, "currency": "aed"}},
    }
    assert post_stripe(webhook_client, refund).status_code == 200
    payment = ledger.get_payment_by_external(ProviderName.STRIPE, "pi_123")
    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
    assert payment.refunded_amount == Decimal("40.00")

    dispute = {
        "id": "evt_dispute",
        "type": "charge.dispute.created",
        "created": int(time.time()),
        "data": {"object": {"id": "dp_1", "charge": "ch_pi_123", "amount": 6000, "currency": "aed", "reason": "fraudulent"}},
    }
    assert post_stripe(webhook_client, dispute).status_code == 200
    payment = ledger.get_payment_by_external(ProviderName.STRIPE, "pi_123")
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "disputed"
    assert ledger.get_order(payment.order_id).status == OrderStatus.CANCELLED


def test_unexpected_failure_asks_for_redelivery(webhook_client, app, monkeypatch) -> None:
    def boom(event, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(app.state.reconciler, "handle_event", boom)

    response = post_stripe(webhook_client, intent_event("payment_intent.succeeded"))

    assert response.status_code == 503


def test_missing_webhook_secret_is_server_error(stripe_settings, ledger) -> None:
    settings = stripe_settings.model_copy(update={"stripe_webhook_secret": ""})
    client = TestClient(create_app(settings, ledger=ledger, providers={ProviderName.STRIPE: StripeCardProvider(settings)}))

    response = post_stripe(client, intent_event("payment_intent.succeeded"))

    assert response.status_code == 500


def tabby_body(event_type: str, **payment: Any) -> dict[str, Any]:
    data = {
        "id": "b7d3a1f0-tabby",
        "status": "CLOSED",
        "amount": "250.00",
        "currency": "AED",
        "buyer": {"name": "Omar Said", "email": "omar@example.com", "phone": "+971501111111"},
        "shipping_address": {"city": "Sharjah", "address": "Al Majaz 3"},
        "order": {
            "reference_id": "web-1001",
            "tax_amount": "0.00",
            "shipping_amount": "10.00",
            "items": [{"title": "Espresso Machine", "quantity": 1, "unit_price": "240.00", "reference_id": "esp-01"}],
        },
        "captures": [{"id": "cap_1", "amount": "250.00"}],
    }
    data.update(payment)
    return {"event_type": event_type, "payment": data}


def test_tabby_captured_webhook_creates_order(webhook_client, ledger) -> None:
    response = webhook_client.post(
        "/api/webhooks/tabby",
        content=json.dumps(tabby_body("payment.captured")),
        headers={"X-Tabby-Signature": "tabby_test"},
    )

    assert response.status_code == 200
    payment = ledger.get_payment_by_external(ProviderName.TABBY, "b7d3a1f0-tabby")
    assert payment.amount == Decimal("250.00")
    order = ledger.get_order(payment.order_id)
    assert order.shipping_cost == Decimal("10.00")
    assert order.items[0].product_ref == "esp-01"


def test_tabby_refund_uses_sum_of_refunds(webhook_client, ledger) -> None:
    headers = {"X-Tabby-Signature": "tabby_test"}
    webhook_client.post("/api/webhooks/tabby", content=json.dumps(tabby_body("payment.captured")), headers=headers)

    body = tabby_body("payment.refunded", refunds=[{"id": "r1", "amount": "50.00"}, {"id": "r2", "amount": "25.00"}])
    assert webhook_client.post("/api/webhooks/tabby", content=json.dumps(body), headers=headers).status_code == 200

    payment = ledger.get_payment_by_external(ProviderName.TABBY, "b7d3a1f0-tabby")
    assert payment.refunded_amount == Decimal("75.00")
    assert payment.status == PaymentStatus.PARTIALLY_REFUNDED


def test_tabby_wrong_secret_is_rejected(webhook_client, ledger) -> None:
    response = webhook_client.post(
        "/api/webhooks/tabby",
        content=json.dumps(tabby_body("payment.captured")),
        headers={"X-Tabby-Signature": "nope"},
    )

    assert response.status_code == 400
    assert ledger.orders == {}
