from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, TypeVar

import stripe  # type: ignore[import-untyped]

from payrecon.config import Settings
from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import ProviderError, SignatureError
from payrecon.domain.models import NormalizedEvent
from payrecon.domain.statuses import EventKind
from payrecon.utils.money import from_minor_units, to_minor_units

from .base import (
    STATUS_AUTHORIZED,
    STATUS_CANCELLED,
    STATUS_FAILED,
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

logger = logging.getLogger(__name__)

T = TypeVar("T")

EVENT_KINDS: Dict[str, EventKind] = {
    "payment_intent.created": EventKind.CREATED,
    "payment_intent.amount_capturable_updated": EventKind.AUTHORIZED,
    "payment_intent.succeeded": EventKind.SUCCEEDED,
    "payment_intent.payment_failed": EventKind.FAILED,
    "payment_intent.canceled": EventKind.CANCELLED,
    "charge.refunded": EventKind.REFUNDED,
    "charge.dispute.created": EventKind.DISPUTED,
}

REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _normalize_status(pi_status: str | None, last_error: Any = None) -> str:
    if pi_status == "succeeded":
        return STATUS_SUCCEEDED
    if pi_status == "requires_capture":
        return STATUS_AUTHORIZED
    if pi_status == "canceled":
        return STATUS_CANCELLED
    if pi_status == "requires_payment_method" and last_error:
        return STATUS_FAILED
    return STATUS_PROCESSING


def _charge_id(intent: Dict[str, Any]) -> str | None:
    latest = intent.get("latest_charge")
    if isinstance(latest, dict):
        return latest.get("id")
    return latest or None


class StripeCardProvider(PaymentProvider):
    """Card payments through Stripe PaymentIntents.

    The SDK is synchronous, so every call runs in a worker thread under the
    configured provider timeout.
    """

    name = ProviderName.STRIPE

    def __init__(self, settings: Settings):
        if not settings.stripe_secret_key:
            raise ValueError("Stripe secret key not configured")
        self.settings = settings
        self.timeout_seconds = settings.provider_timeout_seconds
        self.webhook_tolerance = settings.stripe_webhook_tolerance
        self.default_currency = settings.default_currency
        stripe.api_key = settings.stripe_secret_key

    def _translate(self, exc: Exception, operation: str) -> ProviderError:
        if isinstance(exc, stripe.APIConnectionError):
            return ProviderError("network", str(exc), retryable=True, provider=self.name.value)
        if isinstance(exc, stripe.RateLimitError):
            return ProviderError("rate_limited", str(exc), retryable=True, provider=self.name.value)
        if isinstance(exc, stripe.APIError):
            return ProviderError("provider_unavailable", str(exc), retryable=True, provider=self.name.value)
        status_code = getattr(exc, "http_status", None) or 0
        code = getattr(exc, "code", None) or f"{operation}_rejected"
        message = getattr(exc, "user_message", None) or str(exc)
        return ProviderError(str(code), message, retryable=status_code >= 500, provider=self.name.value)

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        started = time.monotonic()
        try:
            result = await self._bounded(asyncio.to_thread(fn, *args, **kwargs), operation)
        except stripe.StripeError as exc:
            error = self._translate(exc, operation)
            logger.warning(
                "stripe call failed",
                extra={
                    "provider": self.name.value,
                    "event": operation,
                    "error": error.code,
                    "retryable": error.retryable,
                    "latency_ms": int((time.monotonic() - started) * 1000),
                },
            )
            raise error from exc
        logger.info(
            "stripe call",
            extra={
                "provider": self.name.value,
                "event": operation,
                "latency_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return result

    async def create_payment(self, request: CreatePaymentRequest) -> CreatedPayment:
        currency = (request.currency or self.default_currency).lower()
        params: Dict[str, Any] = {
            "amount": to_minor_units(request.amount, currency),
            "currency": currency,
            "metadata": request.metadata.to_provider_metadata(),
            "automatic_payment_methods": {"enabled": True},
            "receipt_email": request.metadata.customer_email,
        }
        if request.reference:
            params["description"] = f"Order {request.reference}"
        intent = _as_dict(await self._call("create_payment", stripe.PaymentIntent.create, **params))
        logger.info(
            "stripe payment intent created",
            extra={
                "provider": self.name.value,
                "external_payment_id": intent.get("id"),
                "amount": request.amount,
                "currency": currency,
            },
        )
        return CreatedPayment(provider_payment_id=str(intent["id"]), client_secret=intent.get("client_secret"))

    async def retrieve_payment(self, external_id: str) -> ProviderPaymentDetail:
        intent = _as_dict(await self._call("retrieve_payment", stripe.PaymentIntent.retrieve, external_id))
        currency = str(intent.get("currency") or self.default_currency)
        amount = intent.get("amount_received") or intent.get("amount")
        return ProviderPaymentDetail(
            id=str(intent.get("id") or external_id),
            status=_normalize_status(intent.get("status"), intent.get("last_payment_error")),
            raw_status=intent.get("status"),
            amount=from_minor_units(int(amount), currency) if amount is not None else None,
            currency=currency.upper(),
            metadata=dict(intent.get("metadata") or {}),
            charge_id=_charge_id(intent),
            created_at=_timestamp(intent.get("created")),
            raw=intent,
        )

    async def capture_payment(
        self, external_id: str, amount: Decimal | None = None, currency: str | None = None
    ) -> CaptureResult:
        params: Dict[str, Any] = {}
        if amount is not None:
            params["amount_to_capture"] = to_minor_units(amount, currency or self.default_currency)
        intent = _as_dict(await self._call("capture_payment", stripe.PaymentIntent.capture, external_id, **params))
        intent_currency = str(intent.get("currency") or currency or self.default_currency)
        received = intent.get("amount_received")
        return CaptureResult(
            status=_normalize_status(intent.get("status")),
            amount=from_minor_units(int(received), intent_currency) if received is not None else amount,
            charge_id=_charge_id(intent),
        )

    async def refund_payment(
        self,
        external_id: str,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
        currency: str | None = None,
    ) -> ProviderRefundResult:
        code = currency or self.default_currency
        params: Dict[str, Any] = {
            "payment_intent": external_id,
            "amount": to_minor_units(amount, code),
            "reason": reason if reason in REFUND_REASONS else "requested_by_customer",
        }
        if reason:
            params["metadata"] = {"reason": reason[:500]}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        refund = _as_dict(await self._call("refund_payment", stripe.Refund.create, **params))
        status = str(refund.get("status") or "")
        if status in {"failed", "canceled"}:
            raise ProviderError(
                "refund_" + status,
                refund.get("failure_reason") or f"refund {status}",
                provider=self.name.value,
            )
        refunded = refund.get("amount")
        return ProviderRefundResult(
            refund_id=refund.get("id"),
            status=status or "pending",
            amount=from_minor_units(int(refunded), code) if refunded is not None else amount,
            payload={"refund_id": refund.get("id"), "status": status, "payment_intent": external_id},
        )

    async def list_recent_payments(
        self, since: datetime, status_filter: str | None = None
    ) -> list[ProviderPaymentSummary]:
        def _list() -> list[Dict[str, Any]]:
            page = stripe.PaymentIntent.list(created={"gte": int(since.timestamp())}, limit=100)
            return [_as_dict(intent) for intent in page.auto_paging_iter()]

        intents = await self._call("list_recent_payments", _list)
        summaries: list[ProviderPaymentSummary] = []
        for intent in intents:
            status = _normalize_status(intent.get("status"), intent.get("last_payment_error"))
            if status_filter and status != status_filter:
                continue
            currency = str(intent.get("currency") or self.default_currency)
            metadata = intent.get("metadata") or {}
            amount = intent.get("amount")
            summaries.append(
                ProviderPaymentSummary(
                    id=str(intent["id"]),
                    status=status,
                    raw_status=intent.get("status"),
                    amount=from_minor_units(int(amount), currency) if amount is not None else None,
                    currency=currency.upper(),
                    created_at=_timestamp(intent.get("created")),
                    customer_email=metadata.get("customerEmail") or intent.get("receipt_email"),
                )
            )
        return summaries

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str | None, secret: str) -> NormalizedEvent:
        if not signature_header:
            raise SignatureError("missing Stripe-Signature header")
        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, signature_header, secret, self.webhook_tolerance)
            event = json.loads(payload)
        except stripe.SignatureVerificationError as exc:
            raise SignatureError(str(exc)) from exc
        except ValueError as exc:
            raise SignatureError("webhook body is not valid JSON") from exc
        return self.normalize_event(event)

    def normalize_event(self, event: Dict[str, Any]) -> NormalizedEvent:
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        kind = EVENT_KINDS.get(event_type)
        common: Dict[str, Any] = {
            "event_id": event.get("id"),
            "event_type": event_type,
            "raw_timestamp": _timestamp(event.get("created")),
        }
        currency = str(obj.get("currency") or self.default_currency)

        if event_type.startswith("payment_intent."):
            amount = obj.get("amount_received") or obj.get("amount")
            failure = None
            if kind == EventKind.FAILED:
                failure = (obj.get("last_payment_error") or {}).get("message") or "payment_failed"
            elif kind == EventKind.CANCELLED:
                failure = obj.get("cancellation_reason") or "canceled"
            return normalized_event(
                self.name,
                external_payment_id=obj.get("id"),
                kind=kind,
                raw_metadata=dict(obj.get("metadata") or {}),
                amount=from_minor_units(int(amount), currency) if amount is not None else None,
                currency=currency.upper(),
                charge_id=_charge_id(obj),
                failure_reason=failure,
                **common,
            )

        if event_type == "charge.refunded":
            refunded = obj.get("amount_refunded")
            return normalized_event(
                self.name,
                external_payment_id=obj.get("payment_intent"),
                kind=kind,
                amount=from_minor_units(int(refunded), currency) if refunded is not None else None,
                currency=currency.upper(),
                charge_id=obj.get("id"),
                **common,
            )

        if event_type == "charge.dispute.created":
            disputed = obj.get("amount")
            return normalized_event(
                self.name,
                external_payment_id=obj.get("payment_intent"),
                kind=kind,
                amount=from_minor_units(int(disputed), currency) if disputed is not None else None,
                currency=currency.upper(),
                charge_id=obj.get("charge"),
                failure_reason="disputed",
                **common,
            )

        return normalized_event(self.name, external_payment_id=obj.get("id"), kind=None, **common)
