from __future__ import annotations

import hmac
import json
import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

import httpx

from payrecon.config import Settings
from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import ProviderError, SignatureError
from payrecon.domain.models import NormalizedEvent
from payrecon.domain.statuses import EventKind
from payrecon.utils.money import to_money

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

EVENT_KINDS: Dict[str, EventKind] = {
    "payment.created": EventKind.CREATED,
    "payment.authorized": EventKind.AUTHORIZED,
    "payment.captured": EventKind.SUCCEEDED,
    "payment.completed": EventKind.SUCCEEDED,
    "payment.failed": EventKind.FAILED,
    "payment.rejected": EventKind.FAILED,
    "payment.cancelled": EventKind.CANCELLED,
    "payment.expired": EventKind.CANCELLED,
    "payment.refunded": EventKind.REFUNDED,
}

STATUSES: Dict[str, str] = {
    "CREATED": STATUS_PROCESSING,
    "AUTHORIZED": STATUS_AUTHORIZED,
    "CLOSED": STATUS_SUCCEEDED,
    "REJECTED": STATUS_FAILED,
    "EXPIRED": STATUS_CANCELLED,
}

# Installment plans are only offered inside this window.
TABBY_CURRENCY = "AED"
TABBY_MIN_AMOUNT = Decimal("1")
TABBY_MAX_AMOUNT = Decimal("5000")
LIST_PAGE_SIZE = 100


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def _amount(value: Any) -> Decimal | None:
    try:
        return to_money(value)
    except ValueError:
        return None


def payment_metadata(payment: Dict[str, Any]) -> Dict[str, Any]:
    """Map Tabby buyer/shipping/order blocks onto event metadata fields."""
    buyer = payment.get("buyer") or {}
    shipping = payment.get("shipping_address") or {}
    order = payment.get("order") or {}
    return {
        "customer_name": buyer.get("name") or "",
        "customer_email": buyer.get("email") or "",
        "customer_phone": buyer.get("phone") or "",
        "shipping_city": shipping.get("city") or "",
        "shipping_address": shipping.get("address") or "",
        "tax": order.get("tax_amount"),
        "shipping_cost": order.get("shipping_amount"),
        "discount": order.get("discount_amount"),
        "total": payment.get("amount"),
        "items": [
            {
                "reference_id": item.get("reference_id") or item.get("title") or "item",
                "title": item.get("title") or "",
                "quantity": item.get("quantity") or 1,
                "unit_price": item.get("unit_price") or "0",
            }
            for item in order.get("items") or []
        ],
    }


def refunded_total(payment: Dict[str, Any]) -> Decimal | None:
    refunds = payment.get("refunds") or []
    if refunds:
        return sum((_amount(r.get("amount")) or Decimal("0") for r in refunds), Decimal("0.00"))
    if payment.get("refund_amount") is not None:
        return _amount(payment.get("refund_amount"))
    return _amount(payment.get("amount"))


class TabbyBnplProvider(PaymentProvider):
    """Tabby buy-now-pay-later payments over the Tabby REST API.

    Payments are authorized at checkout and captured by the merchant;
    amounts travel as decimal strings in major units.
    """

    name = ProviderName.TABBY

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        if not settings.tabby_secret_key:
            raise ValueError("Tabby secret key not configured")
        self.settings = settings
        self.base_url = settings.tabby_base_url.rstrip("/")
        self.timeout_seconds = settings.provider_timeout_seconds
        self._transport = transport

    @staticmethod
    def is_available(amount: Decimal, currency: str) -> bool:
        return currency.upper() == TABBY_CURRENCY and TABBY_MIN_AMOUNT <= amount <= TABBY_MAX_AMOUNT

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.settings.tabby_secret_key}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            async with self._client() as client:
                resp = await self._bounded(
                    client.request(method, path, json=json_body, params=params, headers=headers),
                    operation,
                )
        except httpx.TimeoutException as exc:
            raise ProviderError("timeout", str(exc) or "timeout", retryable=True, provider=self.name.value) from exc
        except httpx.TransportError as exc:
            raise ProviderError("network", str(exc) or "network error", retryable=True, provider=self.name.value) from exc
        latency_ms = int((time.monotonic() - started) * 1000)
        if resp.status_code >= 400:
            try:
                detail = resp.json()
            except ValueError:
                detail = {"text": resp.text[:512]}
            message = str(detail.get("error") or detail.get("message") or detail) if isinstance(detail, dict) else str(detail)
            retryable = resp.status_code == 429 or resp.status_code >= 500
            logger.warning(
                "tabby call failed",
                extra={
                    "provider": self.name.value,
                    "event": operation,
                    "status": resp.status_code,
                    "retryable": retryable,
                    "latency_ms": latency_ms,
                },
            )
            raise ProviderError(
                f"http_{resp.status_code}",
                message,
                retryable=retryable,
                provider=self.name.value,
            )
        logger.info(
            "tabby call",
            extra={"provider": self.name.value, "event": operation, "status": resp.status_code, "latency_ms": latency_ms},
        )
        return resp.json() if resp.content else {}

    def _detail(self, payment: Dict[str, Any], fallback_id: str = "") -> ProviderPaymentDetail:
        raw_status = str(payment.get("status") or "").upper()
        captures = payment.get("captures") or []
        return ProviderPaymentDetail(
            id=str(payment.get("id") or fallback_id),
            status=STATUSES.get(raw_status, STATUS_PROCESSING),
            raw_status=raw_status or None,
            amount=_amount(payment.get("amount")),
            currency=str(payment.get("currency") or TABBY_CURRENCY).upper(),
            metadata=payment_metadata(payment),
            charge_id=str(captures[-1].get("id")) if captures and captures[-1].get("id") else None,
            created_at=_parse_datetime(payment.get("created_at")),
            raw=payment,
        )

    async def create_payment(self, request: CreatePaymentRequest) -> CreatedPayment:
        meta = request.metadata
        currency = (request.currency or TABBY_CURRENCY).upper()
        body: Dict[str, Any] = {
            "payment": {
                "amount": str(to_money(request.amount)),
                "currency": currency,
                "description": f"Order {request.reference}" if request.reference else "Order",
                "buyer": {"name": meta.customer_name, "email": meta.customer_email, "phone": meta.customer_phone},
                "shipping_address": {"city": meta.shipping_city, "address": meta.shipping_address},
                "order": {
                    "reference_id": request.reference or "",
                    "tax_amount": str(meta.tax or "0.00"),
                    "shipping_amount": str(meta.shipping_cost or "0.00"),
                    "discount_amount": str(meta.discount or "0.00"),
                    "items": [
                        {
                            "reference_id": item.product_ref,
                            "title": item.name,
                            "quantity": item.quantity,
                            "unit_price": str(item.unit_price),
                        }
                        for item in meta.items
                    ],
                },
                "meta": {"order_id": request.reference or ""},
            },
            "lang": "en",
            "merchant_code": self.settings.tabby_merchant_code,
            "merchant_urls": {
                "success": request.success_url or f"{self.settings.site_url}/checkout/success",
                "cancel": request.cancel_url or f"{self.settings.site_url}/checkout/cancel",
                "failure": request.cancel_url or f"{self.settings.site_url}/checkout/failure",
            },
        }
        data = await self._request("create_payment", "POST", "/api/v2/checkout", json_body=body)
        if str(data.get("status") or "").lower() == "rejected":
            raise ProviderError("rejected", "Tabby rejected the checkout", provider=self.name.value)
        payment_id = (data.get("payment") or {}).get("id")
        if not payment_id:
            raise ProviderError("invalid_response", "Tabby checkout returned no payment id", provider=self.name.value)
        installments = ((data.get("configuration") or {}).get("available_products") or {}).get("installments") or []
        web_url = installments[0].get("web_url") if installments else None
        logger.info(
            "tabby checkout created",
            extra={"provider": self.name.value, "external_payment_id": payment_id, "amount": request.amount},
        )
        return CreatedPayment(provider_payment_id=str(payment_id), redirect_url=web_url)

    async def retrieve_payment(self, external_id: str) -> ProviderPaymentDetail:
        data = await self._request("retrieve_payment", "GET", f"/api/v2/payments/{external_id}")
        return self._detail(data, external_id)

    async def capture_payment(
        self, external_id: str, amount: Decimal | None = None, currency: str | None = None
    ) -> CaptureResult:
        if amount is None:
            amount = (await self.retrieve_payment(external_id)).amount
        data = await self._request(
            "capture_payment",
            "POST",
            f"/api/v2/payments/{external_id}/captures",
            json_body={"amount": str(to_money(amount))},
        )
        detail = self._detail(data, external_id)
        return CaptureResult(status=detail.status, amount=amount, charge_id=detail.charge_id)

    async def refund_payment(
        self,
        external_id: str,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
        currency: str | None = None,
    ) -> ProviderRefundResult:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        data = await self._request(
            "refund_payment",
            "POST",
            f"/api/v2/payments/{external_id}/refunds",
            json_body={"amount": str(to_money(amount)), "reason": reason or "requested_by_customer"},
            headers=headers,
        )
        refunds = data.get("refunds") or []
        latest = refunds[-1] if refunds else {}
        return ProviderRefundResult(
            refund_id=latest.get("id"),
            status="succeeded",
            amount=_amount(latest.get("amount")) or to_money(amount),
            payload={"refund_id": latest.get("id"), "payment_id": external_id},
        )

    async def list_recent_payments(
        self, since: datetime, status_filter: str | None = None
    ) -> list[ProviderPaymentSummary]:
        summaries: list[ProviderPaymentSummary] = []
        offset = 0
        while True:
            params: Dict[str, Any] = {
                "created_at__gte": since.isoformat(),
                "limit": LIST_PAGE_SIZE,
                "offset": offset,
            }
            data = await self._request("list_recent_payments", "GET", "/api/v2/payments", params=params)
            page = data.get("payments") or []
            for payment in page:
                detail = self._detail(payment)
                if status_filter and detail.status != status_filter:
                    continue
                summaries.append(
                    ProviderPaymentSummary(
                        id=detail.id,
                        status=detail.status,
                        raw_status=detail.raw_status,
                        amount=detail.amount,
                        currency=detail.currency,
                        created_at=detail.created_at,
                        customer_email=(payment.get("buyer") or {}).get("email"),
                    )
                )
            if len(page) < LIST_PAGE_SIZE:
                return summaries
            offset += LIST_PAGE_SIZE

    def verify_webhook_signature(self, raw_body: bytes, signature_header: str | None, secret: str) -> NormalizedEvent:
        if not signature_header or not hmac.compare_digest(signature_header.encode(), secret.encode()):
            raise SignatureError("invalid Tabby webhook signature")
        try:
            body = json.loads(raw_body.decode("utf-8"))
        except ValueError as exc:
            raise SignatureError("webhook body is not valid JSON") from exc
        if not isinstance(body, dict):
            raise SignatureError("webhook body is not an object")
        return self.normalize_event(body)

    def normalize_event(self, body: Dict[str, Any]) -> NormalizedEvent:
        event_type = str(body.get("event_type") or "")
        payment = body.get("payment") or {}
        kind = EVENT_KINDS.get(event_type)
        payment_id = payment.get("id")
        failure = None
        if kind == EventKind.FAILED:
            failure = payment.get("failure_reason") or event_type
        elif kind == EventKind.CANCELLED:
            failure = event_type.split(".", 1)[-1]
        amount = refunded_total(payment) if kind == EventKind.REFUNDED else _amount(payment.get("amount"))
        captures = payment.get("captures") or []
        return normalized_event(
            self.name,
            external_payment_id=str(payment_id) if payment_id else None,
            kind=kind,
            raw_metadata=payment_metadata(payment) if payment else None,
            amount=amount,
            currency=str(payment.get("currency") or TABBY_CURRENCY).upper(),
            event_id=str(body.get("id") or f"{payment_id}:{event_type}"),
            event_type=event_type,
            raw_timestamp=_parse_datetime(body.get("created_at") or payment.get("updated_at")),
            charge_id=str(captures[-1].get("id")) if captures and captures[-1].get("id") else None,
            failure_reason=failure,
        )
