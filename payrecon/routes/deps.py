from __future__ import annotations

from typing import Optional

from fastapi import Header, Request, status
from fastapi.responses import JSONResponse

from payrecon.domain.dtos import OrderItemView, OrderView, PaymentView
from payrecon.domain.errors import (
    InvalidAmount,
    InvalidMetadata,
    InvalidState,
    NotFound,
    PaymentsError,
    ProviderError,
)
from payrecon.domain.models import Order, Payment
from payrecon.repositories.base import LedgerStore
from payrecon.services.checkout import CheckoutService
from payrecon.services.ingress import WebhookIngress
from payrecon.services.recovery import RecoveryTool
from payrecon.services.refunds import RefundCaptureOrchestrator


def get_ledger(request: Request) -> LedgerStore:
    return request.app.state.ledger


def get_ingress(request: Request) -> WebhookIngress:
    return request.app.state.ingress


def get_orchestrator(request: Request) -> RefundCaptureOrchestrator:
    return request.app.state.orchestrator


def get_recovery(request: Request) -> RecoveryTool:
    return request.app.state.recovery


def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


async def get_idempotency_key(idempotency_key: Optional[str] = Header(default=None)) -> Optional[str]:
    """Idempotency-Key header with surrounding whitespace removed; blank means absent."""
    if idempotency_key is None:
        return None
    return idempotency_key.strip() or None


def order_view(order: Order | None) -> OrderView | None:
    if order is None or order.id is None:
        return None
    return OrderView(
        id=order.id,
        status=order.status,
        customer_email=order.customer_email,
        customer_name=order.customer_name,
        total=order.total,
        external_payment_ref=order.external_payment_ref,
        created_at=order.created_at,
        items=[
            OrderItemView(
                product_ref=item.product_ref,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                subtotal=item.subtotal,
            )
            for item in order.items
        ],
    )


def payment_view(payment: Payment | None) -> PaymentView | None:
    if payment is None or payment.id is None:
        return None
    return PaymentView(
        id=payment.id,
        provider=payment.provider,
        external_payment_id=payment.external_payment_id,
        status=payment.status,
        amount=payment.amount,
        currency=payment.currency,
        refunded_amount=payment.refunded_amount,
        failure_reason=payment.failure_reason,
        created_at=payment.created_at,
    )


def error_status(exc: PaymentsError) -> int:
    """HTTP status for a user-facing (non-webhook) request failure."""
    if isinstance(exc, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ProviderError) and exc.retryable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, (InvalidAmount, InvalidState, InvalidMetadata, ProviderError)):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_response(exc: PaymentsError) -> JSONResponse:
    message = exc.message if isinstance(exc, ProviderError) else str(exc)
    return JSONResponse(status_code=error_status(exc), content={"success": False, "error": message})
