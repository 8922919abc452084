from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from payrecon.domain.dtos import (
    CaptureRequest,
    CaptureResponse,
    IncompleteReport,
    InspectResponse,
    LedgerCrossReference,
    OrphanReport,
    ProviderAttemptView,
    ProviderPaymentView,
    RecoverRequest,
    RecoverResponse,
    RefundInfo,
    RefundRequest,
    RefundResponse,
)
from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import PaymentsError
from payrecon.services.recovery import ProviderAttempt, RecoveryTool
from payrecon.services.refunds import RefundCaptureOrchestrator
from payrecon.utils.security import ROLE_ADMIN, require_role

from .deps import error_response, get_idempotency_key, get_orchestrator, get_recovery, order_view, payment_view

router = APIRouter(prefix="/api/payments", dependencies=[Depends(require_role(ROLE_ADMIN))])
logger = logging.getLogger(__name__)


def _window(hours: Optional[int]) -> Optional[timedelta]:
    return timedelta(hours=hours) if hours else None


def _attempt_view(attempt: ProviderAttempt) -> ProviderAttemptView:
    summary = attempt.summary
    return ProviderAttemptView(
        provider=attempt.provider,
        id=summary.id,
        status=summary.raw_status or summary.status,
        amount=summary.amount,
        currency=summary.currency,
        created=summary.created_at,
        customer_email=summary.customer_email,
        has_order=attempt.has_order,
    )


@router.post("/refund", response_model=RefundResponse)
async def refund_payment(
    body: RefundRequest,
    idempotency_key: Optional[str] = Depends(get_idempotency_key),
    orchestrator: RefundCaptureOrchestrator = Depends(get_orchestrator),
) -> RefundResponse | JSONResponse:
    """Refund part or all of a settled payment."""
    logger.info(
        "refund requested",
        extra={
            "endpoint": "/api/payments/refund",
            "payment_id": body.payment_id,
            "amount": body.amount,
            "idempotency_key": idempotency_key,
        },
    )
    try:
        result = await orchestrator.request_refund(body.payment_id, body.amount, body.reason, idempotency_key)
    except PaymentsError as exc:
        logger.info(
            "refund rejected",
            extra={"endpoint": "/api/payments/refund", "payment_id": body.payment_id, "error": str(exc)},
        )
        return error_response(exc)
    refund = result.refund
    return RefundResponse(
        success=True,
        refund=RefundInfo(id=refund.provider_refund_id, amount=refund.amount, status=refund.status) if refund else None,
        payment=payment_view(result.payment),
    )


@router.post("/capture", response_model=CaptureResponse)
async def capture_payment(
    body: CaptureRequest,
    orchestrator: RefundCaptureOrchestrator = Depends(get_orchestrator),
) -> CaptureResponse | JSONResponse:
    """Capture an authorized payment."""
    try:
        outcome = await orchestrator.request_capture(body.payment_id, body.amount)
    except PaymentsError as exc:
        logger.info(
            "capture rejected",
            extra={"endpoint": "/api/payments/capture", "payment_id": body.payment_id, "error": str(exc)},
        )
        return error_response(exc)
    return CaptureResponse(success=True, payment=payment_view(outcome.payment))


@router.get("/recover", response_model=InspectResponse)
async def inspect_payment(
    payment_intent_id: str = Query(..., alias="paymentIntentId", min_length=1),
    provider: Optional[ProviderName] = Query(default=None),
    recovery: RecoveryTool = Depends(get_recovery),
) -> InspectResponse | JSONResponse:
    """Show provider state for a payment next to what the ledger holds."""
    try:
        inspection = await recovery.inspect(payment_intent_id, provider)
    except PaymentsError as exc:
        return error_response(exc)
    detail = inspection.detail
    return InspectResponse(
        provider=ProviderPaymentView(
            id=detail.id,
            status=detail.raw_status or detail.status,
            amount=detail.amount,
            currency=detail.currency,
            created=detail.created_at,
            metadata=detail.metadata,
        ),
        database=LedgerCrossReference(
            order_exists=inspection.order is not None,
            payment_exists=inspection.payment is not None,
            order=order_view(inspection.order),
            payment=payment_view(inspection.payment),
        ),
    )


@router.post("/recover", response_model=RecoverResponse)
async def recover_payment(
    body: RecoverRequest,
    recovery: RecoveryTool = Depends(get_recovery),
) -> RecoverResponse | JSONResponse:
    """Create the missing order for a payment that succeeded at the provider."""
    logger.info(
        "recovery requested",
        extra={"endpoint": "/api/payments/recover", "external_payment_id": body.payment_intent_id, "provider": body.provider},
    )
    try:
        result = await recovery.recover(body.payment_intent_id, body.provider)
    except PaymentsError as exc:
        return error_response(exc)
    return RecoverResponse(
        success=result.success,
        message=result.message,
        status=result.status,
        order=order_view(result.order),
    )


@router.get("/orphans", response_model=OrphanReport)
async def orphaned_payments(
    hours: Optional[int] = Query(default=None, ge=1),
    recovery: RecoveryTool = Depends(get_recovery),
) -> OrphanReport | JSONResponse:
    """Provider-side successes that have no local order."""
    try:
        orphans = await recovery.find_orphaned_payments(_window(hours))
    except PaymentsError as exc:
        return error_response(exc)
    return OrphanReport(total=len(orphans), orphans=[_attempt_view(a) for a in orphans])


@router.get("/incomplete", response_model=IncompleteReport)
async def incomplete_payments(
    hours: Optional[int] = Query(default=None, ge=1),
    recovery: RecoveryTool = Depends(get_recovery),
) -> IncompleteReport | JSONResponse:
    """Provider-side attempts that never completed."""
    try:
        summary = await recovery.find_incomplete_payments(_window(hours))
    except PaymentsError as exc:
        return error_response(exc)
    return IncompleteReport(
        total=len(summary.attempts),
        without_orders=summary.without_orders,
        by_status=summary.by_status,
        payments=[_attempt_view(a) for a in summary.attempts],
    )
