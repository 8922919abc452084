from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from payrecon.domain.dtos import (
    CheckoutConfirmRequest,
    CheckoutConfirmResponse,
    CheckoutIntentResponse,
    CheckoutRequest,
)
from payrecon.domain.enums import ReconcileResult
from payrecon.domain.errors import PaymentsError
from payrecon.services.checkout import CheckoutService
from payrecon.utils.security import ROLE_STOREFRONT, require_role

from .deps import error_response, get_checkout, order_view, payment_view

router = APIRouter(prefix="/api/checkout", dependencies=[Depends(require_role(ROLE_STOREFRONT))])
logger = logging.getLogger(__name__)


@router.post("/intents", response_model=CheckoutIntentResponse)
async def create_intent(
    body: CheckoutRequest,
    checkout: CheckoutService = Depends(get_checkout),
) -> CheckoutIntentResponse | JSONResponse:
    logger.info(
        "checkout intent requested",
        extra={"endpoint": "/api/checkout/intents", "provider": body.provider, "amount": body.amount},
    )
    try:
        created = await checkout.start(body)
    except PaymentsError as exc:
        return error_response(exc)
    return CheckoutIntentResponse(
        provider=body.provider,
        payment_id=created.provider_payment_id,
        client_secret=created.client_secret,
        checkout_url=created.redirect_url,
    )


@router.post("/confirm", response_model=CheckoutConfirmResponse)
async def confirm_checkout(
    body: CheckoutConfirmRequest,
    checkout: CheckoutService = Depends(get_checkout),
) -> CheckoutConfirmResponse | JSONResponse:
    logger.info(
        "checkout confirm requested",
        extra={"endpoint": "/api/checkout/confirm", "provider": body.provider, "external_payment_id": body.payment_id},
    )
    try:
        outcome = await checkout.confirm(body)
    except PaymentsError as exc:
        return error_response(exc)
    return CheckoutConfirmResponse(
        success=outcome.result in (ReconcileResult.CREATED, ReconcileResult.UPDATED, ReconcileResult.UNCHANGED),
        result=outcome.result,
        order=order_view(outcome.order),
        payment=payment_view(outcome.payment),
    )
