from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from payrecon.domain.dtos import WebhookAck
from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import ConfigurationError, ProviderError, SignatureError
from payrecon.services.ingress import WebhookIngress
from payrecon.utils.security import get_settings

from .deps import get_ingress

router = APIRouter(prefix="/api/webhooks")
logger = logging.getLogger(__name__)


async def _receive(
    ingress: WebhookIngress, provider: ProviderName, raw_body: bytes, signature: str | None
) -> WebhookAck:
    endpoint = f"/api/webhooks/{provider.value}"
    try:
        outcome = await ingress.receive(provider, raw_body, signature)
    except SignatureError as exc:
        logger.warning("webhook signature rejected", extra={"endpoint": endpoint, "provider": provider, "error": str(exc)})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from exc
    except ConfigurationError as exc:
        logger.error("webhook not configured", extra={"endpoint": endpoint, "provider": provider, "error": str(exc)})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        ) from exc
    except ProviderError as exc:
        logger.warning(
            "webhook provider error",
            extra={"endpoint": endpoint, "provider": provider, "error": exc.code, "retryable": exc.retryable},
        )
        code = status.HTTP_503_SERVICE_UNAVAILABLE if exc.retryable else status.HTTP_400_BAD_REQUEST
        raise HTTPException(status_code=code, detail=exc.message) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("webhook handling failed", extra={"endpoint": endpoint, "provider": provider})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook processing failed; retry later",
        ) from exc
    logger.info(
        "webhook handled",
        extra={"endpoint": endpoint, "provider": provider, "outcome": outcome.result, "reason": outcome.detail},
    )
    return WebhookAck()


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request, ingress: WebhookIngress = Depends(get_ingress)) -> WebhookAck:
    raw_body = await request.body()
    return await _receive(ingress, ProviderName.STRIPE, raw_body, request.headers.get("Stripe-Signature"))


@router.post("/tabby", response_model=WebhookAck)
async def tabby_webhook(request: Request, ingress: WebhookIngress = Depends(get_ingress)) -> WebhookAck:
    raw_body = await request.body()
    header_name = get_settings(request).tabby_webhook_header
    return await _receive(ingress, ProviderName.TABBY, raw_body, request.headers.get(header_name))
