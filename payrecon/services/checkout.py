from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from payrecon.domain.dtos import CheckoutConfirmRequest, CheckoutRequest
from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import InvalidAmount, InvalidState
from payrecon.domain.models import NormalizedEvent, ReconcileOutcome
from payrecon.domain.statuses import EventKind
from payrecon.providers.base import (
    STATUS_AUTHORIZED,
    STATUS_SUCCEEDED,
    CreatedPayment,
    CreatePaymentRequest,
    PaymentProvider,
)
from payrecon.providers.factory import get_provider_by_name

from .reconciler import Reconciler


class CheckoutService:
    """Storefront checkout: start a provider payment, then confirm it into an order."""

    def __init__(
        self,
        reconciler: Reconciler,
        providers: Mapping[ProviderName, PaymentProvider],
        site_url: str = "",
    ):
        self.reconciler = reconciler
        self.providers = providers
        self.site_url = site_url.rstrip("/")
        self.logger = logging.getLogger(__name__)

    async def start(self, request: CheckoutRequest) -> CreatedPayment:
        _, provider = get_provider_by_name(self.providers, request.provider)
        currency = request.currency.upper()
        is_available = getattr(provider, "is_available", None)
        if callable(is_available) and not is_available(request.amount, currency):
            raise InvalidAmount(f"{request.provider.value} is not available for {request.amount} {currency}")
        created = await provider.create_payment(
            CreatePaymentRequest(
                amount=request.amount,
                currency=currency,
                metadata=request.to_metadata(),
                reference=request.order_reference,
                success_url=f"{self.site_url}/checkout/success" if self.site_url else None,
                cancel_url=f"{self.site_url}/checkout" if self.site_url else None,
            )
        )
        self.logger.info(
            "checkout started",
            extra={
                "provider": request.provider,
                "external_payment_id": created.provider_payment_id,
                "amount": request.amount,
                "currency": currency,
            },
        )
        return created

    async def confirm(self, request: CheckoutConfirmRequest) -> ReconcileOutcome:
        """Materialize the order for a completed checkout.

        Races with the provider webhook are harmless: both paths end in the
        same reconciler call and only one of them creates the order.
        """
        _, provider = get_provider_by_name(self.providers, request.provider)
        detail = await provider.retrieve_payment(request.payment_id)
        if detail.status == STATUS_SUCCEEDED:
            kind = EventKind.SUCCEEDED
        elif detail.status == STATUS_AUTHORIZED:
            kind = EventKind.AUTHORIZED
        else:
            self.logger.info(
                "checkout confirm rejected",
                extra={"provider": request.provider, "external_payment_id": request.payment_id, "status": detail.status},
            )
            raise InvalidState(f"payment not completed (status {detail.raw_status or detail.status})")

        event = NormalizedEvent(
            provider=request.provider,
            external_payment_id=detail.id,
            kind=kind,
            amount=detail.amount if detail.amount is not None else request.amount,
            currency=detail.currency or request.currency,
            metadata=request.to_metadata(),
            charge_id=detail.charge_id,
            event_type="checkout.confirm",
        )
        return await asyncio.to_thread(
            self.reconciler.handle_event, event, materialize_authorized=kind == EventKind.AUTHORIZED
        )
