from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Mapping

from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import (
    ConcurrentCreationDetected,
    InvalidAmount,
    InvalidState,
    NotFound,
    ProviderError,
)
from payrecon.domain.models import REFUND_RESERVED, Payment, ReconcileOutcome, RefundRecord
from payrecon.providers.base import PaymentProvider
from payrecon.providers.factory import get_provider_by_name
from payrecon.repositories.base import LedgerStore, TransitionResult
from payrecon.utils.money import ZERO, to_money

from .reconciler import Reconciler


class RefundCaptureOrchestrator:
    """Merchant-initiated refunds and captures.

    A refund first reserves its amount in the ledger, then calls the
    provider, then settles the reservation. A provider failure releases the
    reservation and leaves the ledger as it was.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        reconciler: Reconciler,
        providers: Mapping[ProviderName, PaymentProvider],
    ):
        self.ledger = ledger
        self.reconciler = reconciler
        self.providers = providers
        self.logger = logging.getLogger(__name__)

    async def _load(self, payment_id: int) -> Payment:
        payment = await asyncio.to_thread(self.ledger.get_payment, payment_id)
        if payment is None:
            raise NotFound(f"payment {payment_id} not found")
        return payment

    async def request_refund(
        self,
        payment_id: int,
        amount: Decimal,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> TransitionResult:
        if idempotency_key:
            existing = await asyncio.to_thread(self.ledger.get_refund_by_idempotency_key, idempotency_key)
            if existing is not None:
                return await self._replay(existing, payment_id)

        payment = await self._load(payment_id)
        try:
            requested = to_money(amount)
        except ValueError as exc:
            raise InvalidAmount(str(exc)) from exc
        if requested is None:
            raise InvalidAmount("refund amount is required")
        _, provider = get_provider_by_name(self.providers, payment.provider)

        try:
            reserved = await asyncio.to_thread(
                self.reconciler.reserve_refund, payment_id, requested, reason, idempotency_key
            )
        except ConcurrentCreationDetected:
            # Same idempotency key raced us to the ledger
            existing = await asyncio.to_thread(self.ledger.get_refund_by_idempotency_key, idempotency_key or "")
            if existing is None:
                raise
            return await self._replay(existing, payment_id)
        reservation = reserved.refund
        if reservation is None or reservation.id is None:
            raise InvalidState(f"refund for payment {payment_id} could not be reserved")

        self.logger.info(
            "requesting refund",
            extra={
                "payment_id": payment_id,
                "provider": payment.provider,
                "external_payment_id": payment.external_payment_id,
                "amount": requested,
                "idempotency_key": idempotency_key,
            },
        )
        try:
            result = await provider.refund_payment(
                payment.external_payment_id,
                requested,
                reason=reason,
                idempotency_key=idempotency_key,
                currency=payment.currency,
            )
        except ProviderError as exc:
            self.logger.warning(
                "provider refund failed",
                extra={"payment_id": payment_id, "error": exc.code, "retryable": exc.retryable},
            )
            await asyncio.to_thread(self.reconciler.release_refund, payment_id, reservation.id)
            raise

        reservation.amount = to_money(result.amount, default=requested)
        reservation.status = result.status
        reservation.provider_refund_id = result.refund_id
        return await asyncio.to_thread(self.reconciler.apply_refund, payment_id, reservation)

    async def _replay(self, refund: RefundRecord, payment_id: int) -> TransitionResult:
        if refund.payment_id != payment_id:
            raise InvalidState("idempotency key already used for a different payment")
        if refund.status == REFUND_RESERVED:
            raise InvalidState("a refund with this idempotency key is still in progress")
        payment = await self._load(payment_id)
        order = await asyncio.to_thread(self.ledger.get_order, payment.order_id)
        self.logger.info(
            "idempotency hit; returning recorded refund",
            extra={"payment_id": payment_id, "refund_id": refund.provider_refund_id, "idempotency_key": refund.idempotency_key},
        )
        return TransitionResult(order=order, payment=payment, changed=False, refund=refund)

    async def request_capture(self, payment_id: int, amount: Decimal | None = None) -> ReconcileOutcome:
        payment = await self._load(payment_id)
        self.reconciler.require_capturable(payment)
        if amount is not None:
            try:
                amount = to_money(amount)
            except ValueError as exc:
                raise InvalidAmount(str(exc)) from exc
            if amount is None or amount <= ZERO or amount > payment.amount:
                raise InvalidAmount(f"capture amount must be greater than 0 and at most {payment.amount}")
        _, provider = get_provider_by_name(self.providers, payment.provider)
        result = await provider.capture_payment(payment.external_payment_id, amount, currency=payment.currency)
        self.logger.info(
            "payment captured at provider",
            extra={
                "payment_id": payment_id,
                "provider": payment.provider,
                "external_payment_id": payment.external_payment_id,
                "amount": result.amount,
                "status": result.status,
            },
        )
        return await asyncio.to_thread(self.reconciler.apply_capture, payment, result.charge_id, result.amount)
