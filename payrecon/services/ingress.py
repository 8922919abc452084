from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from payrecon.domain.enums import ProviderName, ReconcileResult
from payrecon.domain.errors import ConfigurationError, InvalidMetadata
from payrecon.domain.models import NormalizedEvent, ReconcileOutcome
from payrecon.providers.base import PaymentProvider
from payrecon.repositories.base import LedgerStore

from .reconciler import Reconciler


class WebhookIngress:
    """Authenticates provider webhook deliveries and hands them to the reconciler."""

    def __init__(
        self,
        reconciler: Reconciler,
        ledger: LedgerStore,
        providers: Mapping[ProviderName, PaymentProvider],
        secrets: Mapping[ProviderName, str],
    ):
        self.reconciler = reconciler
        self.ledger = ledger
        self.providers = providers
        self.secrets = secrets
        self.logger = logging.getLogger(__name__)

    async def receive(
        self, provider_name: ProviderName, raw_body: bytes, signature_header: str | None
    ) -> ReconcileOutcome:
        """Verify, reconcile and record one delivery.

        Raises ``SignatureError`` for forged or malformed deliveries and
        ``ConfigurationError`` when the provider or its secret is missing.
        ``InvalidMetadata`` is absorbed: redelivering the same payload cannot
        fix it, so the delivery is acknowledged and logged as an error.
        """
        provider = self.providers.get(provider_name)
        secret = self.secrets.get(provider_name)
        if provider is None or not secret:
            raise ConfigurationError(f"{provider_name.value} webhook not configured")

        event = provider.verify_webhook_signature(raw_body, signature_header, secret)
        log_extra = {
            "provider": provider_name,
            "event_id": event.event_id,
            "event": event.event_type,
            "external_payment_id": event.external_payment_id,
            "kind": event.kind,
        }
        self.logger.info("webhook received", extra=log_extra)

        try:
            outcome = await asyncio.to_thread(self.reconciler.handle_event, event)
        except InvalidMetadata as exc:
            self.logger.error(
                "webhook metadata invalid; order not created",
                extra={**log_extra, "error": str(exc), "outcome": "invalid_metadata"},
            )
            outcome = ReconcileOutcome(ReconcileResult.DISCARDED, detail=f"invalid metadata: {exc}")
            await self._record(provider_name, event, "invalid_metadata")
            return outcome

        await self._record(provider_name, event, outcome.result.value.lower())
        return outcome

    async def _record(self, provider_name: ProviderName, event: NormalizedEvent, outcome: str) -> None:
        await asyncio.to_thread(
            self.ledger.record_webhook,
            provider=provider_name,
            event_id=event.event_id,
            event_type=event.event_type,
            external_payment_id=event.external_payment_id,
            outcome=outcome,
            payload={
                "kind": event.kind.value if event.kind else None,
                "amount": str(event.amount) if event.amount is not None else None,
            },
        )
