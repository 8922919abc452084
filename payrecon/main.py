from __future__ import annotations

import logging
from datetime import timedelta
from typing import Mapping, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse

from payrecon.config import Settings
from payrecon.domain.enums import ProviderName
from payrecon.logging import setup_logging
from payrecon.providers.base import PaymentProvider
from payrecon.providers.factory import build_providers
from payrecon.repositories.base import LedgerStore
from payrecon.repositories.memory_store import InMemoryLedgerStore
from payrecon.routes import checkout, health, payments, webhooks
from payrecon.services.checkout import CheckoutService
from payrecon.services.ingress import WebhookIngress
from payrecon.services.reconciler import Reconciler
from payrecon.services.recovery import RecoveryTool
from payrecon.services.refunds import RefundCaptureOrchestrator
from payrecon.utils.security import require_basic_auth

logger = logging.getLogger(__name__)


def build_ledger(settings: Settings) -> LedgerStore:
    """PostgreSQL ledger when configured, otherwise a process-local one."""
    if settings.db_enabled:
        from payrecon.db.client import ConnectionPool
        from payrecon.repositories.pg_store import PgLedgerStore

        return PgLedgerStore(ConnectionPool(settings))
    logger.warning("database not configured; using in-memory ledger", extra={"event": "ledger_memory"})
    return InMemoryLedgerStore()


def create_app(
    settings: Optional[Settings] = None,
    ledger: Optional[LedgerStore] = None,
    providers: Optional[Mapping[ProviderName, PaymentProvider]] = None,
) -> FastAPI:
    """Composition root: wire settings, ledger, providers and services into an app."""
    settings = settings or Settings()
    ledger = ledger if ledger is not None else build_ledger(settings)
    providers = dict(providers) if providers is not None else build_providers(settings)

    reconciler = Reconciler(ledger, default_currency=settings.default_currency)
    secrets = {
        ProviderName.STRIPE: settings.stripe_webhook_secret,
        ProviderName.TABBY: settings.tabby_webhook_secret,
    }

    app = FastAPI(title="payrecon", version=settings.app_version, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.providers = providers
    app.state.reconciler = reconciler
    app.state.ingress = WebhookIngress(reconciler, ledger, providers, secrets)
    app.state.orchestrator = RefundCaptureOrchestrator(ledger, reconciler, providers)
    app.state.recovery = RecoveryTool(
        ledger, reconciler, providers, default_window=timedelta(hours=settings.recovery_window_hours)
    )
    app.state.checkout = CheckoutService(reconciler, providers, site_url=settings.site_url)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(payments.router)
    app.include_router(checkout.router)

    @app.get("/openapi.json", include_in_schema=False)
    def custom_openapi(_: None = Depends(require_basic_auth)):
        return JSONResponse(content=app.openapi())

    @app.get("/docs", include_in_schema=False)
    def custom_swagger_ui(_: None = Depends(require_basic_auth)):
        return get_swagger_ui_html(openapi_url="/openapi.json", title="payrecon API")

    @app.get("/redoc", include_in_schema=False)
    def custom_redoc(_: None = Depends(require_basic_auth)):
        return get_redoc_html(openapi_url="/openapi.json", title="payrecon API ReDoc")

    return app


setup_logging()
app = create_app()
