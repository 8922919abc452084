from __future__ import annotations

import asyncio
import logging
import os
import platform
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request

from payrecon.domain.statuses import PaymentStatus
from payrecon.repositories.base import LedgerStore

from .deps import get_ledger

router = APIRouter()
logger = logging.getLogger(__name__)

SERVICE_STARTED_AT = datetime.now(timezone.utc)


@router.get("/health")
async def health() -> dict[str, str]:
    """Simple health check endpoint for load balancers."""
    return {"status": "ok"}


def _collect_ledger_metrics(ledger: LedgerStore) -> dict[str, Any]:
    metrics: dict[str, Any] = {
        "connected": False,
        "payment_status_counts": {},
        "payment_status_counts_display": {},
        "order_status_counts": {},
    }
    try:
        counts = ledger.status_counts()
    except Exception as exc:  # noqa: BLE001
        logger.info("health metrics collection failed", extra={"error": str(exc)})
        return metrics
    metrics["connected"] = True
    metrics["payment_status_counts"] = counts.get("payments", {})
    metrics["order_status_counts"] = counts.get("orders", {})
    for status_key, count in metrics["payment_status_counts"].items():
        try:
            label = PaymentStatus(status_key).display_name
        except ValueError:
            label = status_key
        metrics["payment_status_counts_display"][label] = count
    return metrics


@router.get("/health/metrics")
async def health_metrics(request: Request, ledger: LedgerStore = Depends(get_ledger)) -> dict[str, Any]:
    """Detailed service health endpoint with lightweight operational metrics."""

    settings = request.app.state.settings
    captured_at = datetime.now(timezone.utc)
    raw_metrics = await asyncio.to_thread(_collect_ledger_metrics, ledger)
    connected = bool(raw_metrics.pop("connected", False))
    uptime_seconds = int((captured_at - SERVICE_STARTED_AT).total_seconds())

    return {
        "status": "ok" if connected else "degraded",
        "timestamp": captured_at.isoformat(),
        "uptime_seconds": uptime_seconds,
        "service": {
            "providers": sorted(p.value for p in request.app.state.providers),
            "environment": settings.app_env,
            "version": settings.app_version,
            "host": platform.node(),
            "pid": os.getpid(),
        },
        "ledger": {
            "connected": connected,
            "backend": "postgresql" if settings.db_enabled else "memory",
            "schema": settings.db_schema if settings.db_enabled else None,
        },
        "payments": raw_metrics,
    }
