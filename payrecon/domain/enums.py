from __future__ import annotations

from enum import Enum


class ProviderName(str, Enum):
    """Supported payment providers."""

    STRIPE = "stripe"
    TABBY = "tabby"


class CaptureState(str, Enum):
    """Provider-side capture sub-state kept in ``Payment.provider_metadata``."""

    AUTHORIZED = "authorized"
    CAPTURED = "captured"


class ReconcileResult(str, Enum):
    """What the reconciler did with an event."""

    CREATED = "CREATED"
    UPDATED = "UPDATED"
    UNCHANGED = "UNCHANGED"
    IGNORED = "IGNORED"
    DISCARDED = "DISCARDED"
