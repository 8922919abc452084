from __future__ import annotations


class PaymentsError(Exception):
    """Base class for errors raised by the reconciliation pipeline."""


class SignatureError(PaymentsError):
    """Webhook signature could not be verified."""


class ProviderError(PaymentsError):
    """Failure talking to, or rejected by, a payment provider.

    ``retryable`` tells callers whether the same request may succeed later
    (timeouts, connection problems, rate limits, provider 5xx).
    """

    def __init__(self, code: str, message: str, retryable: bool = False, provider: str | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.provider = provider

    def __repr__(self) -> str:
        return f"ProviderError(code={self.code!r}, retryable={self.retryable}, provider={self.provider!r})"


class InvalidAmount(PaymentsError):
    """Requested amount violates the payment's refundable/capturable bounds."""


class InvalidState(PaymentsError):
    """Operation is not allowed in the payment's current status."""


class InvalidMetadata(PaymentsError):
    """Provider metadata lacks the customer fields needed to build an order."""


class NotFound(PaymentsError):
    """Referenced payment or order does not exist."""


class ConcurrentCreationDetected(PaymentsError):
    """Another transaction created the order/payment for this external id first."""

    def __init__(self, provider: str, external_payment_id: str):
        super().__init__(f"{provider}:{external_payment_id} already materialized")
        self.provider = provider
        self.external_payment_id = external_payment_id


class ConfigurationError(PaymentsError):
    """Required provider credentials or secrets are missing."""
