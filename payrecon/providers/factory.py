from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

from payrecon.config import Settings
from payrecon.domain.enums import ProviderName
from payrecon.domain.errors import ProviderError

from .base import PaymentProvider

logger = logging.getLogger(__name__)


def build_providers(settings: Settings) -> Dict[ProviderName, PaymentProvider]:
    """Instantiate every provider that has credentials configured."""
    providers: Dict[ProviderName, PaymentProvider] = {}
    if settings.stripe_secret_key:
        from .stripe_card import StripeCardProvider

        providers[ProviderName.STRIPE] = StripeCardProvider(settings)
    if settings.tabby_secret_key:
        from .tabby_bnpl import TabbyBnplProvider

        providers[ProviderName.TABBY] = TabbyBnplProvider(settings)
    logger.info("providers registered", extra={"provider": ",".join(p.value for p in providers) or "none"})
    return providers


def get_provider_by_name(
    providers: Mapping[ProviderName, PaymentProvider], name: Optional[str]
) -> tuple[ProviderName, PaymentProvider]:
    """Return a registered provider by normalized name, defaulting to Stripe."""
    normalized = str(getattr(name, "value", name) or ProviderName.STRIPE.value).lower()
    try:
        key = ProviderName(normalized)
    except ValueError:
        raise ProviderError("unknown_provider", f"Unknown provider {name}") from None
    provider = providers.get(key)
    if provider is None:
        raise ProviderError("not_configured", f"provider {key.value} is not configured", provider=key.value)
    return key, provider
