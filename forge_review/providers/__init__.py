"""
Providers Package

Forge adapters behind a single ``ForgeProvider`` capability:
- base: protocol, errors, HTTP transport, signature helpers
- gitea: Gitea/Forgejo adapter

``create_provider`` dispatches on ``ProviderType``; declared forges without
an adapter raise ``NotImplementedError``.
"""

from typing import Callable, Dict, List, Optional

import httpx

from forge_review.config import Settings, get_settings
from forge_review.events import DEFAULT_TRIGGERS
from forge_review.models import ProviderType
from forge_review.providers.base import (
    ForgeHttpClient,
    ForgeProvider,
    PartialReviewError,
    ProviderConfig,
    TransportError,
    verify_hmac_sha256,
)
from forge_review.providers.gitea import GiteaProvider


def _create_gitea(config: ProviderConfig, **kwargs) -> ForgeProvider:
    return GiteaProvider(config, **kwargs)


_PROVIDER_FACTORIES: Dict[ProviderType, Callable[..., ForgeProvider]] = {
    ProviderType.GITEA: _create_gitea,
}


def supported_providers() -> List[ProviderType]:
    """Provider types that have a working adapter."""
    return list(_PROVIDER_FACTORIES)


def create_provider(
    config: ProviderConfig,
    trigger_keywords=DEFAULT_TRIGGERS,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> ForgeProvider:
    """
    Build the adapter for ``config.type``.

    Raises:
        NotImplementedError: For declared provider types without an adapter
    """
    factory = _PROVIDER_FACTORIES.get(ProviderType(config.type))
    if factory is None:
        raise NotImplementedError(f"Provider {ProviderType(config.type).value} is not implemented yet")
    return factory(config, trigger_keywords=trigger_keywords, transport=transport)


def create_provider_from_settings(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> ForgeProvider:
    """Build the configured forge adapter from application settings."""
    settings = settings or get_settings()
    config = ProviderConfig(
        type=settings.forge_provider,
        base_url=settings.forge_base_url,
        token=settings.forge_token,
        max_attempts=settings.forge_max_attempts,
        timeout_seconds=settings.forge_timeout_seconds,
        rate_limit_per_minute=settings.forge_rate_limit_per_minute,
    )
    return create_provider(
        config,
        trigger_keywords=settings.trigger_keywords_list or DEFAULT_TRIGGERS,
        transport=transport
    )


__all__ = [
    "ForgeHttpClient",
    "ForgeProvider",
    "GiteaProvider",
    "PartialReviewError",
    "ProviderConfig",
    "TransportError",
    "create_provider",
    "create_provider_from_settings",
    "supported_providers",
    "verify_hmac_sha256",
]
