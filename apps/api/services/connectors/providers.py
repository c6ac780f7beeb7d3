"""Connector registry: one connector class per platform, one OAuth app per provider."""

from __future__ import annotations

from typing import Dict, Optional, Type

from services.connectors.base import BaseConnector
from services.connectors.linkedin import LinkedInConnector
from services.connectors.meta import FacebookConnector, InstagramConnector
from services.connectors.tiktok import TikTokConnector
from services.connectors.twitter import TwitterConnector
from services.connectors.types import OAuthProviderKey, PlatformKey, RefreshMode
from services.connectors.youtube import YouTubeConnector
from services.platforms.api_client import ApiExecutor
from services.platforms.negotiation import VariantNegotiator


CONNECTORS: Dict[str, Type[BaseConnector]] = {
    "instagram": InstagramConnector,
    "facebook": FacebookConnector,
    "tiktok": TikTokConnector,
    "youtube": YouTubeConnector,
    "twitter": TwitterConnector,
    "linkedin": LinkedInConnector,
}

# Meta's handshake lists Facebook pages and their linked Instagram accounts together.
OAUTH_CONNECTORS: Dict[str, Type[BaseConnector]] = {
    "meta": FacebookConnector,
    "tiktok": TikTokConnector,
    "youtube": YouTubeConnector,
    "twitter": TwitterConnector,
    "linkedin": LinkedInConnector,
}

SELF_VALIDATING_PLATFORMS = frozenset(
    platform for platform, cls in CONNECTORS.items() if cls.refresh_mode is RefreshMode.VALIDATE
)


def get_connector(
    platform: PlatformKey,
    executor: ApiExecutor,
    negotiator: Optional[VariantNegotiator] = None,
) -> BaseConnector:
    try:
        connector_cls = CONNECTORS[platform]
    except KeyError:
        raise ValueError(f"Unsupported platform: {platform}") from None
    return connector_cls(executor, negotiator)


def get_oauth_connector(provider: OAuthProviderKey, executor: ApiExecutor) -> BaseConnector:
    try:
        connector_cls = OAUTH_CONNECTORS[provider]
    except KeyError:
        raise ValueError(f"Unsupported OAuth provider: {provider}") from None
    return connector_cls(executor)


def connector_capabilities() -> Dict[str, bool]:
    executor = ApiExecutor()
    return {
        f"{provider}_oauth_available": connector_cls(executor).is_configured()
        for provider, connector_cls in OAUTH_CONNECTORS.items()
    }
