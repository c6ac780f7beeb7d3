"""Public connector utilities."""

from services.connectors.base import BaseConnector
from services.connectors.providers import (
    SELF_VALIDATING_PLATFORMS,
    connector_capabilities,
    get_connector,
    get_oauth_connector,
)
from services.connectors.types import (
    ConnectedAccount,
    ConnectorUnavailableError,
    DailyMetric,
    PlatformKey,
    PostMetric,
    SyncParams,
    SyncResult,
    TokenGrant,
)

__all__ = [
    "BaseConnector",
    "ConnectedAccount",
    "ConnectorUnavailableError",
    "DailyMetric",
    "PlatformKey",
    "PostMetric",
    "SELF_VALIDATING_PLATFORMS",
    "SyncParams",
    "SyncResult",
    "TokenGrant",
    "connector_capabilities",
    "get_connector",
    "get_oauth_connector",
]
