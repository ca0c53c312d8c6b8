"""
ConnectorRegistry — maps a provider kind to its connector and data provider.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import httpx

from connectors.base import BaseConnector, BaseDataProvider
from connectors.oauth2 import OAuth2Connector, OAuth2ProviderConfig
from utils.clock import Clock
from utils.errors import ProviderNotRegisteredError

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

# ── Google-family providers — add new ones here ─────────────────────────

_GOOGLE_PROVIDERS: Dict[str, tuple] = {
    "google_analytics": (
        "Google Analytics",
        ("https://www.googleapis.com/auth/analytics.readonly",),
    ),
    "google_ads": (
        "Google Ads",
        ("https://www.googleapis.com/auth/adwords",),
    ),
    "google_search_console": (
        "Google Search Console",
        ("https://www.googleapis.com/auth/webmasters.readonly",),
    ),
    "google_business_profile": (
        "Google Business Profile",
        ("https://www.googleapis.com/auth/business.manage",),
    ),
    "google_drive": (
        "Google Drive",
        (
            "https://www.googleapis.com/auth/drive.readonly",
            "https://www.googleapis.com/auth/drive.metadata.readonly",
        ),
    ),
    "google_sheets": (
        "Google Sheets",
        ("https://www.googleapis.com/auth/spreadsheets.readonly",),
    ),
    "youtube": (
        "YouTube",
        (
            "https://www.googleapis.com/auth/youtube.readonly",
            "https://www.googleapis.com/auth/yt-analytics.readonly",
        ),
    ),
}


class ConnectorRegistry:
    """Explicitly constructed registry; pass it to the services that need it."""

    def __init__(self) -> None:
        self._connectors: Dict[str, BaseConnector] = {}
        self._data_providers: Dict[str, BaseDataProvider] = {}

    def register_connector(self, connector: BaseConnector) -> None:
        if not connector.is_configured():
            logger.warning(
                "Connector %s skipped — not configured (missing client_id/secret)",
                connector.provider_name,
            )
            return
        self._connectors[connector.provider_name] = connector
        logger.info(
            "Connector registered: %s (%s)",
            connector.display_name,
            connector.provider_name,
        )

    def register_data_provider(self, provider: BaseDataProvider) -> None:
        self._data_providers[provider.provider_name] = provider
        logger.info("Data provider registered: %s", provider.provider_name)

    def get_connector(self, provider: str) -> BaseConnector:
        """
        Raises
        ------
        ProviderNotRegisteredError – unknown or unconfigured provider
        """
        connector = self._connectors.get(provider)
        if connector is None:
            raise ProviderNotRegisteredError(context={"provider": provider})
        return connector

    def get_data_provider(self, provider: str) -> BaseDataProvider:
        data_provider = self._data_providers.get(provider)
        if data_provider is None:
            raise ProviderNotRegisteredError(
                "No data provider registered",
                context={"provider": provider},
            )
        return data_provider

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all registered connectors."""
        return [
            {
                "provider": c.provider_name,
                "display_name": c.display_name,
                "scopes": c.scopes,
                "has_reports": c.provider_name in self._data_providers,
            }
            for c in self._connectors.values()
        ]

    def list_configured(self) -> List[str]:
        """Return names of configured connectors."""
        return list(self._connectors.keys())


def build_default_registry(
    settings,
    *,
    client: Optional[httpx.AsyncClient] = None,
    clock: Optional[Clock] = None,
) -> ConnectorRegistry:
    """Register a connector for every Google-family provider kind."""
    registry = ConnectorRegistry()
    for kind, (display_name, scopes) in _GOOGLE_PROVIDERS.items():
        registry.register_connector(
            OAuth2Connector(
                OAuth2ProviderConfig(
                    provider_name=kind,
                    display_name=display_name,
                    authorize_url=_GOOGLE_AUTH_URL,
                    token_url=_GOOGLE_TOKEN_URL,
                    revoke_url=_GOOGLE_REVOKE_URL,
                    client_id=settings.google_client_id,
                    client_secret=settings.google_client_secret,
                    redirect_uri=f"{settings.oauth_redirect_base}/api/{kind}/callback",
                    scopes=scopes,
                    # offline + consent: always get a refresh_token
                    extra_auth_params={"access_type": "offline", "prompt": "consent"},
                ),
                client=client,
                timeout=settings.http_timeout_seconds,
                clock=clock,
            )
        )
    return registry
