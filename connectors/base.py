"""
Connector contracts — one pair per external marketing platform.

``BaseConnector`` covers the OAuth2 side (auth URL, code exchange, token
refresh); ``BaseDataProvider`` fetches report payloads with an access token.
Everything provider-specific lives behind these two interfaces so the
token lifecycle and the report cache are written once.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import TYPE_CHECKING, Any, FrozenSet, List, Optional

from utils.schemas import ReportQuery, TokenGrant

if TYPE_CHECKING:
    from utils.retry import RetryableFetcher


class BaseConnector(ABC):
    """Abstract base for all OAuth2 connectors."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'google_analytics', 'google_ads', 'meta_ads', …"""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'Google Analytics', 'Google Ads', …"""
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Opaque state string (encodes project_id + CSRF token).
        """
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange the authorization code from the OAuth redirect for tokens."""
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """
        Mint a new access token.  No persistence side effects.

        Raises
        ------
        InvalidGrantError       – refresh token revoked / expired (terminal)
        TransientUpstreamError  – network failure or 5xx
        UpstreamError           – any other token-endpoint failure
        """
        ...

    async def revoke_token(self, token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if provider doesn't support revocation.
        """
        return False

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """
        Return True if this connector has all required config
        (client IDs, secrets, …).
        """
        return True


class BaseDataProvider(ABC):
    """Fetches report payloads for one provider kind."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        ...

    @property
    def report_types(self) -> FrozenSet[str]:
        """Report types served; empty means any."""
        return frozenset()

    def supports(self, report_type: str) -> bool:
        return not self.report_types or report_type in self.report_types

    def cache_ttl(self, report_type: str) -> Optional[timedelta]:
        """Per-report cache lifetime; None falls back to the orchestrator default."""
        return None

    @abstractmethod
    async def fetch_report(
        self,
        query: ReportQuery,
        access_token: str,
        fetcher: "RetryableFetcher",
    ) -> Any:
        """
        Fetch one report.  All upstream HTTP goes through ``fetcher`` so rate
        limiting and backoff are handled uniformly.
        """
        ...
