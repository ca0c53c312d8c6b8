"""
OAuth2Connector — standard authorization-code + refresh-token flow.

One class serves every provider whose token endpoint follows RFC 6749
(Google family, LinkedIn, …); a provider is just an ``OAuth2ProviderConfig``
with its endpoints and scopes.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx

from connectors.base import BaseConnector
from utils.clock import Clock
from utils.errors import InvalidGrantError, TransientUpstreamError, UpstreamError
from utils.schemas import TokenGrant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OAuth2ProviderConfig:
    provider_name: str
    display_name: str
    authorize_url: str
    token_url: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: Tuple[str, ...] = ()
    revoke_url: Optional[str] = None
    extra_auth_params: Mapping[str, str] = field(default_factory=dict)


class OAuth2Connector(BaseConnector):
    """Generic OAuth2 connector configured per provider."""

    def __init__(
        self,
        settings: OAuth2ProviderConfig,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings
        self._client = client
        self._timeout = httpx.Timeout(timeout)
        self._clock = clock or Clock()

    @property
    def provider_name(self) -> str:
        return self.settings.provider_name

    @property
    def display_name(self) -> str:
        return self.settings.display_name

    @property
    def scopes(self) -> List[str]:
        return list(self.settings.scopes)

    def is_configured(self) -> bool:
        return bool(self.settings.client_id and self.settings.client_secret)

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.client_id,
            "redirect_uri": self.settings.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.settings.scopes),
            "state": state,
            **self.settings.extra_auth_params,
        }
        return f"{self.settings.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange auth code for tokens."""
        try:
            body = await self._token_request({
                "code": code,
                "client_id": self.settings.client_id,
                "client_secret": self.settings.client_secret,
                "redirect_uri": self.settings.redirect_uri,
                "grant_type": "authorization_code",
            })
        except InvalidGrantError as exc:
            raise UpstreamError(
                "Authorization code rejected by provider",
                status_code=400,
                context={"provider": self.provider_name},
            ) from exc
        return self._grant_from(body)

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Use refresh token to get a new access token."""
        body = await self._token_request({
            "client_id": self.settings.client_id,
            "client_secret": self.settings.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        })
        return self._grant_from(body)

    async def revoke_token(self, token: str) -> bool:
        if not self.settings.revoke_url:
            return False
        try:
            async with self._http() as client:
                resp = await client.post(
                    self.settings.revoke_url,
                    params={"token": token},
                    timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            logger.warning("Token revocation failed for %s: %s", self.provider_name, exc)
            return False
        return resp.status_code == 200

    # ── helpers ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient() as client:
            yield client

    async def _token_request(self, data: Dict[str, str]) -> Dict[str, Any]:
        """POST to the token endpoint and classify failures."""
        context = {"provider": self.provider_name}
        try:
            async with self._http() as client:
                resp = await client.post(
                    self.settings.token_url,
                    data=data,
                    headers={"Accept": "application/json"},
                    timeout=self._timeout,
                )
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"Token endpoint unreachable: {exc}", context=context) from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if resp.is_success:
            return body

        error = body.get("error")
        if error == "invalid_grant":
            logger.warning(
                "Token endpoint returned invalid_grant for %s: %s",
                self.provider_name, body.get("error_description", ""),
            )
            raise InvalidGrantError(
                body.get("error_description") or None,
                context=context,
            )
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientUpstreamError(
                f"Token endpoint returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                context=context,
            )
        raise UpstreamError(
            f"Token endpoint returned HTTP {resp.status_code}: {error or resp.text[:200]}",
            status_code=resp.status_code,
            context=context,
        )

    def _grant_from(self, body: Dict[str, Any]) -> TokenGrant:
        access_token = body.get("access_token")
        if not access_token:
            raise UpstreamError(
                "Token endpoint response has no access_token",
                context={"provider": self.provider_name},
            )
        expires_in = body.get("expires_in")
        expires_at = None
        if expires_in is not None:
            try:
                seconds = int(expires_in)
            except (TypeError, ValueError) as exc:
                raise UpstreamError(
                    "Token endpoint returned an invalid expires_in",
                    context={"provider": self.provider_name, "expires_in": str(expires_in)},
                ) from exc
            expires_at = self._clock.now() + timedelta(seconds=seconds)
        scope = body.get("scope") or ""
        return TokenGrant(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_at=expires_at,
            scopes=scope.split() if isinstance(scope, str) else list(scope),
        )
