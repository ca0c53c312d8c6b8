"""
Token manager — get / refresh / store per-project OAuth tokens.

``AccessTokenProvider`` is the single interface that report fetching uses to
get a valid access token for a project + provider combination.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import timedelta
from typing import List, Optional, Tuple

from connectors.registry import ConnectorRegistry
from database.interfaces import ConnectionStore
from utils.clock import Clock
from utils.errors import (
    ConnectionNotFoundError,
    InvalidGrantError,
    ReauthorizationRequiredError,
    UpstreamError,
)
from utils.schemas import ConnectionInfo, ConnectionRecord

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)


class AccessTokenProvider:
    def __init__(
        self,
        store: ConnectionStore,
        registry: ConnectorRegistry,
        *,
        clock: Optional[Clock] = None,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
    ):
        self._store = store
        self._registry = registry
        self._clock = clock or Clock()
        self.refresh_buffer = refresh_buffer
        # One lock per (project_id, provider) while a refresh is in flight.
        self._refresh_locks: "weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    # ── access tokens ───────────────────────────────────────────────────

    async def get_access_token(self, project_id: str, provider: str) -> str:
        """
        Return a valid access token, refreshing it first when it expires
        within ``refresh_buffer`` (or has no known expiry).

        Raises
        ------
        ConnectionNotFoundError       – nothing stored for the pair
        ReauthorizationRequiredError  – provider answered invalid_grant
        ProviderNotRegisteredError    – no connector for ``provider``
        TransientUpstreamError / UpstreamError from the token endpoint
        """
        conn = await self._require_connection(project_id, provider)
        if self._is_fresh(conn):
            return conn.access_token

        lock = self._refresh_lock(project_id, provider)
        async with lock:
            # A concurrent caller may have refreshed while we waited.
            conn = await self._require_connection(project_id, provider)
            if self._is_fresh(conn):
                return conn.access_token
            return await self._refresh(conn)

    def _is_fresh(self, conn: ConnectionRecord) -> bool:
        if not conn.access_token or conn.expires_at is None:
            return False
        return conn.expires_at - self._clock.now() > self.refresh_buffer

    def _refresh_lock(self, project_id: str, provider: str) -> asyncio.Lock:
        key = (project_id, provider)
        lock = self._refresh_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[key] = lock
        return lock

    async def _refresh(self, conn: ConnectionRecord) -> str:
        connector = self._registry.get_connector(conn.provider)
        logger.info(
            "Access token for %s/%s expired or missing, refreshing",
            conn.project_id, conn.provider,
        )
        try:
            grant = await connector.refresh_access_token(conn.refresh_token)
        except InvalidGrantError as exc:
            # Stored refresh token is left in place for diagnostics.
            logger.warning(
                "Refresh token for %s/%s rejected, reauthorization required",
                conn.project_id, conn.provider,
            )
            raise ReauthorizationRequiredError(
                context={"project_id": conn.project_id, "provider": conn.provider},
            ) from exc

        # Some providers rotate refresh tokens; update_tokens stores the new one.
        stored = await self._store.update_tokens(
            conn.project_id, conn.provider, conn.refresh_token, grant
        )
        if stored is None:
            # Disconnected or reconnected while the refresh was in flight.
            logger.info(
                "Connection %s/%s changed during refresh, discarding refreshed token",
                conn.project_id, conn.provider,
            )
            current = await self._require_connection(conn.project_id, conn.provider)
            if self._is_fresh(current):
                return current.access_token
            return await self._refresh(current)

        logger.info("Refreshed %s token for project %s", conn.provider, conn.project_id)
        return grant.access_token

    async def _require_connection(self, project_id: str, provider: str) -> ConnectionRecord:
        conn = await self._store.get(project_id, provider)
        if conn is None:
            raise ConnectionNotFoundError(
                context={"project_id": project_id, "provider": provider},
            )
        return conn

    # ── connection lifecycle ────────────────────────────────────────────

    def build_auth_url(self, provider: str, state: str) -> str:
        return self._registry.get_connector(provider).get_auth_url(state)

    async def connect(self, project_id: str, provider: str, code: str) -> ConnectionInfo:
        """
        Finish an OAuth callback: exchange ``code`` and store the connection,
        superseding any previous one for the pair.
        """
        connector = self._registry.get_connector(provider)
        grant = await connector.exchange_code(code)
        if not grant.refresh_token:
            raise UpstreamError(
                "Provider did not return a refresh token; revoke app access and reconnect",
                context={"project_id": project_id, "provider": provider},
            )

        record = ConnectionRecord(
            project_id=project_id,
            provider=provider,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
            scopes=grant.scopes,
            account_label=grant.account_label,
        )
        stored = await self._store.upsert(project_id, provider, record)
        logger.info("OAuth connected: project=%s provider=%s", project_id, provider)
        return _to_info(stored)

    async def disconnect(self, project_id: str, provider: str) -> bool:
        """
        Revoke (best effort) and delete a connection.
        Returns True if deleted, False if not found.
        """
        conn = await self._store.get(project_id, provider)
        if conn is None:
            return False

        try:
            connector = self._registry.get_connector(provider)
            await connector.revoke_token(conn.refresh_token)
        except Exception as exc:
            logger.warning("Revocation failed for %s/%s: %s", project_id, provider, exc)

        deleted = await self._store.delete(project_id, provider)
        logger.info("Disconnected %s for project %s", provider, project_id)
        return deleted

    async def list_connections(self, project_id: str) -> List[ConnectionInfo]:
        """Return all connections for a project (no tokens exposed)."""
        return [_to_info(c) for c in await self._store.list_for_project(project_id)]


def _to_info(conn: ConnectionRecord) -> ConnectionInfo:
    return ConnectionInfo(
        project_id=conn.project_id,
        provider=conn.provider,
        account_label=conn.account_label,
        scopes=conn.scopes,
        expires_at=conn.expires_at,
        connected_at=conn.created_at,
        updated_at=conn.updated_at,
    )
