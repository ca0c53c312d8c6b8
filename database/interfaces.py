"""
Persistence contracts for credentials and cached reports.

The SQLAlchemy implementations live next to this module; tests swap in
in-memory fakes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, List, Optional

from utils.schemas import ConnectionRecord, TokenGrant


class ConnectionStore(ABC):
    """At most one ``ConnectionRecord`` per (project_id, provider)."""

    @abstractmethod
    async def upsert(self, project_id: str, provider: str, record: ConnectionRecord) -> ConnectionRecord:
        """Insert or atomically replace the connection for the pair."""
        ...

    @abstractmethod
    async def update_tokens(
        self,
        project_id: str,
        provider: str,
        expected_refresh_token: str,
        grant: TokenGrant,
    ) -> Optional[ConnectionRecord]:
        """
        Write a refreshed grant onto the existing connection, only while it
        still holds ``expected_refresh_token``.  Never inserts.

        Returns the updated record, or None when the connection was deleted
        or replaced in the meantime.
        """
        ...

    @abstractmethod
    async def get(self, project_id: str, provider: str) -> Optional[ConnectionRecord]:
        ...

    @abstractmethod
    async def delete(self, project_id: str, provider: str) -> bool:
        """Return True if a connection was removed."""
        ...

    @abstractmethod
    async def list_for_project(self, project_id: str) -> List[ConnectionRecord]:
        ...


class ReportCache(ABC):
    """TTL-keyed report payloads, identity (project_id, report_type, date_range_key)."""

    @abstractmethod
    async def get(self, project_id: str, report_type: str, date_range_key: str) -> Optional[Any]:
        """Return the payload, or None if absent or expired."""
        ...

    @abstractmethod
    async def put(
        self,
        project_id: str,
        report_type: str,
        date_range_key: str,
        payload: Any,
        ttl: timedelta,
    ) -> None:
        """Upsert with ``expires_at = now + ttl``."""
        ...

    @abstractmethod
    async def invalidate(self, project_id: str, report_type: Optional[str] = None) -> int:
        """Drop a project's entries (optionally one report type); return the count."""
        ...

    @abstractmethod
    async def sweep_expired(self) -> int:
        """Delete expired entries; return the count."""
        ...
