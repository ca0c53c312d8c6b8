"""
SQLAlchemy-backed ReportCache.

Entries are upserted on (project_id, report_type, date_range_key); an entry
whose ``expires_at`` is not strictly in the future reads as absent.  Expired
rows are physically removed by ``sweep_expired`` (run periodically from
``main.py``).
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.connection_store import dialect_insert
from database.interfaces import ReportCache
from database.models import ReportCacheEntry, new_id
from utils.clock import Clock, as_utc

logger = logging.getLogger(__name__)


class SqlReportCache(ReportCache):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Optional[Clock] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or Clock()

    async def get(self, project_id: str, report_type: str, date_range_key: str) -> Optional[Any]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ReportCacheEntry).where(
                    ReportCacheEntry.project_id == project_id,
                    ReportCacheEntry.report_type == report_type,
                    ReportCacheEntry.date_range_key == date_range_key,
                )
            )
            entry = result.scalar_one_or_none()

        if entry is None:
            return None
        if as_utc(entry.expires_at) <= self._clock.now():
            logger.debug("Cache entry expired: %s/%s/%s", project_id, report_type, date_range_key)
            return None
        return entry.payload

    async def put(
        self,
        project_id: str,
        report_type: str,
        date_range_key: str,
        payload: Any,
        ttl: timedelta,
    ) -> None:
        now = self._clock.now()
        values = {
            "payload": payload,
            "expires_at": now + ttl,
            "created_at": now,
        }
        async with self._session_factory() as session:
            insert = dialect_insert(session)
            stmt = (
                insert(ReportCacheEntry)
                .values(
                    entry_id=new_id(),
                    project_id=project_id,
                    report_type=report_type,
                    date_range_key=date_range_key,
                    **values,
                )
                .on_conflict_do_update(
                    index_elements=["project_id", "report_type", "date_range_key"],
                    set_=values,
                )
            )
            await session.execute(stmt)
            await session.commit()

        logger.debug(
            "Cached %s for project %s (%s), ttl=%ss",
            report_type, project_id, date_range_key, int(ttl.total_seconds()),
        )

    async def invalidate(self, project_id: str, report_type: Optional[str] = None) -> int:
        stmt = delete(ReportCacheEntry).where(ReportCacheEntry.project_id == project_id)
        if report_type is not None:
            stmt = stmt.where(ReportCacheEntry.report_type == report_type)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0

    async def sweep_expired(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ReportCacheEntry).where(
                    ReportCacheEntry.expires_at <= self._clock.now()
                )
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Removed %d expired report cache entries", removed)
        return removed
