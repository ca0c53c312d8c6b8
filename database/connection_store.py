"""
SQLAlchemy-backed ConnectionStore.

Upserts use the dialect's ``INSERT … ON CONFLICT DO UPDATE`` on the
(project_id, provider) unique constraint, so two concurrent writes for the
same pair can never leave two rows behind.  Refreshed tokens go through
``update_tokens`` instead, which only touches the row the refresh started
from and never re-creates a deleted one.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import TokenCipher
from database.interfaces import ConnectionStore
from database.models import ProviderConnection, new_id
from utils.clock import Clock, as_utc
from utils.schemas import ConnectionRecord, TokenGrant

logger = logging.getLogger(__name__)


def dialect_insert(session: AsyncSession):
    """Return the ``insert`` construct that supports ``on_conflict_do_update``."""
    if session.bind.dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


class SqlConnectionStore(ConnectionStore):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        cipher: Optional[TokenCipher] = None,
        clock: Optional[Clock] = None,
    ):
        self._session_factory = session_factory
        self._cipher = cipher or TokenCipher(None)
        self._clock = clock or Clock()

    async def upsert(self, project_id: str, provider: str, record: ConnectionRecord) -> ConnectionRecord:
        now = self._clock.now()
        values = {
            "access_token": self._encrypt(record.access_token),
            "refresh_token": self._cipher.encrypt(record.refresh_token),
            "expires_at": record.expires_at,
            "scopes": list(record.scopes),
            "account_label": record.account_label,
            "updated_at": now,
        }
        async with self._session_factory() as session:
            insert = dialect_insert(session)
            stmt = (
                insert(ProviderConnection)
                .values(
                    connection_id=new_id(),
                    project_id=project_id,
                    provider=provider,
                    created_at=now,
                    **values,
                )
                .on_conflict_do_update(
                    index_elements=["project_id", "provider"],
                    set_=values,
                )
            )
            await session.execute(stmt)
            await session.commit()

            row = await self._fetch(session, project_id, provider)

        logger.debug("Stored %s connection for project %s", provider, project_id)
        return self._to_record(row)

    async def update_tokens(
        self,
        project_id: str,
        provider: str,
        expected_refresh_token: str,
        grant: TokenGrant,
    ) -> Optional[ConnectionRecord]:
        async with self._session_factory() as session:
            row = await self._fetch(session, project_id, provider)
            if row is None or self._cipher.decrypt(row.refresh_token) != expected_refresh_token:
                return None

            values = {
                "access_token": self._encrypt(grant.access_token),
                "expires_at": grant.expires_at,
                "updated_at": self._clock.now(),
            }
            if grant.refresh_token:
                values["refresh_token"] = self._cipher.encrypt(grant.refresh_token)

            # Compare-and-swap against the stored ciphertext read above.
            result = await session.execute(
                update(ProviderConnection)
                .where(
                    ProviderConnection.connection_id == row.connection_id,
                    ProviderConnection.refresh_token == row.refresh_token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                await session.rollback()
                return None
            await session.commit()

            row = await self._fetch(session, project_id, provider)

        logger.debug("Updated %s tokens for project %s", provider, project_id)
        return self._to_record(row) if row else None

    async def get(self, project_id: str, provider: str) -> Optional[ConnectionRecord]:
        async with self._session_factory() as session:
            row = await self._fetch(session, project_id, provider)
        return self._to_record(row) if row else None

    async def delete(self, project_id: str, provider: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ProviderConnection).where(
                    ProviderConnection.project_id == project_id,
                    ProviderConnection.provider == provider,
                )
            )
            await session.commit()
        return (result.rowcount or 0) > 0

    async def list_for_project(self, project_id: str) -> List[ConnectionRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProviderConnection)
                .where(ProviderConnection.project_id == project_id)
                .order_by(ProviderConnection.provider)
            )
            rows = result.scalars().all()
        return [self._to_record(row) for row in rows]

    # ── helpers ─────────────────────────────────────────────────────────

    @staticmethod
    async def _fetch(session: AsyncSession, project_id: str, provider: str) -> Optional[ProviderConnection]:
        result = await session.execute(
            select(ProviderConnection)
            .where(
                ProviderConnection.project_id == project_id,
                ProviderConnection.provider == provider,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _encrypt(self, token: Optional[str]) -> Optional[str]:
        return self._cipher.encrypt(token) if token else None

    def _to_record(self, row: ProviderConnection) -> ConnectionRecord:
        return ConnectionRecord(
            project_id=row.project_id,
            provider=row.provider,
            access_token=self._cipher.decrypt(row.access_token) if row.access_token else None,
            refresh_token=self._cipher.decrypt(row.refresh_token),
            expires_at=as_utc(row.expires_at),
            scopes=row.scopes or [],
            account_label=row.account_label,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )
