"""
Shared fakes and fixtures.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from connectors.base import BaseConnector, BaseDataProvider
from connectors.registry import ConnectorRegistry
from database.interfaces import ConnectionStore, ReportCache
from database.session import build_engine, build_session_factory, init_models
from utils.clock import Clock
from utils.schemas import ConnectionRecord, ReportQuery, TokenGrant


# ── clock ──────────────────────────────────────────────────────────────────────


class FakeClock(Clock):
    def __init__(self, now: Optional[datetime] = None):
        self.current = now or datetime(2024, 1, 22, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


# ── stores ─────────────────────────────────────────────────────────────────────


class InMemoryConnectionStore(ConnectionStore):
    def __init__(self, clock: Clock):
        self.rows: Dict[Tuple[str, str], ConnectionRecord] = {}
        self.token_updates = 0
        self._clock = clock

    async def upsert(self, project_id, provider, record):
        existing = self.rows.get((project_id, provider))
        stored = record.model_copy(
            update={
                "project_id": project_id,
                "provider": provider,
                "created_at": existing.created_at if existing else self._clock.now(),
                "updated_at": self._clock.now(),
            }
        )
        self.rows[(project_id, provider)] = stored
        return stored

    async def update_tokens(self, project_id, provider, expected_refresh_token, grant):
        current = self.rows.get((project_id, provider))
        if current is None or current.refresh_token != expected_refresh_token:
            return None
        stored = current.model_copy(
            update={
                "access_token": grant.access_token,
                "expires_at": grant.expires_at,
                "refresh_token": grant.refresh_token or current.refresh_token,
                "updated_at": self._clock.now(),
            }
        )
        self.rows[(project_id, provider)] = stored
        self.token_updates += 1
        return stored

    async def get(self, project_id, provider):
        return self.rows.get((project_id, provider))

    async def delete(self, project_id, provider):
        return self.rows.pop((project_id, provider), None) is not None

    async def list_for_project(self, project_id):
        return [r for (pid, _), r in sorted(self.rows.items()) if pid == project_id]


class InMemoryReportCache(ReportCache):
    def __init__(self, clock: Clock):
        self.entries: Dict[Tuple[str, str, str], Tuple[Any, datetime]] = {}
        self._clock = clock

    async def get(self, project_id, report_type, date_range_key):
        entry = self.entries.get((project_id, report_type, date_range_key))
        if entry is None or entry[1] <= self._clock.now():
            return None
        return entry[0]

    async def put(self, project_id, report_type, date_range_key, payload, ttl):
        self.entries[(project_id, report_type, date_range_key)] = (payload, self._clock.now() + ttl)

    async def invalidate(self, project_id, report_type=None):
        doomed = [
            k for k in self.entries
            if k[0] == project_id and (report_type is None or k[1] == report_type)
        ]
        for k in doomed:
            del self.entries[k]
        return len(doomed)

    async def sweep_expired(self):
        doomed = [k for k, (_, exp) in self.entries.items() if exp <= self._clock.now()]
        for k in doomed:
            del self.entries[k]
        return len(doomed)


# ── providers ──────────────────────────────────────────────────────────────────


class FakeConnector(BaseConnector):
    """Connector whose token endpoint is scripted by the test."""

    def __init__(self, clock: Clock, name: str = "google_analytics"):
        self._name = name
        self._clock = clock
        self.refresh_calls: List[str] = []
        self.refresh_error: Optional[Exception] = None
        self.refresh_delay: float = 0.0
        self.rotated_refresh_token: Optional[str] = None
        self.exchange_grant: Optional[TokenGrant] = None
        self.revoked: List[str] = []
        self.revoke_error: Optional[Exception] = None

    @property
    def provider_name(self):
        return self._name

    @property
    def display_name(self):
        return "Fake Analytics"

    @property
    def scopes(self):
        return ["analytics.readonly"]

    def get_auth_url(self, state):
        return f"https://auth.example.com/authorize?state={state}"

    async def exchange_code(self, code):
        return self.exchange_grant or TokenGrant(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=self._clock.now() + timedelta(hours=1),
            scopes=["analytics.readonly"],
        )

    async def refresh_access_token(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenGrant(
            access_token=f"fresh-{len(self.refresh_calls)}",
            refresh_token=self.rotated_refresh_token,
            expires_at=self._clock.now() + timedelta(hours=1),
        )

    async def revoke_token(self, token):
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(token)
        return True


class FakeDataProvider(BaseDataProvider):
    """Returns ``payload_for(query)``; records every call."""

    def __init__(
        self,
        name: str = "google_analytics",
        payload_for: Optional[Callable[[ReportQuery], Any]] = None,
        report_types: frozenset = frozenset(),
        ttl: Optional[timedelta] = None,
    ):
        self._name = name
        self._report_types = report_types
        self._ttl = ttl
        self.payload_for = payload_for or (lambda q: {"sessions": 120, "totalUsers": 80})
        self.calls: List[Tuple[ReportQuery, str]] = []

    @property
    def provider_name(self):
        return self._name

    @property
    def report_types(self):
        return self._report_types

    def cache_ttl(self, report_type):
        return self._ttl

    async def fetch_report(self, query, access_token, fetcher):
        self.calls.append((query, access_token))
        return self.payload_for(query)


# ── fixtures ───────────────────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def connection_store(clock) -> InMemoryConnectionStore:
    return InMemoryConnectionStore(clock)


@pytest.fixture
def report_cache(clock) -> InMemoryReportCache:
    return InMemoryReportCache(clock)


@pytest.fixture
def connector(clock) -> FakeConnector:
    return FakeConnector(clock)


@pytest.fixture
def data_provider() -> FakeDataProvider:
    return FakeDataProvider()


@pytest.fixture
def make_data_provider():
    return FakeDataProvider


@pytest.fixture
def registry(connector, data_provider) -> ConnectorRegistry:
    reg = ConnectorRegistry()
    reg.register_connector(connector)
    reg.register_data_provider(data_provider)
    return reg


@pytest.fixture
def make_query():
    def _make(**overrides) -> ReportQuery:
        fields = dict(
            project_id="proj-1",
            provider="google_analytics",
            report_type="overview",
            start_date=date(2024, 1, 15),
            end_date=date(2024, 1, 21),
        )
        fields.update(overrides)
        return ReportQuery(**fields)

    return _make


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'dashboard.db'}")
    await init_models(engine)
    yield build_session_factory(engine)
    await engine.dispose()
