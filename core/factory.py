"""
Centralised service builder.

Everything that needs the wired services (the HTTP layer, the cache sweep
job, scripts) calls ``build_services`` so the wiring logic lives in exactly
one place.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from config.settings import Settings, config
from connectors.encryption import TokenCipher
from connectors.registry import ConnectorRegistry, build_default_registry
from connectors.token_manager import AccessTokenProvider
from core.orchestrator import AnalyticsOrchestrator
from database.connection_store import SqlConnectionStore
from database.report_cache import SqlReportCache
from database.session import build_engine, build_session_factory
from utils.clock import Clock
from utils.retry import RetryableFetcher


@dataclass
class Services:
    engine: AsyncEngine
    http_client: httpx.AsyncClient
    registry: ConnectorRegistry
    connections: SqlConnectionStore
    report_cache: SqlReportCache
    tokens: AccessTokenProvider
    fetcher: RetryableFetcher
    orchestrator: AnalyticsOrchestrator

    async def aclose(self) -> None:
        await self.http_client.aclose()
        await self.engine.dispose()


def build_services(
    settings: Settings = config,
    *,
    engine: Optional[AsyncEngine] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    registry: Optional[ConnectorRegistry] = None,
    clock: Optional[Clock] = None,
) -> Services:
    """
    Construct every service from ``settings``.

    Data providers are registered by the caller on ``services.registry``;
    the default registry only knows the OAuth side of each provider.
    """
    clock = clock or Clock()
    engine = engine or build_engine(settings.database_url, echo=settings.database_echo)
    session_factory = build_session_factory(engine)
    http_client = http_client or httpx.AsyncClient()
    registry = registry or build_default_registry(settings, client=http_client, clock=clock)

    connections = SqlConnectionStore(
        session_factory,
        cipher=TokenCipher.from_settings(settings),
        clock=clock,
    )
    report_cache = SqlReportCache(session_factory, clock=clock)
    tokens = AccessTokenProvider(
        connections,
        registry,
        clock=clock,
        refresh_buffer=timedelta(seconds=settings.token_refresh_buffer_seconds),
    )
    fetcher = RetryableFetcher(
        http_client,
        max_retries=settings.fetch_max_retries,
        base_delay=settings.fetch_base_delay_seconds,
        timeout=settings.http_timeout_seconds,
    )
    orchestrator = AnalyticsOrchestrator(
        report_cache,
        tokens,
        registry,
        fetcher,
        clock=clock,
        default_ttl=timedelta(seconds=settings.report_cache_ttl_seconds),
        percent_change_clamp=settings.percent_change_clamp,
    )
    return Services(
        engine=engine,
        http_client=http_client,
        registry=registry,
        connections=connections,
        report_cache=report_cache,
        tokens=tokens,
        fetcher=fetcher,
        orchestrator=orchestrator,
    )
