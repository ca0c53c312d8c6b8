"""
AnalyticsOrchestrator — serves one report request.

    cache lookup → access token → data provider (through RetryableFetcher)
    → optional previous-period fetch + comparison → cache write

Errors from the token and fetch layers propagate unchanged; translating them
into HTTP responses is the caller's job.  Cache writes are best effort.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Mapping, Optional

from connectors.registry import ConnectorRegistry
from connectors.token_manager import AccessTokenProvider
from database.interfaces import ReportCache
from utils.clock import Clock
from utils.comparison import PERCENT_CHANGE_CLAMP, compare_metrics
from utils.errors import UnsupportedReportError
from utils.retry import RetryableFetcher
from utils.schemas import ReportQuery, ReportResult

logger = logging.getLogger(__name__)

DEFAULT_REPORT_TTL = timedelta(minutes=30)
# For expensive cross-post aggregations; data providers opt in via cache_ttl().
AGGREGATE_REPORT_TTL = timedelta(hours=6)


def _is_empty(payload: Any) -> bool:
    return payload is None or (isinstance(payload, (dict, list, tuple)) and not payload)


class AnalyticsOrchestrator:
    def __init__(
        self,
        cache: ReportCache,
        tokens: AccessTokenProvider,
        registry: ConnectorRegistry,
        fetcher: RetryableFetcher,
        *,
        clock: Optional[Clock] = None,
        default_ttl: timedelta = DEFAULT_REPORT_TTL,
        percent_change_clamp: float = PERCENT_CHANGE_CLAMP,
    ):
        self._cache = cache
        self._tokens = tokens
        self._registry = registry
        self._fetcher = fetcher
        self._clock = clock or Clock()
        self.default_ttl = default_ttl
        self.percent_change_clamp = percent_change_clamp

    # ── public entry point ──────────────────────────────────────────────

    async def get_report(self, query: ReportQuery) -> ReportResult:
        report_key = self.cache_report_type(query.provider, query.report_type)
        range_key = query.cache_key()

        if not query.force_refresh:
            cached = await self._cache.get(query.project_id, report_key, range_key)
            if cached is not None:
                logger.debug(
                    "Cache hit: project=%s report=%s range=%s",
                    query.project_id, report_key, range_key,
                )
                return self._from_cache(query, range_key, cached)

        data_provider = self._registry.get_data_provider(query.provider)
        if not data_provider.supports(query.report_type):
            raise UnsupportedReportError(
                context={"provider": query.provider, "report_type": query.report_type},
            )

        access_token = await self._tokens.get_access_token(query.project_id, query.provider)

        logger.info(
            "Fetching %s for project %s (%s to %s)",
            report_key, query.project_id, query.start_date, query.end_date,
        )
        payload = await data_provider.fetch_report(query, access_token, self._fetcher)

        previous_payload = None
        comparison = None
        if query.compare:
            prev_query = query.previous_period()
            previous_payload = await data_provider.fetch_report(prev_query, access_token, self._fetcher)
            if isinstance(payload, Mapping) and isinstance(previous_payload, Mapping):
                comparison = compare_metrics(
                    payload, previous_payload, clamp=self.percent_change_clamp
                )

        result = ReportResult(
            project_id=query.project_id,
            provider=query.provider,
            report_type=query.report_type,
            date_range_key=range_key,
            payload=payload,
            previous_payload=previous_payload,
            comparison=comparison,
            from_cache=False,
            generated_at=self._clock.now(),
        )
        await self._store(
            query, report_key, range_key, result, data_provider.cache_ttl(query.report_type)
        )
        return result

    async def invalidate(self, project_id: str, provider: Optional[str] = None, report_type: Optional[str] = None) -> int:
        """Drop cached reports for a project, or for one provider report."""
        if provider is not None and report_type is not None:
            return await self._cache.invalidate(project_id, self.cache_report_type(provider, report_type))
        return await self._cache.invalidate(project_id)

    @staticmethod
    def cache_report_type(provider: str, report_type: str) -> str:
        return f"{provider}.{report_type}"

    # ── helpers ─────────────────────────────────────────────────────────

    async def _store(
        self,
        query: ReportQuery,
        report_key: str,
        range_key: str,
        result: ReportResult,
        provider_ttl: Optional[timedelta],
    ) -> None:
        if _is_empty(result.payload):
            # Empty reports are common for freshly added properties; don't pin them.
            logger.info("Not caching empty %s for project %s", report_key, query.project_id)
            return

        if query.ttl_seconds:
            ttl = timedelta(seconds=query.ttl_seconds)
        else:
            ttl = provider_ttl or self.default_ttl
        try:
            await self._cache.put(query.project_id, report_key, range_key, result.cache_document(), ttl)
        except Exception:
            logger.exception(
                "Report cache write failed for project %s (%s, %s)",
                query.project_id, report_key, range_key,
            )

    @staticmethod
    def _from_cache(query: ReportQuery, range_key: str, cached: Any) -> ReportResult:
        return ReportResult(
            project_id=query.project_id,
            provider=query.provider,
            report_type=query.report_type,
            date_range_key=range_key,
            payload=cached.get("payload"),
            previous_payload=cached.get("previous_payload"),
            comparison=cached.get("comparison"),
            from_cache=True,
            generated_at=cached.get("generated_at"),
        )
