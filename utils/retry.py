"""
RetryableFetcher — outbound HTTP with rate-limit detection and backoff.

Retries happen only for rate limiting (HTTP 429, or a 2xx body carrying an
application-level rate-limit error code) and for transport failures
(connect errors, timeouts).  Every other non-2xx response is raised
immediately.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, FrozenSet, Iterable, Optional

import httpx

from utils.errors import RateLimitedError, TransientUpstreamError, UpstreamError

logger = logging.getLogger(__name__)

# Graph-API style throttling codes: 4 app limit, 17 user limit,
# 32 page limit, 613 call-rate limit.
DEFAULT_RATE_LIMIT_ERROR_CODES: FrozenSet[int] = frozenset({4, 17, 32, 613})

Sleep = Callable[[float], Awaitable[None]]


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a ``Retry-After`` header (delta-seconds or HTTP-date) into seconds.

    Returns None when the header is missing or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class RetryableFetcher:
    """Wraps an ``httpx.AsyncClient``; one instance can be shared by all requests."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        timeout: float = 30.0,
        rate_limit_error_codes: Iterable[int] = DEFAULT_RATE_LIMIT_ERROR_CODES,
        sleep: Sleep = asyncio.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if base_delay < 0:
            raise ValueError("base_delay cannot be negative")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = httpx.Timeout(timeout)
        self.rate_limit_error_codes = frozenset(rate_limit_error_codes)
        self._sleep = sleep

    async def __aenter__(self) -> "RetryableFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── public API ──────────────────────────────────────────────────────

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Issue ``method url`` with retries.

        Raises
        ------
        RateLimitedError        – still rate-limited after the retry budget
        TransientUpstreamError  – transport failure after the retry budget, or 5xx
        UpstreamError           – any other non-2xx response
        """
        kwargs.setdefault("timeout", self.timeout)
        total = self.max_retries + 1

        for attempt in range(total):
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                if attempt < self.max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "Request to %s failed (%s), retrying in %.1fs (attempt %d/%d)",
                        url, exc, delay, attempt + 1, total,
                    )
                    await self._sleep(delay)
                    continue
                raise TransientUpstreamError(
                    f"Request failed after {total} attempts: {exc}",
                    context={"url": url, "attempts": total},
                ) from exc

            if response.status_code == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if attempt < self.max_retries:
                    delay = retry_after if retry_after is not None else self._backoff(attempt)
                    logger.warning(
                        "Rate limit hit (HTTP 429) on %s, retrying in %.1fs (attempt %d/%d)",
                        url, delay, attempt + 1, total,
                    )
                    await self._sleep(delay)
                    continue
                raise RateLimitedError(
                    retry_after=retry_after,
                    status_code=429,
                    context={"url": url, "attempts": total},
                )

            if response.is_success:
                error_code = self._body_rate_limit_code(response)
                if error_code is None:
                    return response
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if attempt < self.max_retries:
                    delay = retry_after if retry_after is not None else self._backoff(attempt)
                    logger.warning(
                        "Rate limit error (code %s) on %s, retrying in %.1fs (attempt %d/%d)",
                        error_code, url, delay, attempt + 1, total,
                    )
                    await self._sleep(delay)
                    continue
                raise RateLimitedError(
                    retry_after=retry_after,
                    status_code=response.status_code,
                    context={"url": url, "attempts": total, "error_code": error_code},
                )

            raise _error_for_response(response)

        # range(total) always returns or raises above
        raise RuntimeError("retry loop exited unexpectedly")

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def get_json(self, url: str, **kwargs: Any) -> Any:
        """GET and decode the JSON body."""
        response = await self.get(url, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(
                "Upstream returned a non-JSON body",
                status_code=response.status_code,
                context={"url": url},
            ) from exc

    # ── helpers ─────────────────────────────────────────────────────────

    def _backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    def _body_rate_limit_code(self, response: httpx.Response) -> Optional[int]:
        if not self.rate_limit_error_codes:
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        error = data.get("error")
        if not isinstance(error, dict):
            return None
        code = error.get("code")
        if isinstance(code, int) and code in self.rate_limit_error_codes:
            return code
        return None


def _error_for_response(response: httpx.Response) -> UpstreamError:
    """Map a non-2xx, non-429 response onto the error taxonomy."""
    detail = response.text[:500] if response.content else response.reason_phrase
    context = {"url": str(response.request.url)}
    if response.status_code >= 500:
        return TransientUpstreamError(
            f"Upstream returned HTTP {response.status_code}: {detail}",
            status_code=response.status_code,
            context=context,
        )
    return UpstreamError(
        f"Upstream returned HTTP {response.status_code}: {detail}",
        status_code=response.status_code,
        context=context,
    )
