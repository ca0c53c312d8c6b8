"""
Error taxonomy for credential, fetch and reporting failures.

Every error carries an optional ``context`` mapping (project, provider, status
code, …) and a ``user_message`` that the HTTP layer can show as-is.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class AnalyticsCoreError(Exception):
    """Base class for all errors raised by this package."""

    default_message = "Analytics core error"
    user_message = "Something went wrong while loading your report."

    def __init__(
        self, message: str | None = None, *, context: Mapping[str, Any] | None = None
    ):
        self.message = message or self.default_message
        self.context: Mapping[str, Any] = dict(context or {})
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


# ── Credentials ─────────────────────────────────────────────────────────


class ConnectionNotFoundError(AnalyticsCoreError):
    """No stored credential for (project, provider)."""

    default_message = "Provider is not connected for this project"
    user_message = "This account is not connected. Please connect it again."


class ReauthorizationRequiredError(AnalyticsCoreError):
    """The refresh token is dead; the user has to go through OAuth again."""

    default_message = "Refresh token expired or revoked"
    user_message = "Your connection has expired. Please reconnect your account."


class InvalidGrantError(AnalyticsCoreError):
    """Token endpoint answered ``invalid_grant`` for a refresh token."""

    default_message = "OAuth invalid_grant"


# ── Providers ───────────────────────────────────────────────────────────


class ProviderNotRegisteredError(AnalyticsCoreError):
    default_message = "Provider is not registered"
    user_message = "This integration is not available."


class UnsupportedReportError(AnalyticsCoreError):
    default_message = "Provider does not serve this report type"
    user_message = "This report is not available for the selected integration."


# ── Upstream HTTP ───────────────────────────────────────────────────────


class UpstreamError(AnalyticsCoreError):
    """Non-retryable failure from a token or data endpoint."""

    default_message = "Upstream API error"

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: Optional[int] = None,
        context: Mapping[str, Any] | None = None,
    ):
        self.status_code = status_code
        ctx = dict(context or {})
        if status_code is not None:
            ctx.setdefault("status_code", status_code)
        super().__init__(message, context=ctx)


class TransientUpstreamError(UpstreamError):
    """Network failure, timeout or 5xx."""

    default_message = "Upstream API temporarily unavailable"
    user_message = "The provider is temporarily unavailable. Please try again shortly."


class RateLimitedError(UpstreamError):
    """Retry budget exhausted while the upstream kept rate-limiting us."""

    default_message = "Upstream rate limit exceeded"
    user_message = "The provider is rate-limiting requests. Please try again later."

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: Optional[float] = None,
        status_code: Optional[int] = None,
        context: Mapping[str, Any] | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code=status_code, context=context)
