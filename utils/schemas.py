"""
Pydantic schemas shared by connectors, stores and the orchestrator.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from utils.comparison import previous_period
from utils.date_ranges import date_range_key


# ═══════════════════════════════════════════════════════════════════════════════
# Credentials
# ═══════════════════════════════════════════════════════════════════════════════


class TokenGrant(BaseModel):
    """
    Result of a code exchange or a refresh at a provider's token endpoint.

    ``refresh_token`` is only set when the provider issued (or rotated) one.
    """

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    account_label: Optional[str] = None


class ConnectionRecord(BaseModel):
    """One stored credential per (project_id, provider)."""

    project_id: str
    provider: str
    refresh_token: str
    access_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    account_label: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ConnectionInfo(BaseModel):
    """Token-free view of a connection for listing."""

    project_id: str
    provider: str
    account_label: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Reports
# ═══════════════════════════════════════════════════════════════════════════════


class ReportQuery(BaseModel):
    project_id: str
    provider: str
    report_type: str
    start_date: date
    end_date: date
    params: Dict[str, Any] = Field(default_factory=dict)
    compare: bool = False
    ttl_seconds: Optional[int] = None
    force_refresh: bool = False

    @model_validator(mode="after")
    def _check_dates(self) -> "ReportQuery":
        if self.end_date < self.start_date:
            raise ValueError(
                f"end_date {self.end_date} is before start_date {self.start_date}"
            )
        return self

    def cache_key(self) -> str:
        extra = dict(self.params)
        if self.compare:
            extra["compare"] = "1"
        return date_range_key(self.start_date, self.end_date, **extra)

    def previous_period(self) -> "ReportQuery":
        """Same query shifted onto the immediately preceding window."""
        prev_start, prev_end = previous_period(self.start_date, self.end_date)
        return self.model_copy(
            update={"start_date": prev_start, "end_date": prev_end, "compare": False}
        )


class ReportResult(BaseModel):
    project_id: str
    provider: str
    report_type: str
    date_range_key: str
    payload: Any = None
    previous_payload: Any = None
    comparison: Optional[Dict[str, float]] = None
    from_cache: bool = False
    generated_at: Optional[datetime] = None

    def cache_document(self) -> Dict[str, Any]:
        """What gets stored in the report cache."""
        return {
            "payload": self.payload,
            "previous_payload": self.previous_payload,
            "comparison": self.comparison,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
        }
