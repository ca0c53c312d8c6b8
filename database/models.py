"""
SQLAlchemy ORM models for stored credentials and cached reports.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class ProviderConnection(Base):
    __tablename__ = "provider_connections"
    __table_args__ = (
        UniqueConstraint("project_id", "provider", name="uq_provider_connections_project_provider"),
    )

    connection_id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(64), nullable=False)
    access_token = Column(Text)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True))
    scopes = Column(JSONDocument, default=list)
    account_label = Column(String(256))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ReportCacheEntry(Base):
    __tablename__ = "report_cache"
    __table_args__ = (
        UniqueConstraint(
            "project_id", "report_type", "date_range_key",
            name="uq_report_cache_project_report_range",
        ),
    )

    entry_id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(64), nullable=False, index=True)
    report_type = Column(String(128), nullable=False)
    date_range_key = Column(String(512), nullable=False)
    payload = Column(JSONDocument, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
