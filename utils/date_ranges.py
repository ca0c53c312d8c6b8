"""
Date-range helpers: cache keys and chunking for window-limited APIs.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any, List, Mapping, Tuple

from pydantic import BaseModel, model_validator


class DateRange(BaseModel):
    """Inclusive date range."""

    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError(f"end date {self.end} is before start date {self.start}")
        return self

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


def date_range_key(start: date | str, end: date | str, **params: Any) -> str:
    """
    Stable cache key for a date range plus any parameters that change the result.

    ``date_range_key("2024-01-01", "2024-01-31")``  -> ``"2024-01-01_2024-01-31"``
    ``date_range_key(..., property_id="42")``        -> ``"2024-01-01_2024-01-31|property_id=42"``

    ``None`` parameters are left out.
    """
    key = f"{_iso(start)}_{_iso(end)}"
    for name in sorted(params):
        value = params[name]
        if value is None:
            continue
        key += f"|{name}={_iso(value)}"
    return key


def split_date_range(
    start: date | str,
    end: date | str,
    max_days: int = 28,
) -> List[Tuple[date, date]]:
    """Split an inclusive range into consecutive chunks of at most ``max_days``."""
    if max_days < 1:
        raise ValueError("max_days must be at least 1")
    rng = DateRange(start=start, end=end)

    chunks: List[Tuple[date, date]] = []
    cursor = rng.start
    while cursor <= rng.end:
        chunk_end = min(cursor + timedelta(days=max_days - 1), rng.end)
        chunks.append((cursor, chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return chunks


def _iso(value: Any) -> str:
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return ",".join(f"{k}:{_iso(v)}" for k, v in items)
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)
