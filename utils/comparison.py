"""
Period-over-period comparison arithmetic.

Pure functions only — no I/O, no clock.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Dict, Mapping, Tuple, TypeVar

# Percentage changes are clamped to ±PERCENT_CHANGE_CLAMP.
PERCENT_CHANGE_CLAMP = 1000.0

# Values with a smaller magnitude are treated as zero.
EPSILON = 1e-9

DateLike = TypeVar("DateLike", date, str)


def _to_date(value: date | str) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def previous_period(start: DateLike, end: DateLike) -> Tuple[DateLike, DateLike]:
    """
    Return the equal-length window immediately preceding ``start..end``.

    Both bounds are inclusive, e.g. 2024-01-15..2024-01-21 gives
    2024-01-08..2024-01-14.  ISO strings in, ISO strings out.
    """
    start_d = _to_date(start)
    end_d = _to_date(end)
    if end_d < start_d:
        raise ValueError(f"end date {end_d} is before start date {start_d}")

    duration = end_d - start_d
    prev_end = start_d - timedelta(days=1)
    prev_start = prev_end - duration

    if isinstance(start, str):
        return prev_start.isoformat(), prev_end.isoformat()
    return prev_start, prev_end


def percent_change(
    current: float,
    previous: float,
    *,
    clamp: float = PERCENT_CHANGE_CLAMP,
) -> float:
    """
    Percentage change from ``previous`` to ``current``.

    A (near) zero previous value yields 0 / +100 / -100 depending on the
    sign of ``current``; otherwise the result is clamped to [-clamp, clamp].
    """
    if abs(previous) < EPSILON:
        if abs(current) < EPSILON:
            return 0.0
        return 100.0 if current > 0 else -100.0

    change = (current - previous) / previous * 100
    return max(-clamp, min(clamp, change))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def compare_metrics(
    current: Mapping[str, Any],
    previous: Mapping[str, Any],
    *,
    clamp: float = PERCENT_CHANGE_CLAMP,
) -> Dict[str, float]:
    """Percentage change for every numeric metric in ``current``."""
    changes: Dict[str, float] = {}
    for metric, value in current.items():
        if not _is_number(value):
            continue
        prev = previous.get(metric, 0)
        if not _is_number(prev):
            prev = 0
        changes[metric] = percent_change(float(value), float(prev), clamp=clamp)
    return changes
