"""Utilities for UTC timestamps and the quarter buckets used by research views."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def parse_iso_date(value: object) -> Optional[date]:
    """Parse a ``YYYY-MM-DD`` string, returning ``None`` when it is not one."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    if len(cleaned) != 10:
        return None
    try:
        return date.fromisoformat(cleaned)
    except ValueError:
        return None


def quarter_bucket(day: date) -> str:
    """Return the ``YYYY-Qn`` bucket containing ``day``.

    Buckets sort lexically in calendar order, so range predicates can compare
    them as plain strings.
    """

    quarter = (day.month - 1) // 3 + 1
    return f"{day.year:04d}-Q{quarter}"


__all__ = ["utc_now", "parse_iso_date", "quarter_bucket"]
