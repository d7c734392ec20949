"""Utilities for working with RFC3339 timestamps and UTC datetimes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

UTC = timezone.utc


def parse_rfc3339(s: Optional[str]) -> Optional[datetime]:
    """Parse a RFC3339 string and return a timezone-aware UTC datetime."""

    if not s:
        return None

    value = s.strip()
    if not value:
        return None

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    if "." in value:
        head, tail = value.split(".", 1)
        if "+" in tail:
            frac, tz = tail.split("+", 1)
            sign = "+"
        elif "-" in tail:
            frac, tz = tail.split("-", 1)
            sign = "-"
        else:
            frac, tz = tail, "00:00"
            sign = "+"
        frac = (frac + "000000")[:6]
        value = f"{head}.{frac}{sign}{tz}"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    else:
        dt = dt.astimezone(UTC)
    return dt


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def to_iso(dt: Optional[Union[datetime, str]]) -> Optional[str]:
    """Serialize to ``YYYY-MM-DDTHH:MM:SS.mmmZ`` (millisecond precision, UTC)."""

    if dt is None:
        return None
    if isinstance(dt, str):
        dt = parse_rfc3339(dt)
        if dt is None:
            return None
    dt = ensure_utc(dt)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def utc_now() -> datetime:
    return datetime.now(UTC)


def now_iso() -> str:
    return to_iso(utc_now())


def is_after(value: Optional[str], reference: Optional[str]) -> bool:
    """True when ISO timestamp ``value`` is strictly later than ``reference``."""

    left = parse_rfc3339(value)
    if left is None:
        return False
    right = parse_rfc3339(reference)
    if right is None:
        return True
    return left > right


def days_ago_iso(days: int) -> str:
    return to_iso(utc_now() - timedelta(days=days))


__all__ = [
    "UTC",
    "days_ago_iso",
    "ensure_utc",
    "is_after",
    "now_iso",
    "parse_rfc3339",
    "to_iso",
    "utc_now",
]
