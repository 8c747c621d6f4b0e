"""Small utility helpers used across the core runtime."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def ceil_div(numerator: int, denominator: int) -> int:
    """Integer ceiling division, exact for negative numerators."""
    return -((-numerator) // denominator)
