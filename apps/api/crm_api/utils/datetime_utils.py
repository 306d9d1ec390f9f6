"""Datetime helpers for persisted timestamps and provider payloads."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_past(value: datetime | None, now: datetime | None = None) -> bool:
    if value is None:
        return False
    return ensure_utc(value) <= (now or utc_now())


def from_epoch_millis(raw: str | int | None) -> datetime | None:
    """Parse Google's millisecond epoch strings (watch expirations)."""
    if raw is None or raw == "":
        return None
    try:
        millis = int(raw)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
