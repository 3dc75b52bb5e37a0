"""Datetime helpers."""

from __future__ import annotations

import math
import os
from datetime import datetime, timezone

import pendulum

DEFAULT_TZ = "America/New_York"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def now_in_tz() -> pendulum.DateTime:
    tz = pendulum.timezone(timezone_name())
    return pendulum.now(tz)


def utc_now() -> datetime:
    return to_utc(pendulum.now("UTC"))


def to_utc(value: datetime) -> datetime:
    """Plain ``datetime`` in UTC; DB drivers match on the exact type."""
    return datetime.fromtimestamp(value.timestamp(), tz=timezone.utc)


def from_unix(value: object, *, fallback_days: int = 0, now: datetime | None = None) -> datetime:
    """Parse unix seconds, falling back to ``now + fallback_days``.

    Zero, negative, non-numeric and out-of-range values all take the fallback.
    """
    seconds = _as_seconds(value)
    if seconds is not None:
        try:
            return to_utc(pendulum.from_timestamp(seconds, tz="UTC"))
        except (OverflowError, OSError, ValueError):
            pass
    base = pendulum.instance(now) if now else pendulum.now("UTC")
    return to_utc(base.add(days=fallback_days))


def validity_window(
    valid_from: object, valid_to: object, *, fallback_days: int = 7, now: datetime | None = None
) -> tuple[datetime, datetime]:
    now = now or utc_now()
    start = from_unix(valid_from, fallback_days=0, now=now)
    end = from_unix(valid_to, fallback_days=fallback_days, now=now)
    if end < start:
        end = to_utc(pendulum.instance(start).add(days=fallback_days))
    return start, end


def format_date(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


def _as_seconds(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds) or seconds <= 0:
        return None
    return seconds
