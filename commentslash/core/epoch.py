"""Provider day boundaries: the quota resets at midnight in a fixed time zone.

All durations are measured between absolute (UTC) instants, so a provider day
that is 23 or 25 hours long across a DST change is handled correctly.
"""

import math
from collections.abc import Callable
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict

DEFAULT_PROVIDER_TZ = "America/Los_Angeles"

# Returns the current aware instant.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ResetCountdown(BaseModel):
    """Time remaining until the next provider reset."""

    model_config = ConfigDict(frozen=True)

    hours: int
    minutes: int
    seconds: int
    total_seconds: int
    formatted: str


def _as_utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        msg = "naive datetimes are not supported; pass an aware instant"
        raise ValueError(msg)
    return now.astimezone(UTC)


def provider_date_key(now: datetime, tz: str = DEFAULT_PROVIDER_TZ) -> str:
    """Calendar date (YYYY-MM-DD) of `now` in the provider's time zone."""
    return _as_utc(now).astimezone(ZoneInfo(tz)).date().isoformat()


def next_reset(now: datetime, tz: str = DEFAULT_PROVIDER_TZ) -> datetime:
    """The next provider-local midnight after `now`, as an aware UTC instant."""
    zone = ZoneInfo(tz)
    local = _as_utc(now).astimezone(zone)
    midnight = datetime.combine(local.date() + timedelta(days=1), time(0), tzinfo=zone)
    return midnight.astimezone(UTC)


def time_until_reset(now: datetime, tz: str = DEFAULT_PROVIDER_TZ) -> ResetCountdown:
    """Countdown to the next reset, rounded up to whole seconds."""
    remaining = next_reset(now, tz) - _as_utc(now)
    total = math.ceil(remaining.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        formatted = f"{hours}h {minutes}m"
    elif minutes > 0:
        formatted = f"{minutes}m {seconds}s"
    else:
        formatted = f"{seconds}s"
    return ResetCountdown(
        hours=hours,
        minutes=minutes,
        seconds=seconds,
        total_seconds=total,
        formatted=formatted,
    )


def minute_key(now: datetime) -> str:
    """UTC minute label used by the per-minute counter."""
    return _as_utc(now).strftime("%Y-%m-%dT%H:%M")


def seconds_until_next_minute(now: datetime) -> int:
    utc = _as_utc(now)
    return max(1, 60 - utc.second)
