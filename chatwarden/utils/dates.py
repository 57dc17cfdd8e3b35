from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

HOUR = 60 * 60
DAY = 24 * HOUR


def local_datetime(ts: float, tz_name: str) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).astimezone(ZoneInfo(tz_name))


def to_day_key(ts: float, tz_name: str) -> str:
    """Civil calendar day (YYYY-MM-DD) of `ts` in the given timezone."""
    return local_datetime(ts, tz_name).strftime("%Y-%m-%d")


def format_local(ts: float, tz_name: str) -> str:
    return local_datetime(ts, tz_name).strftime("%d.%m.%Y %H:%M")
