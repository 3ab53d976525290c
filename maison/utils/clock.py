from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_REPORT_TZ = "Asia/Dubai"


def _zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or DEFAULT_REPORT_TZ)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo(DEFAULT_REPORT_TZ)


def _as_aware_utc(dt: datetime) -> datetime:
    # DB timestamps are naive UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def format_local_time(dt: Optional[datetime] = None, tz_name: str = DEFAULT_REPORT_TZ) -> str:
    """'MM/DD/YYYY, HH:MM:SS' (24h) in the reporting time zone."""
    dt = _as_aware_utc(dt or datetime.now(timezone.utc))
    return dt.astimezone(_zone(tz_name)).strftime("%m/%d/%Y, %H:%M:%S")


def local_date(dt: datetime, tz_name: str = DEFAULT_REPORT_TZ) -> date:
    return _as_aware_utc(dt).astimezone(_zone(tz_name)).date()
