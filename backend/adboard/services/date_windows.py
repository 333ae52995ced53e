"""
Date windows in a tenant's timezone.

Multi-day presets end at yesterday so a partially elapsed day never drags the
totals down.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from adboard.settings import get_settings

logger = logging.getLogger(__name__)

PRESET_DAYS = {"7d": 7, "30d": 30, "90d": 90}
PRESETS = ("today", "yesterday", *PRESET_DAYS)
DEFAULT_WINDOW_DAYS = 30


@dataclass(frozen=True)
class DateRange:
    since: date
    until: date

    @property
    def days(self) -> int:
        return (self.until - self.since).days + 1

    def contains(self, day: date) -> bool:
        return self.since <= day <= self.until

    def as_params(self) -> tuple[str, str]:
        return self.since.isoformat(), self.until.isoformat()


def get_zone(tz_name: str | None) -> ZoneInfo:
    default = get_settings().default_timezone
    try:
        return ZoneInfo(tz_name or default)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug(f"[date_windows] Unknown timezone '{tz_name}', using {default}")
        return ZoneInfo(default)


def local_today(tz_name: str | None, now: datetime | None = None) -> date:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(get_zone(tz_name)).date()


def preset_range(preset: str, tz_name: str | None, now: datetime | None = None) -> DateRange:
    today = local_today(tz_name, now)
    yesterday = today - timedelta(days=1)
    if preset == "today":
        return DateRange(today, today)
    if preset == "yesterday":
        return DateRange(yesterday, yesterday)
    if preset in PRESET_DAYS:
        return DateRange(yesterday - timedelta(days=PRESET_DAYS[preset] - 1), yesterday)
    raise ValueError(f"Unknown date preset: {preset}")


def resolve_range(
    date_from: date | None = None,
    date_to: date | None = None,
    *,
    preset: str | None = None,
    days: int | None = None,
    tz_name: str | None = None,
    now: datetime | None = None,
) -> DateRange:
    """Explicit dates win, then a named preset, then `days` back from yesterday."""
    span = days or DEFAULT_WINDOW_DAYS
    if date_from or date_to:
        until = date_to or (local_today(tz_name, now) - timedelta(days=1))
        since = date_from or (until - timedelta(days=span - 1))
        if since > until:
            raise ValueError("date range start is after its end")
        return DateRange(since, until)
    if preset:
        return preset_range(preset, tz_name, now)
    yesterday = local_today(tz_name, now) - timedelta(days=1)
    return DateRange(yesterday - timedelta(days=span - 1), yesterday)


def month_to_date(tz_name: str | None, now: datetime | None = None) -> DateRange:
    today = local_today(tz_name, now)
    return DateRange(today.replace(day=1), today)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive timestamps coming back from the store as UTC."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
