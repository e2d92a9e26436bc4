from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from subtrack.core.config import get_settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def today_in(tz_name: str) -> date:
    return datetime.now(ZoneInfo(tz_name)).date()


def billing_today() -> date:
    """Calendar date used for due-billing decisions, in the configured billing timezone."""
    return today_in(get_settings().billing_timezone)
