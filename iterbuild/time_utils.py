"""Timestamps for job records and logs, in the operator's configured zone."""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

TIMEZONE_ENV = "ITERBUILD_TIMEZONE"

# Names that resolve without tzdata; MST stays at -07:00 all year.
_FIXED_ZONES = {
    "UTC": timezone.utc,
    "MST": timezone(timedelta(hours=-7), name="MST"),
}


def configured_timezone() -> tzinfo:
    name = (os.getenv(TIMEZONE_ENV) or "UTC").strip()
    fixed = _FIXED_ZONES.get(name.upper())
    if fixed is not None:
        return fixed
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        return timezone.utc


def now_local() -> datetime:
    return datetime.now(configured_timezone())


def now_iso() -> str:
    """ISO-8601 with offset. Every persisted timestamp uses this format."""
    return now_local().isoformat()
