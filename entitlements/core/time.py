from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timedelta, timezone, tzinfo
from decimal import Decimal
from functools import lru_cache
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 3600

_FIXED_OFFSET = re.compile(r"^(?:UTC|GMT)\s*([+-])\s*(\d{1,2})(?::?(\d{2}))?$", re.IGNORECASE)


def now_ts() -> int:
    return int(time.time())


def now_ms() -> int:
    return int(time.time() * 1000)


@lru_cache(maxsize=512)
def parse_timezone(name: Optional[str]) -> tzinfo:
    """Resolve a stored user timezone.

    Accepts IANA names ("America/New_York") and fixed offsets ("UTC-5",
    "UTC+05:30"). Unknown values fall back to UTC.
    """
    value = (name or "").strip()
    if not value or value.upper() in ("UTC", "GMT", "Z"):
        return timezone.utc
    m = _FIXED_OFFSET.match(value)
    if m:
        sign, hours, minutes = m.group(1), int(m.group(2)), int(m.group(3) or 0)
        if hours > 14 or minutes >= 60:
            logger.warning("invalid fixed offset timezone %r, using UTC", value)
            return timezone.utc
        delta = timedelta(hours=hours, minutes=minutes)
        return timezone(-delta if sign == "-" else delta)
    try:
        return ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone %r, using UTC", value)
        return timezone.utc


def local_date_bucket(ts: int, tz_name: Optional[str]) -> str:
    """Calendar day (YYYY-MM-DD) of a UTC instant as seen in the user's timezone."""
    return datetime.fromtimestamp(int(ts), tz=parse_timezone(tz_name)).date().isoformat()


def next_local_midnight(ts: int, tz_name: Optional[str]) -> int:
    tz = parse_timezone(tz_name)
    local = datetime.fromtimestamp(int(ts), tz=tz)
    nxt = datetime.combine(local.date() + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return int(nxt.timestamp())


def iso(ts: Optional[int]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")


def parse_instant(value: Any) -> Optional[int]:
    """Best-effort conversion of a provider timestamp to epoch seconds.

    Handles ISO-8601 strings, epoch seconds and epoch milliseconds. Returns
    None for anything unparseable.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    if isinstance(value, (int, float, Decimal)):
        n = int(value)
        return n // 1000 if n > 10**11 else n
    if isinstance(value, str):
        s = value.strip()
        if s.isdigit():
            return parse_instant(int(s))
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    return None
