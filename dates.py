# dates.py
# Date helpers for the members sheet: flexible parsing, the sheet's
# canonical "YYYY/M/D" format and membership duration arithmetic.

from __future__ import annotations

import calendar
import datetime as dt
import re
from enum import Enum
from typing import Any, Optional

from errors import InvalidDurationOption


class DurationOption(str, Enum):
    DAYS_30 = "30days"
    DAYS_90 = "90days"
    HALF_YEAR = "halfyear"
    ONE_YEAR = "oneyear"
    TRIAL_7_DAYS = "trial7days"

    @classmethod
    def parse(cls, value: Any) -> "DurationOption":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip())
        except ValueError:
            raise InvalidDurationOption(
                "unknown duration option",
                details={"option": value, "allowed": [o.value for o in cls]},
            ) from None


# "2026/1/5" as written by Sheets; a time part may follow when the cell is a datetime
_SLASH_RE = re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})(?:\s+\d{1,2}:\d{2}(?::\d{2})?)?$")
_DASH_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


def business_tz(offset_hours: int) -> dt.timezone:
    return dt.timezone(dt.timedelta(hours=offset_hours))


def today_local(tz: dt.tzinfo) -> dt.date:
    # Server timezone isn't guaranteed; callers pass the fixed business offset (Asia/Taipei = +8).
    return dt.datetime.now(tz).date()


def parse_flexible_date(value: Any, tz: Optional[dt.tzinfo] = None) -> Optional[dt.date]:
    """
    Parse a date cell. Accepts:
      "2026/1/5"              (no zero padding required)
      "2026-01-05"
      "2026-01-05T09:30:00Z"  (any ISO-8601 date or datetime)
    Returns None for blank or unparseable input; never raises.
    Aware datetimes are converted to ``tz`` first when it is given.
    """
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, dt.date):
        return value
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            m = _SLASH_RE.match(text) or _DASH_RE.match(text)
            if m:
                return dt.date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
            if text[-1] in "Zz":
                text = text[:-1] + "+00:00"
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None

    if parsed.tzinfo is not None and tz is not None:
        parsed = parsed.astimezone(tz)
    return parsed.date()


def format_for_store(d: dt.date) -> str:
    # Same convention as the sheet: yyyy/M/d
    return f"{d.year}/{d.month}/{d.day}"


def _add_months(d: dt.date, months: int) -> dt.date:
    total = d.month - 1 + months
    year = d.year + total // 12
    month = total % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return dt.date(year, month, day)


def add_duration(d: dt.date, option: DurationOption) -> dt.date:
    option = DurationOption.parse(option)
    if option is DurationOption.DAYS_30:
        return d + dt.timedelta(days=30)
    if option is DurationOption.DAYS_90:
        return d + dt.timedelta(days=90)
    if option is DurationOption.HALF_YEAR:
        return _add_months(d, 6)
    if option is DurationOption.ONE_YEAR:
        return _add_months(d, 12)
    if option is DurationOption.TRIAL_7_DAYS:
        return d + dt.timedelta(days=7)
    raise InvalidDurationOption("unhandled duration option", details={"option": str(option)})


def _as_date(d: dt.date) -> dt.date:
    return d.date() if isinstance(d, dt.datetime) else d


def is_expired(d: dt.date, as_of: dt.date) -> bool:
    """Strictly before ``as_of``; time of day never matters."""
    return _as_date(d) < _as_date(as_of)


def days_left(expire: Optional[dt.date], today: dt.date) -> Optional[int]:
    if expire is None:
        return None
    return (_as_date(expire) - _as_date(today)).days
