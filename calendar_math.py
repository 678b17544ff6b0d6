"""Conversions between timezone-local calendar time and UTC instants.

Every period boundary is a *local midnight* converted to UTC. Nothing in
here touches the database or the clock except ``utc_now``.
"""

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config import get_settings


logger = logging.getLogger(__name__)

EPOCH_DAY = date(1970, 1, 1)
_LOCAL_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_MONTH_AT_RE = re.compile(r"^(\d{4})-(\d{2})$")


class PeriodValidationError(ValueError):
    pass


class PeriodComputationError(RuntimeError):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_timezone(tz_raw: object) -> str:
    default = get_settings().timezone
    tz = tz_raw.strip() if isinstance(tz_raw, str) else ""
    if not tz:
        return default
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"timezone_fallback: requested={tz!r} using={default}")
        return default
    return tz


def get_zone(tz: str) -> ZoneInfo:
    return ZoneInfo(normalize_timezone(tz))


def ensure_utc(value: Union[datetime, str]) -> datetime:
    """Coerce an ISO string, naive (assumed UTC) or aware datetime to aware UTC."""
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError as exc:
            raise PeriodValidationError(f"Invalid UTC instant: {value}") from exc
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_local(instant: datetime, tz: str) -> datetime:
    return ensure_utc(instant).astimezone(get_zone(tz))


def local_date(instant: datetime, tz: str) -> date:
    return to_local(instant, tz).date()


def local_midnight_utc(day: date, tz: str) -> datetime:
    # A midnight swallowed by a DST gap resolves with the pre-transition
    # offset, which still lands on the same local calendar day.
    local = datetime.combine(day, time(0, 0), tzinfo=get_zone(tz))
    return local.astimezone(timezone.utc)


def local_day_number(instant: datetime, tz: str) -> int:
    return (local_date(instant, tz) - EPOCH_DAY).days


def add_local_days(instant: datetime, days: int, tz: str) -> datetime:
    return local_midnight_utc(local_date(instant, tz) + timedelta(days=days), tz)


def add_months(day: date, months: int) -> date:
    total = day.month - 1 + months
    return date(day.year + total // 12, total % 12 + 1, 1)


def is_reasonable(instant: Optional[datetime]) -> bool:
    if instant is None:
        return False
    settings = get_settings()
    year = ensure_utc(instant).year
    return settings.min_reasonable_year <= year <= settings.max_reasonable_year


def utc_day_start(instant: datetime) -> datetime:
    base = ensure_utc(instant)
    return datetime(base.year, base.month, base.day, tzinfo=timezone.utc)


def utc_month_start(instant: datetime) -> datetime:
    base = ensure_utc(instant)
    return datetime(base.year, base.month, 1, tzinfo=timezone.utc)


def parse_local_day(value: object) -> date:
    text = value.strip() if isinstance(value, str) else str(value or "").strip()
    if not _LOCAL_DAY_RE.match(text):
        raise PeriodValidationError(f"Invalid ISO local-day date: {text}")
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise PeriodValidationError(f"Invalid ISO local-day date: {text}") from exc


def local_day_to_utc(tz: str, value: object) -> datetime:
    """Interpret ``YYYY-MM-DD`` as local midnight in ``tz``."""
    return local_midnight_utc(parse_local_day(value), tz)


def parse_month_at(value: object) -> Optional[tuple[int, int]]:
    if not isinstance(value, str):
        return None
    match = _MONTH_AT_RE.match(value.strip())
    if not match:
        return None
    year, month = int(match.group(1)), int(match.group(2))
    if month < 1 or month > 12:
        return None
    return year, month


def format_local(instant: datetime, tz: str, pattern: str = "%Y-%m-%d") -> str:
    return to_local(instant, tz).strftime(pattern)


def is_same_local_day(a: datetime, b: datetime, tz: str) -> bool:
    return local_date(a, tz) == local_date(b, tz)
