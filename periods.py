import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Union

from calendar_math import (
    PeriodComputationError,
    PeriodValidationError,
    add_local_days,
    add_months,
    ensure_utc,
    is_reasonable,
    local_date,
    local_day_number,
    local_midnight_utc,
    normalize_timezone,
    utc_day_start,
    utc_month_start,
    utc_now,
)
from config import get_settings
from models import PeriodType


logger = logging.getLogger(__name__)

WEEK_DAYS = 7
BIWEEK_DAYS = 14
MAX_WINDOW_LIST = 52


@dataclass(frozen=True)
class PeriodWindow:
    period_type: PeriodType
    start: datetime
    end: datetime
    anchor: Optional[datetime] = None

    @property
    def key(self) -> str:
        return f"{self.period_type.value}|{self.start.isoformat()}|{self.end.isoformat()}"

    def contains(self, instant: datetime) -> bool:
        return self.start <= ensure_utc(instant) < self.end


def _resolve_week_start(value: Optional[int]) -> int:
    if isinstance(value, int) and 0 <= value <= 6:
        return value
    return get_settings().week_starts_on


def _guarded(
    label: str,
    compute: Callable[[], datetime],
    fallback: Callable[[], datetime],
) -> datetime:
    try:
        value: Optional[datetime] = compute()
    except (OverflowError, ValueError):
        value = None
    if not is_reasonable(value):
        substitute = fallback()
        logger.warning(
            f"period_boundary_fallback: boundary={label} computed={value} "
            f"substitute={substitute.isoformat()}"
        )
        return substitute
    return value


def weekly_period_start(
    time_zone: str, now: datetime, week_starts_on: Optional[int] = None
) -> datetime:
    tz = normalize_timezone(time_zone)
    wso = _resolve_week_start(week_starts_on)

    def compute() -> datetime:
        local = local_date(now, tz)
        diff = (local.weekday() - wso) % WEEK_DAYS
        return local_midnight_utc(local - timedelta(days=diff), tz)

    return _guarded("weekly_start", compute, lambda: utc_day_start(now))


def monthly_period_start(time_zone: str, now: datetime) -> datetime:
    tz = normalize_timezone(time_zone)
    return _guarded(
        "monthly_start",
        lambda: local_midnight_utc(local_date(now, tz).replace(day=1), tz),
        lambda: utc_month_start(now),
    )


def biweekly_period_start(
    time_zone: str,
    anchor: Optional[datetime],
    now: datetime,
    week_starts_on: Optional[int] = None,
) -> datetime:
    """Start of the two-week block containing ``now``, locked to ``anchor``.

    Weeks are counted on local calendar day numbers so 23/25-hour DST days
    never shift the parity.
    """
    if anchor is None:
        raise PeriodValidationError("BIWEEKLY requires a period anchor")
    tz = normalize_timezone(time_zone)
    this_week = weekly_period_start(tz, now, week_starts_on)
    anchor_week = weekly_period_start(tz, anchor, week_starts_on)

    day_diff = local_day_number(this_week, tz) - local_day_number(anchor_week, tz)
    week_diff = day_diff // WEEK_DAYS
    if week_diff % 2 == 0:
        return this_week
    return _guarded(
        "biweekly_start",
        lambda: add_local_days(this_week, -WEEK_DAYS, tz),
        lambda: this_week,
    )


def next_period_start(
    period_type: PeriodType, time_zone: str, period_start: datetime
) -> datetime:
    tz = normalize_timezone(time_zone)
    period_type = PeriodType(period_type)
    if period_type == PeriodType.weekly:
        return _guarded(
            "weekly_end",
            lambda: add_local_days(period_start, WEEK_DAYS, tz),
            lambda: utc_day_start(period_start) + timedelta(days=WEEK_DAYS),
        )
    if period_type == PeriodType.biweekly:
        return _guarded(
            "biweekly_end",
            lambda: add_local_days(period_start, BIWEEK_DAYS, tz),
            lambda: utc_day_start(period_start) + timedelta(days=BIWEEK_DAYS),
        )

    def fallback() -> datetime:
        base = utc_month_start(period_start)
        nxt = add_months(base.date(), 1)
        return base.replace(year=nxt.year, month=nxt.month)

    return _guarded(
        "monthly_end",
        lambda: local_midnight_utc(
            add_months(local_date(period_start, tz).replace(day=1), 1), tz
        ),
        fallback,
    )


def _assert_valid_window(window: PeriodWindow, tz: str) -> None:
    if window.end <= window.start:
        raise PeriodComputationError(
            f"invalid window: end <= start for {window.period_type.value} ({tz}) "
            f"start={window.start.isoformat()} end={window.end.isoformat()}"
        )


def compute_window(
    period_type: Union[PeriodType, str],
    time_zone: str,
    now: Optional[datetime] = None,
    anchor: Optional[datetime] = None,
    *,
    week_starts_on: Optional[int] = None,
) -> PeriodWindow:
    period_type = PeriodType(period_type)
    tz = normalize_timezone(time_zone)
    now = ensure_utc(now) if now is not None else utc_now()
    window_anchor: Optional[datetime] = None

    if period_type == PeriodType.weekly:
        start = weekly_period_start(tz, now, week_starts_on)
    elif period_type == PeriodType.biweekly:
        if anchor is None:
            raise PeriodValidationError("BIWEEKLY requires a period anchor")
        window_anchor = ensure_utc(anchor)
        start = biweekly_period_start(tz, window_anchor, now, week_starts_on)
    else:
        start = monthly_period_start(tz, now)

    window = PeriodWindow(
        period_type=period_type,
        start=start,
        end=next_period_start(period_type, tz, start),
        anchor=window_anchor,
    )
    _assert_valid_window(window, tz)
    return window


def window_from_start(
    period_type: Union[PeriodType, str],
    time_zone: str,
    period_start: datetime,
    anchor: Optional[datetime] = None,
) -> PeriodWindow:
    """Window for an already-known boundary, e.g. the next plan in a rollover."""
    period_type = PeriodType(period_type)
    tz = normalize_timezone(time_zone)
    start = ensure_utc(period_start)
    window = PeriodWindow(
        period_type=period_type,
        start=start,
        end=next_period_start(period_type, tz, start),
        anchor=ensure_utc(anchor) if anchor is not None else None,
    )
    _assert_valid_window(window, tz)
    return window


def _clamp_count(count: object) -> int:
    try:
        n = int(count)
    except (TypeError, ValueError):
        return 1
    return min(MAX_WINDOW_LIST, max(1, n))


def list_windows(
    period_type: Union[PeriodType, str],
    time_zone: str,
    starting_at: datetime,
    count: int,
    anchor: Optional[datetime] = None,
    *,
    week_starts_on: Optional[int] = None,
) -> list[PeriodWindow]:
    """``count`` windows walking backwards from the one containing ``starting_at``."""
    current = compute_window(
        period_type, time_zone, starting_at, anchor, week_starts_on=week_starts_on
    )
    windows = [current]
    seen = {current.start}
    for _ in range(_clamp_count(count) - 1):
        previous = compute_window(
            period_type,
            time_zone,
            current.start - timedelta(microseconds=1),
            anchor,
            week_starts_on=week_starts_on,
        )
        if previous.start in seen:
            break
        seen.add(previous.start)
        windows.append(previous)
        current = previous
    return windows


def list_upcoming_windows(
    period_type: Union[PeriodType, str],
    time_zone: str,
    starting_at: datetime,
    count: int,
    anchor: Optional[datetime] = None,
    *,
    week_starts_on: Optional[int] = None,
) -> list[PeriodWindow]:
    current = compute_window(
        period_type, time_zone, starting_at, anchor, week_starts_on=week_starts_on
    )
    windows = [current]
    seen = {current.start}
    for _ in range(_clamp_count(count) - 1):
        following = compute_window(
            period_type, time_zone, current.end, anchor, week_starts_on=week_starts_on
        )
        if following.start in seen:
            break
        seen.add(following.start)
        windows.append(following)
        current = following
    return windows


def monthly_window_at(time_zone: str, year: int, month: int) -> PeriodWindow:
    tz = normalize_timezone(time_zone)
    start = local_midnight_utc(date(year, month, 1), tz)
    return compute_window(PeriodType.monthly, tz, start)
