import random
from datetime import date, datetime, timedelta, timezone

import pytest

from calendar_math import (
    PeriodValidationError,
    local_date,
    local_day_to_utc,
)
from models import PeriodType
from periods import (
    MAX_WINDOW_LIST,
    compute_window,
    list_upcoming_windows,
    list_windows,
    monthly_window_at,
    next_period_start,
)


NY = "America/New_York"


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_monthly_new_york_january() -> None:
    window = compute_window(PeriodType.monthly, NY, _utc(2025, 1, 15, 12))
    assert window.start == _utc(2025, 1, 1, 5)
    assert window.end == _utc(2025, 2, 1, 5)


def test_monthly_boundary_uses_local_calendar() -> None:
    # 2025-02-01 02:00Z is still January 31 in New York
    window = compute_window(PeriodType.monthly, NY, _utc(2025, 2, 1, 2))
    assert window.start == _utc(2025, 1, 1, 5)


def test_biweekly_example_from_anchor() -> None:
    anchor = local_day_to_utc(NY, "2025-01-06")
    window = compute_window(PeriodType.biweekly, NY, _utc(2025, 1, 19, 17), anchor)
    # one whole week after the anchor week: the block began at the anchor
    assert window.start == _utc(2025, 1, 6, 5)
    assert window.end == _utc(2025, 1, 20, 5)
    assert window.anchor == anchor

    following = compute_window(PeriodType.biweekly, NY, _utc(2025, 1, 22, 12), anchor)
    assert following.start == _utc(2025, 1, 20, 5)
    assert following.end == _utc(2025, 2, 3, 5)


def test_biweekly_requires_anchor() -> None:
    with pytest.raises(PeriodValidationError):
        compute_window(PeriodType.biweekly, NY, _utc(2025, 1, 19))


def test_weekly_start_weekday_across_dst_transitions() -> None:
    rng = random.Random(20250106)
    lo = _utc(2023, 1, 1).timestamp()
    hi = _utc(2027, 1, 1).timestamp()
    for tz in (NY, "Europe/London", "Australia/Sydney"):
        for _ in range(1000):
            now = datetime.fromtimestamp(rng.uniform(lo, hi), tz=timezone.utc)
            window = compute_window(PeriodType.weekly, tz, now)
            start_day = local_date(window.start, tz)
            assert start_day.weekday() == 0
            assert window.start <= now < window.end
            assert (local_date(window.end, tz) - start_day).days == 7


def test_weekly_respects_configured_week_start() -> None:
    window = compute_window(
        PeriodType.weekly, NY, _utc(2025, 1, 15, 12), week_starts_on=6
    )
    assert local_date(window.start, NY) == date(2025, 1, 12)


def test_compute_window_end_after_start_for_all_types() -> None:
    rng = random.Random(7)
    anchor = local_day_to_utc(NY, "2025-01-06")
    for _ in range(300):
        now = _utc(2024, 1, 1) + timedelta(seconds=rng.randint(0, 3 * 365 * 86400))
        for period_type in PeriodType:
            window = compute_window(period_type, NY, now, anchor)
            assert window.end > window.start


def test_biweekly_idempotent_and_alternating() -> None:
    anchor = local_day_to_utc(NY, "2025-01-06")
    rng = random.Random(99)
    for _ in range(200):
        now = _utc(2025, 1, 1) + timedelta(minutes=rng.randint(0, 2 * 365 * 1440))
        window = compute_window(PeriodType.biweekly, NY, now, anchor)
        assert compute_window(PeriodType.biweekly, NY, window.start, anchor) == window
        following = compute_window(PeriodType.biweekly, NY, window.end, anchor)
        assert following.start == window.end
        assert (local_date(window.end, NY) - local_date(window.start, NY)).days == 14


def test_next_period_start_matches_window_end() -> None:
    start = _utc(2025, 3, 3, 5)
    assert next_period_start(PeriodType.weekly, NY, start) == _utc(2025, 3, 10, 4)
    assert next_period_start(PeriodType.monthly, NY, _utc(2025, 3, 1, 5)) == _utc(
        2025, 4, 1, 4
    )


def test_list_windows_walks_backwards_without_duplicates() -> None:
    windows = list_windows(PeriodType.monthly, NY, _utc(2025, 3, 10), 3)
    assert [w.start for w in windows] == [
        _utc(2025, 3, 1, 5),
        _utc(2025, 2, 1, 5),
        _utc(2025, 1, 1, 5),
    ]
    for newer, older in zip(windows, windows[1:]):
        assert older.end == newer.start


def test_list_windows_clamps_count() -> None:
    assert len(list_windows(PeriodType.weekly, NY, _utc(2025, 3, 10), 500)) == (
        MAX_WINDOW_LIST
    )
    assert len(list_windows(PeriodType.weekly, NY, _utc(2025, 3, 10), 0)) == 1


def test_list_upcoming_windows_walks_forward() -> None:
    windows = list_upcoming_windows(PeriodType.weekly, NY, _utc(2025, 3, 5), 2)
    assert windows[0].end == windows[1].start
    assert local_date(windows[1].start, NY) == date(2025, 3, 10)


def test_monthly_window_at_explicit_month() -> None:
    window = monthly_window_at("Asia/Seoul", 2025, 3)
    assert window.start == _utc(2025, 2, 28, 15)
    assert window.end == _utc(2025, 3, 31, 15)


def test_window_key_and_half_open_contains() -> None:
    window = compute_window(PeriodType.monthly, NY, _utc(2025, 1, 15))
    assert window.key == (
        "MONTHLY|2025-01-01T05:00:00+00:00|2025-02-01T05:00:00+00:00"
    )
    assert window.contains(window.start)
    assert not window.contains(window.end)


def test_out_of_range_boundary_is_substituted(caplog) -> None:
    now = _utc(2150, 6, 18, 12)
    window = compute_window(PeriodType.weekly, NY, now)
    assert window.start == _utc(2150, 6, 18)
    assert window.end == _utc(2150, 6, 25)
    assert "period_boundary_fallback" in caplog.text
