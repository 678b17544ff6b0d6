import os
from datetime import date
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_currency: str,
        week_starts_on: int,
        min_reasonable_year: int,
        max_reasonable_year: int,
        rollover_cooldown_secs: float,
        rollover_timer_jitter_secs: float,
        request_timeout_secs: float,
        max_rollover_periods: int,
        default_biweekly_anchor: date,
        user_id: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_currency = default_currency
        self.week_starts_on = week_starts_on
        self.min_reasonable_year = min_reasonable_year
        self.max_reasonable_year = max_reasonable_year
        self.rollover_cooldown_secs = rollover_cooldown_secs
        self.rollover_timer_jitter_secs = rollover_timer_jitter_secs
        self.request_timeout_secs = request_timeout_secs
        self.max_rollover_periods = max_rollover_periods
        self.default_biweekly_anchor = default_biweekly_anchor
        self.user_id = user_id


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "America/New_York")
    default_currency = os.getenv("BUDGET_DEFAULT_CURRENCY", "USD").upper()
    # Python weekday numbering: 0 = Monday
    week_starts_on = int(os.getenv("BUDGET_WEEK_STARTS_ON", "0"))
    if not 0 <= week_starts_on <= 6:
        week_starts_on = 0
    min_reasonable_year = int(os.getenv("BUDGET_MIN_REASONABLE_YEAR", "1970"))
    max_reasonable_year = int(os.getenv("BUDGET_MAX_REASONABLE_YEAR", "2100"))
    rollover_cooldown_secs = float(os.getenv("BUDGET_ROLLOVER_COOLDOWN_SECS", "120"))
    rollover_timer_jitter_secs = float(
        os.getenv("BUDGET_ROLLOVER_TIMER_JITTER_SECS", "2")
    )
    request_timeout_secs = float(os.getenv("BUDGET_REQUEST_TIMEOUT_SECS", "10"))
    max_rollover_periods = int(os.getenv("BUDGET_MAX_ROLLOVER_PERIODS", "36"))
    default_biweekly_anchor = date.fromisoformat(
        os.getenv("BUDGET_DEFAULT_BIWEEKLY_ANCHOR", "2025-01-06")
    )
    user_id = int(os.getenv("BUDGET_USER_ID", "1"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_currency=default_currency,
        week_starts_on=week_starts_on,
        min_reasonable_year=min_reasonable_year,
        max_reasonable_year=max_reasonable_year,
        rollover_cooldown_secs=rollover_cooldown_secs,
        rollover_timer_jitter_secs=rollover_timer_jitter_secs,
        request_timeout_secs=request_timeout_secs,
        max_rollover_periods=max_rollover_periods,
        default_biweekly_anchor=default_biweekly_anchor,
        user_id=user_id,
    )
