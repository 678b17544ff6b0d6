from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)

from calendar_math import (
    ensure_utc,
    format_local,
    local_day_to_utc,
    normalize_timezone,
)
from models import CurrencyCode, PeriodType
from periods import PeriodWindow


class GoalsMode(str, Enum):
    copy_as_is = "COPY_AS_IS"
    convert_using_fx = "CONVERT_USING_FX"
    reset_empty = "RESET_EMPTY"


def _coerce_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class BudgetGoalDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    category: str
    limit_minor: int = Field(
        default=0, validation_alias=AliasChoices("limit_minor", "limitMinor")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> Optional[str]:
        return _coerce_id(value)


class SavingsGoalDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: str
    target_minor: int = Field(
        default=0, validation_alias=AliasChoices("target_minor", "targetMinor")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: Any) -> Optional[str]:
        return _coerce_id(value)


# Field name -> accepted spellings, most specific first.
_INSTANT_ALIASES: dict[str, tuple[str, ...]] = {
    "period_start_utc": (
        "period_start_utc",
        "periodStartUTC",
        "periodStart",
        "period_start",
        "periodStartISO",
    ),
    "period_end_utc": (
        "period_end_utc",
        "periodEndUTC",
        "periodEnd",
        "period_end",
        "periodEndISO",
    ),
    "period_anchor_utc": (
        "period_anchor_utc",
        "periodAnchorUTC",
        "periodAnchor",
        "period_anchor",
        "periodAnchorISO",
    ),
}
_TZ_ALIASES = ("time_zone", "timeZone", "timezone")


def _is_local_day(value: Any) -> bool:
    return isinstance(value, str) and len(value.strip()) == 10 and "T" not in value


class PlanSnapshot(BaseModel):
    """A plan as held by a client, normalized once at the boundary.

    Instants are aware UTC. Bare ``YYYY-MM-DD`` values are read as local
    midnight in the plan's time zone.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[int] = None
    period_type: PeriodType = Field(
        validation_alias=AliasChoices("period_type", "periodType")
    )
    time_zone: str
    period_start_utc: datetime
    period_end_utc: datetime
    period_anchor_utc: Optional[datetime] = None
    currency: CurrencyCode = CurrencyCode.usd
    total_budget_limit_minor: int = Field(
        default=0,
        validation_alias=AliasChoices(
            "total_budget_limit_minor", "totalBudgetLimitMinor"
        ),
    )
    budget_goals: list[BudgetGoalDTO] = Field(
        default_factory=list,
        validation_alias=AliasChoices("budget_goals", "budgetGoals"),
    )
    savings_goals: list[SavingsGoalDTO] = Field(
        default_factory=list,
        validation_alias=AliasChoices("savings_goals", "savingsGoals"),
    )

    @model_validator(mode="before")
    @classmethod
    def _normalize_boundary_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw = dict(data)
        tz_raw = next((raw.pop(k) for k in _TZ_ALIASES if k in raw), None)
        tz = normalize_timezone(tz_raw)
        raw["time_zone"] = tz

        for field, aliases in _INSTANT_ALIASES.items():
            value = None
            for alias in aliases:
                candidate = raw.pop(alias, None)
                if value is None and candidate not in (None, ""):
                    value = candidate
            if value is None:
                continue
            if _is_local_day(value):
                value = local_day_to_utc(tz, value)
            raw[field] = value

        for key in ("period_type", "periodType", "currency"):
            if isinstance(raw.get(key), str):
                raw[key] = raw[key].strip().upper()
        return raw

    @field_validator("period_start_utc", "period_end_utc", "period_anchor_utc")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_window(self) -> "PlanSnapshot":
        if self.period_end_utc <= self.period_start_utc:
            raise ValueError("period_end_utc must be after period_start_utc")
        return self

    @computed_field  # type: ignore[misc]
    @property
    def period_start_local(self) -> str:
        return format_local(self.period_start_utc, self.time_zone)

    @computed_field  # type: ignore[misc]
    @property
    def period_end_local(self) -> str:
        return format_local(self.period_end_utc, self.time_zone)

    @property
    def window(self) -> PeriodWindow:
        return PeriodWindow(
            period_type=self.period_type,
            start=self.period_start_utc,
            end=self.period_end_utc,
            anchor=self.period_anchor_utc,
        )

    @property
    def rollover_key(self) -> str:
        return self.window.key


class PeriodWindowOut(BaseModel):
    period_type: PeriodType
    start_utc: datetime
    end_utc: datetime
    start_local: str
    end_local: str


class BudgetGoalIn(BaseModel):
    category: str = Field(..., max_length=100)
    limit_minor: int = Field(
        ..., validation_alias=AliasChoices("limit_minor", "limitMinor")
    )


class BudgetGoalsPatchIn(BaseModel):
    goals: list[BudgetGoalIn] = Field(default_factory=list)


class SavingsGoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    target_minor: int = Field(
        ..., validation_alias=AliasChoices("target_minor", "targetMinor")
    )


class SavingsGoalsPatchIn(BaseModel):
    goals: list[SavingsGoalIn] = Field(default_factory=list)


class SwitchPeriodIn(BaseModel):
    period_type: PeriodType
    anchor_date: Optional[date] = None
    time_zone: Optional[str] = Field(default=None, max_length=64)


class SwitchCurrencyIn(BaseModel):
    currency: CurrencyCode
    goals_mode: GoalsMode = GoalsMode.copy_as_is
    fx_usd_krw: Optional[float] = Field(default=None, gt=0)


class RolloverOut(BaseModel):
    rolled: bool
    created_count: int = 0
    plan: Optional[PlanSnapshot] = None


class BudgetStatusRow(BaseModel):
    category: str
    limit_minor: int
    spent_minor: int
    remaining_minor: int


class SavingsProgressRow(BaseModel):
    goal_id: int
    name: str
    target_minor: int
    saved_minor: int


class DashboardOut(BaseModel):
    plan: PlanSnapshot
    income_minor: int
    expense_minor: int
    saving_minor: int
    operational_net_minor: int
    spendable_net_minor: int
    carryover_minor: int
    spent_by_category: dict[str, int]
    budget_rows: list[BudgetStatusRow]
    savings_rows: list[SavingsProgressRow]
    progress_percent: int
    warnings: list[str]
