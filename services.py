from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Protocol, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aggregation import PeriodSummary, plan_progress_percent, summarize_period
from calendar_math import (
    ensure_utc,
    local_midnight_utc,
    normalize_timezone,
    parse_month_at,
    utc_now,
)
from config import get_settings
from goals import canonical_category, canonical_key
from models import (
    BudgetGoal,
    PeriodType,
    Plan,
    SavingsGoal,
    Transaction,
    User,
)
from money import convert_minor, normalize_currency, safe_non_negative_int
from periods import (
    PeriodWindow,
    compute_window,
    list_windows,
    monthly_window_at,
    window_from_start,
)
from schemas import (
    BudgetGoalDTO,
    BudgetStatusRow,
    DashboardOut,
    GoalsMode,
    PlanSnapshot,
    SavingsGoalDTO,
    SavingsProgressRow,
    SwitchCurrencyIn,
    SwitchPeriodIn,
)


logger = logging.getLogger(__name__)

MAX_SAVINGS_GOALS_PER_PLAN = 10


class _BudgetGoalLike(Protocol):
    category: str
    limit_minor: int


class _SavingsGoalLike(Protocol):
    name: str
    target_minor: int


def get_current_user_id() -> int:
    return get_settings().user_id


def plan_window(plan: Plan) -> PeriodWindow:
    return PeriodWindow(
        period_type=plan.period_type,
        start=ensure_utc(plan.period_start),
        end=ensure_utc(plan.period_end),
        anchor=ensure_utc(plan.period_anchor) if plan.period_anchor else None,
    )


def plan_snapshot(plan: Plan) -> PlanSnapshot:
    return PlanSnapshot(
        id=plan.id,
        period_type=plan.period_type,
        time_zone=plan.time_zone,
        period_start_utc=plan.period_start,
        period_end_utc=plan.period_end,
        period_anchor_utc=plan.period_anchor,
        currency=plan.currency,
        total_budget_limit_minor=plan.total_budget_limit_minor,
        budget_goals=[
            BudgetGoalDTO(id=g.id, category=g.category, limit_minor=g.limit_minor)
            for g in plan.budget_goals
        ],
        savings_goals=[
            SavingsGoalDTO(id=g.id, name=g.name, target_minor=g.target_minor)
            for g in plan.savings_goals
        ],
    )


class PlanRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, plan_id: int, user_id: int) -> Plan:
        plan = self.session.get(Plan, plan_id)
        if not plan or plan.user_id != user_id:
            raise ValueError("Plan not found")
        return plan

    def find_active_plan(self, user_id: int) -> Optional[Plan]:
        user = self.session.get(User, user_id)
        if not user or user.active_plan_id is None:
            return None
        plan = self.session.get(Plan, user.active_plan_id)
        if not plan or plan.user_id != user_id:
            return None
        return plan

    def find_plan(
        self,
        user_id: int,
        period_type: Union[PeriodType, str],
        period_start: datetime,
    ) -> Optional[Plan]:
        stmt = select(Plan).where(
            Plan.user_id == user_id,
            Plan.period_type == PeriodType(period_type),
            Plan.period_start == ensure_utc(period_start),
        )
        return self.session.scalar(stmt)

    def upsert_plan(
        self,
        user_id: int,
        period_type: Union[PeriodType, str],
        period_start: datetime,
        fields: dict[str, object],
    ) -> tuple[Plan, bool]:
        """Get or create the plan for ``(user, period_type, period_start)``.

        ``fields`` only apply on create; an existing row is returned as is.
        A concurrent insert of the same key is resolved by re-reading it.
        """
        period_type = PeriodType(period_type)
        period_start = ensure_utc(period_start)
        existing = self.find_plan(user_id, period_type, period_start)
        if existing:
            return existing, False

        plan = Plan(
            user_id=user_id,
            period_type=period_type,
            period_start=period_start,
            **fields,
        )
        try:
            with self.session.begin_nested():
                self.session.add(plan)
                self.session.flush()
        except IntegrityError:
            existing = self.find_plan(user_id, period_type, period_start)
            if not existing:
                raise
            logger.info(
                f"plan_upsert_conflict: user_id={user_id} "
                f"period_type={period_type.value} start={period_start.isoformat()}"
            )
            return existing, False
        return plan, True

    def set_active_plan(self, user_id: int, plan_id: int) -> Plan:
        plan = self.get(plan_id, user_id)
        user = self.session.get(User, user_id)
        if not user:
            raise ValueError("User not found")
        user.active_plan_id = plan.id
        self.session.flush()
        return plan

    def list_plans(
        self,
        user_id: int,
        *,
        period_type: Optional[PeriodType] = None,
        limit: Optional[int] = None,
    ) -> list[Plan]:
        stmt = (
            select(Plan)
            .where(Plan.user_id == user_id)
            .order_by(Plan.period_start.desc(), Plan.id.desc())
        )
        if period_type:
            stmt = stmt.where(Plan.period_type == period_type)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())


class GoalRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _plan(self, plan_id: int) -> Plan:
        plan = self.session.get(Plan, plan_id)
        if not plan:
            raise ValueError("Plan not found")
        return plan

    def dedupe(self, plan_id: int) -> int:
        """Collapse goals sharing a canonical key; the lowest id survives."""
        plan = self._plan(plan_id)
        removed = 0

        kept_budget: set[str] = set()
        for row in sorted(plan.budget_goals, key=lambda g: g.id):
            key = canonical_category(row.category)
            if key in kept_budget:
                plan.budget_goals.remove(row)
                removed += 1
            else:
                kept_budget.add(key)

        kept_savings: set[str] = set()
        for row in sorted(plan.savings_goals, key=lambda g: g.id):
            key = canonical_key(row.name)
            if key in kept_savings:
                plan.savings_goals.remove(row)
                removed += 1
            else:
                kept_savings.add(key)

        if removed:
            self.session.flush()
            logger.info(f"goal_dedupe: plan_id={plan_id} removed={removed}")
        return removed

    def replace_budget_goals(
        self,
        plan_id: int,
        goals: Iterable[_BudgetGoalLike],
        *,
        prune_missing: bool = False,
    ) -> list[BudgetGoal]:
        """Write limits by canonical category.

        A non-positive limit deletes the row. Categories not mentioned are
        kept unless ``prune_missing`` is set.
        """
        self.dedupe(plan_id)
        plan = self._plan(plan_id)

        incoming: dict[str, int] = {}
        for goal in goals:
            incoming[canonical_category(goal.category)] = int(goal.limit_minor)

        rows = {canonical_category(row.category): row for row in plan.budget_goals}
        for key, row in list(rows.items()):
            if key in incoming:
                continue
            if prune_missing:
                plan.budget_goals.remove(row)

        for key, limit in incoming.items():
            row = rows.get(key)
            if limit <= 0:
                if row:
                    plan.budget_goals.remove(row)
                continue
            if row:
                row.category = key
                row.limit_minor = limit
            else:
                plan.budget_goals.append(BudgetGoal(category=key, limit_minor=limit))

        self.session.flush()
        return list(plan.budget_goals)

    def replace_savings_goals(
        self,
        plan_id: int,
        goals: Iterable[_SavingsGoalLike],
        *,
        prune_missing: bool = False,
    ) -> list[SavingsGoal]:
        self.dedupe(plan_id)
        plan = self._plan(plan_id)

        incoming: dict[str, tuple[str, int]] = {}
        for goal in goals:
            name = goal.name.strip()
            key = canonical_key(name)
            if not key:
                raise ValueError("Savings goal name cannot be empty")
            incoming[key] = (name, int(goal.target_minor))

        rows = {canonical_key(row.name): row for row in plan.savings_goals}
        surviving = {
            key for key in rows if key not in incoming and not prune_missing
        } | {key for key, (_, target) in incoming.items() if target > 0}
        if len(surviving) > MAX_SAVINGS_GOALS_PER_PLAN:
            raise ValueError(
                f"A plan can hold at most {MAX_SAVINGS_GOALS_PER_PLAN} savings goals"
            )

        if prune_missing:
            for key, row in rows.items():
                if key not in incoming:
                    plan.savings_goals.remove(row)

        for key, (name, target) in incoming.items():
            row = rows.get(key)
            if target <= 0:
                if row:
                    plan.savings_goals.remove(row)
                continue
            if row:
                row.name = name
                row.target_minor = target
            else:
                plan.savings_goals.append(SavingsGoal(name=name, target_minor=target))

        self.session.flush()
        return list(plan.savings_goals)


class TransactionQuery:
    def __init__(self, session: Session) -> None:
        self.session = session

    def in_window(self, user_id: int, window: PeriodWindow) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.occurred_at >= window.start,
                Transaction.occurred_at < window.end,
            )
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())


@dataclass
class RolloverResult:
    rolled: bool
    created_count: int = 0
    plan: Optional[Plan] = None
    reason: Optional[str] = None


class PlanService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.plans = PlanRepository(session)
        self.goals = GoalRepository(session)
        self.transactions = TransactionQuery(session)

    def _get_or_create_user(self) -> User:
        user = self.session.get(User, self.user_id)
        if user:
            return user
        settings = get_settings()
        user = User(
            id=self.user_id,
            time_zone=normalize_timezone(settings.timezone),
            currency=normalize_currency(settings.default_currency),
        )
        self.session.add(user)
        self.session.flush()
        return user

    def summary_for(self, plan: Plan) -> PeriodSummary:
        window = plan_window(plan)
        transactions = self.transactions.in_window(self.user_id, window)
        return summarize_period(transactions, plan.currency, window)

    def _carryover_from(self, plan: Plan) -> int:
        return self.summary_for(plan).spendable_net_minor + plan.carryover_minor

    def get_plan(self, plan_id: int) -> Plan:
        return self.plans.get(plan_id, self.user_id)

    def ensure_active_plan(self, now: Optional[datetime] = None) -> Plan:
        user = self._get_or_create_user()
        plan = self.plans.find_active_plan(self.user_id)
        if plan:
            return plan

        now = ensure_utc(now) if now else utc_now()
        window = compute_window(PeriodType.monthly, user.time_zone, now)
        plan, created = self.plans.upsert_plan(
            self.user_id,
            window.period_type,
            window.start,
            {
                "period_end": window.end,
                "period_anchor": None,
                "time_zone": normalize_timezone(user.time_zone),
                "currency": user.currency,
                "total_budget_limit_minor": 0,
            },
        )
        self.plans.set_active_plan(self.user_id, plan.id)
        self.session.commit()
        logger.info(
            f"active_plan_ensured: user_id={self.user_id} plan_id={plan.id} "
            f"created={created}"
        )
        return plan

    def current_snapshot(self, now: Optional[datetime] = None) -> PlanSnapshot:
        return plan_snapshot(self.ensure_active_plan(now))

    def rollover_active_plan(self, now: Optional[datetime] = None) -> RolloverResult:
        """Advance the active plan until it contains ``now``.

        Creates at most ``max_rollover_periods`` plans. Goals are copied from
        the ended plan only into plans this call created.
        """
        now = ensure_utc(now) if now else utc_now()
        current = self.plans.find_active_plan(self.user_id)
        if not current:
            raise ValueError("No active plan")
        if ensure_utc(current.period_end) > now:
            return RolloverResult(
                rolled=False, plan=current, reason="Plan is still active"
            )

        user = self._get_or_create_user()
        budget_source = [
            BudgetGoalDTO(category=g.category, limit_minor=g.limit_minor)
            for g in current.budget_goals
        ]
        savings_source = [
            SavingsGoalDTO(name=g.name, target_minor=g.target_minor)
            for g in current.savings_goals
        ]

        previous = current
        latest: Optional[Plan] = None
        created_count = 0
        for _ in range(get_settings().max_rollover_periods):
            window = window_from_start(
                current.period_type,
                current.time_zone,
                previous.period_end,
                current.period_anchor,
            )
            carryover = (
                self._carryover_from(previous)
                if user.cashflow_carryover_enabled
                else 0
            )
            plan, created = self.plans.upsert_plan(
                self.user_id,
                window.period_type,
                window.start,
                {
                    "period_end": window.end,
                    "period_anchor": current.period_anchor,
                    "time_zone": current.time_zone,
                    "currency": current.currency,
                    "total_budget_limit_minor": current.total_budget_limit_minor,
                    "carryover_minor": carryover,
                },
            )
            if created:
                created_count += 1
                self.goals.replace_budget_goals(plan.id, budget_source)
                self.goals.replace_savings_goals(plan.id, savings_source)

            latest = plan
            previous = plan
            if ensure_utc(plan.period_end) > now:
                break

        if latest is None:
            return RolloverResult(rolled=False, plan=current, reason="No period created")

        self.plans.set_active_plan(self.user_id, latest.id)
        self.session.commit()
        logger.info(
            f"plan_rollover: user_id={self.user_id} from_plan={current.id} "
            f"to_plan={latest.id} created={created_count}"
        )
        return RolloverResult(rolled=True, created_count=created_count, plan=latest)

    def update_budget_goals(
        self, plan_id: int, goals: Iterable[_BudgetGoalLike]
    ) -> Plan:
        plan = self.plans.get(plan_id, self.user_id)
        self.goals.replace_budget_goals(plan.id, goals)
        self.session.commit()
        self.session.refresh(plan)
        return plan

    def update_savings_goals(
        self, plan_id: int, goals: Iterable[_SavingsGoalLike]
    ) -> Plan:
        plan = self.plans.get(plan_id, self.user_id)
        self.goals.replace_savings_goals(plan.id, goals)
        self.session.commit()
        self.session.refresh(plan)
        return plan

    def switch_period_type(
        self, data: SwitchPeriodIn, now: Optional[datetime] = None
    ) -> Plan:
        user = self._get_or_create_user()
        active = self.ensure_active_plan(now)
        now = ensure_utc(now) if now else utc_now()
        tz = normalize_timezone(data.time_zone or user.time_zone)
        if data.time_zone:
            user.time_zone = tz

        anchor: Optional[datetime] = None
        if data.period_type == PeriodType.biweekly:
            if data.anchor_date:
                anchor = local_midnight_utc(data.anchor_date, tz)
            elif active.period_type == PeriodType.biweekly and active.period_anchor:
                anchor = ensure_utc(active.period_anchor)
            else:
                anchor = local_midnight_utc(get_settings().default_biweekly_anchor, tz)

        window = compute_window(data.period_type, tz, now, anchor)
        plan, created = self.plans.upsert_plan(
            self.user_id,
            window.period_type,
            window.start,
            {
                "period_end": window.end,
                "period_anchor": window.anchor,
                "time_zone": tz,
                "currency": active.currency,
                "total_budget_limit_minor": active.total_budget_limit_minor,
            },
        )
        if created:
            self.goals.replace_budget_goals(plan.id, list(active.budget_goals))
            self.goals.replace_savings_goals(plan.id, list(active.savings_goals))

        self.plans.set_active_plan(self.user_id, plan.id)
        self.session.commit()
        self.session.refresh(plan)
        logger.info(
            f"plan_period_switch: user_id={self.user_id} from_plan={active.id} "
            f"to_plan={plan.id} period_type={plan.period_type.value} created={created}"
        )
        return plan

    def switch_currency(self, plan_id: int, data: SwitchCurrencyIn) -> Plan:
        plan = self.plans.get(plan_id, self.user_id)
        source = plan.currency
        target = data.currency
        convert = data.goals_mode == GoalsMode.convert_using_fx and source != target
        if convert and data.fx_usd_krw is None:
            raise ValueError("fx_usd_krw is required to convert goals")

        def amount(value: int) -> int:
            value = safe_non_negative_int(value)
            if not convert:
                return value
            return convert_minor(value, source, target, data.fx_usd_krw)

        if data.goals_mode == GoalsMode.reset_empty:
            total = 0
            budget: list[BudgetGoalDTO] = []
            savings: list[SavingsGoalDTO] = []
        else:
            total = amount(plan.total_budget_limit_minor)
            budget = [
                BudgetGoalDTO(category=g.category, limit_minor=amount(g.limit_minor))
                for g in plan.budget_goals
            ]
            savings = [
                SavingsGoalDTO(name=g.name, target_minor=amount(g.target_minor))
                for g in plan.savings_goals
            ]

        plan.currency = target
        plan.total_budget_limit_minor = total
        self.goals.replace_budget_goals(plan.id, budget, prune_missing=True)
        self.goals.replace_savings_goals(plan.id, savings, prune_missing=True)
        user = self._get_or_create_user()
        user.currency = target
        self.session.commit()
        self.session.refresh(plan)
        logger.info(
            f"plan_currency_switch: user_id={self.user_id} plan_id={plan.id} "
            f"{source.value}->{target.value} mode={data.goals_mode.value}"
        )
        return plan

    def windows(
        self,
        count: int = 6,
        at: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[PeriodWindow]:
        plan = self.ensure_active_plan(now)
        month_at = parse_month_at(at)
        if month_at and plan.period_type == PeriodType.monthly:
            return [monthly_window_at(plan.time_zone, *month_at)]
        starting_at = ensure_utc(now) if now else utc_now()
        return list_windows(
            plan.period_type,
            plan.time_zone,
            starting_at,
            count,
            plan.period_anchor,
        )


def rollover_all_due(session: Session, now: Optional[datetime] = None) -> int:
    now = ensure_utc(now) if now else utc_now()
    stmt = (
        select(User.id)
        .join(Plan, Plan.id == User.active_plan_id)
        .where(Plan.period_end <= now)
        .order_by(User.id)
    )
    rolled = 0
    for user_id in session.scalars(stmt).all():
        result = PlanService(session, user_id).rollover_active_plan(now)
        if result.rolled:
            rolled += 1
    return rolled


class DashboardService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.plans = PlanService(session, self.user_id)

    def build(self, now: Optional[datetime] = None) -> DashboardOut:
        plan = self.plans.ensure_active_plan(now)
        user = self.session.get(User, self.user_id)
        snapshot = plan_snapshot(plan)
        summary = self.plans.summary_for(plan)

        warnings = list(summary.warnings)
        if user and user.currency != plan.currency:
            warnings.append(
                f"plan_currency_mismatch:{plan.currency.value}->{user.currency.value}"
            )

        budget_rows: list[BudgetStatusRow] = []
        for goal in plan.budget_goals:
            if goal.limit_minor <= 0:
                continue
            key = canonical_category(goal.category)
            spent = summary.spent_by_category.get(key, 0)
            budget_rows.append(
                BudgetStatusRow(
                    category=key,
                    limit_minor=goal.limit_minor,
                    spent_minor=spent,
                    remaining_minor=goal.limit_minor - spent,
                )
            )
        savings_rows = [
            SavingsProgressRow(
                goal_id=goal.id,
                name=goal.name,
                target_minor=goal.target_minor,
                saved_minor=summary.saved_by_goal.get(
                    goal.id, summary.saved_by_goal_name.get(canonical_key(goal.name), 0)
                ),
            )
            for goal in plan.savings_goals
        ]

        return DashboardOut(
            plan=snapshot,
            income_minor=summary.income_minor,
            expense_minor=summary.expense_minor,
            saving_minor=summary.saving_minor,
            operational_net_minor=summary.operational_net_minor,
            spendable_net_minor=summary.spendable_net_minor,
            carryover_minor=plan.carryover_minor,
            spent_by_category=dict(
                sorted(summary.spent_by_category.items(), key=lambda kv: -kv[1])
            ),
            budget_rows=budget_rows,
            savings_rows=savings_rows,
            progress_percent=plan_progress_percent(snapshot, summary),
            warnings=warnings,
        )
