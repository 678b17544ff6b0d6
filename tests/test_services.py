from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    BudgetGoal,
    CurrencyCode,
    PeriodType,
    Plan,
    SavingsGoal,
    Transaction,
    TransactionType,
    User,
)
from periods import compute_window
from schemas import (
    BudgetGoalIn,
    GoalsMode,
    SavingsGoalDTO,
    SavingsGoalIn,
    SwitchCurrencyIn,
    SwitchPeriodIn,
)
from services import (
    DashboardService,
    GoalRepository,
    PlanRepository,
    PlanService,
    TransactionQuery,
    plan_snapshot,
    rollover_all_due,
)


NY = "America/New_York"
JAN_15 = datetime(2025, 1, 15, 12, tzinfo=timezone.utc)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def add_tx(session, type_, amount, occurred_at, **kwargs) -> Transaction:
    tx = Transaction(
        user_id=kwargs.pop("user_id", 1),
        type=type_,
        amount_minor=amount,
        currency=kwargs.pop("currency", CurrencyCode.usd),
        category=kwargs.pop("category", "misc"),
        occurred_at=occurred_at,
        **kwargs,
    )
    session.add(tx)
    session.commit()
    return tx


def plan_with_goals(session) -> Plan:
    service = PlanService(session)
    plan = service.ensure_active_plan(JAN_15)
    service.update_budget_goals(
        plan.id, [BudgetGoalIn(category="Dining", limit_minor=20_000)]
    )
    service.update_savings_goals(
        plan.id, [SavingsGoalIn(name="Trip", target_minor=5_000)]
    )
    return plan


def test_ensure_active_plan_creates_monthly_plan_once() -> None:
    session = make_session()
    service = PlanService(session)

    plan = service.ensure_active_plan(JAN_15)

    assert plan.period_type == PeriodType.monthly
    assert plan.period_start == datetime(2025, 1, 1, 5, tzinfo=timezone.utc)
    assert plan.period_end == datetime(2025, 2, 1, 5, tzinfo=timezone.utc)
    assert plan.time_zone == NY
    assert session.get(User, 1).active_plan_id == plan.id
    assert service.ensure_active_plan(JAN_15).id == plan.id
    assert len(session.scalars(select(Plan)).all()) == 1


def test_upsert_plan_returns_existing_row() -> None:
    session = make_session()
    session.add(User(id=1, time_zone=NY))
    session.commit()
    repo = PlanRepository(session)
    window = compute_window(PeriodType.weekly, NY, JAN_15)
    fields = {"period_end": window.end, "time_zone": NY}

    first, created = repo.upsert_plan(1, PeriodType.weekly, window.start, fields)
    second, created_again = repo.upsert_plan(1, "WEEKLY", window.start, fields)

    assert created is True
    assert created_again is False
    assert second.id == first.id


def test_upsert_plan_recovers_from_concurrent_insert(monkeypatch) -> None:
    session = make_session()
    session.add(User(id=1, time_zone=NY))
    session.commit()
    repo = PlanRepository(session)
    window = compute_window(PeriodType.weekly, NY, JAN_15)
    fields = {"period_end": window.end, "time_zone": NY}
    existing, _ = repo.upsert_plan(1, PeriodType.weekly, window.start, fields)
    session.commit()

    real_find = repo.find_plan
    calls = []

    def stale_find(*args, **kwargs):
        # the first lookup misses a row another writer already inserted
        calls.append(args)
        if len(calls) == 1:
            return None
        return real_find(*args, **kwargs)

    monkeypatch.setattr(repo, "find_plan", stale_find)
    plan, created = repo.upsert_plan(1, PeriodType.weekly, window.start, fields)

    assert created is False
    assert plan.id == existing.id
    assert len(calls) == 2
    assert len(session.scalars(select(Plan)).all()) == 1


def test_get_plan_rejects_other_users() -> None:
    session = make_session()
    plan = PlanService(session, user_id=2).ensure_active_plan(JAN_15)
    with pytest.raises(ValueError, match="Plan not found"):
        PlanService(session, user_id=1).get_plan(plan.id)


def test_rollover_before_period_end_does_nothing() -> None:
    session = make_session()
    service = PlanService(session)
    plan = service.ensure_active_plan(JAN_15)

    result = service.rollover_active_plan(datetime(2025, 1, 31, tzinfo=timezone.utc))

    assert result.rolled is False
    assert result.reason == "Plan is still active"
    assert result.plan.id == plan.id


def test_rollover_catches_up_several_periods_and_copies_goals() -> None:
    session = make_session()
    plan_with_goals(session)
    service = PlanService(session)
    now = datetime(2025, 4, 10, 12, tzinfo=timezone.utc)

    result = service.rollover_active_plan(now)

    assert result.rolled is True
    assert result.created_count == 3
    april = result.plan
    assert april.period_start == datetime(2025, 4, 1, 4, tzinfo=timezone.utc)
    assert april.period_end == datetime(2025, 5, 1, 4, tzinfo=timezone.utc)
    assert session.get(User, 1).active_plan_id == april.id

    snapshot = plan_snapshot(april)
    assert [(g.category, g.limit_minor) for g in snapshot.budget_goals] == [
        ("dining", 20_000)
    ]
    assert [(g.name, g.target_minor) for g in snapshot.savings_goals] == [
        ("Trip", 5_000)
    ]

    starts = [p.period_start for p in PlanRepository(session).list_plans(1)]
    assert starts == sorted(starts, reverse=True)
    assert len(starts) == 4

    again = service.rollover_active_plan(now)
    assert again.rolled is False


def test_rollover_only_copies_goals_into_created_plans() -> None:
    session = make_session()
    plan_with_goals(session)
    repo = PlanRepository(session)
    feb = compute_window(
        PeriodType.monthly, NY, datetime(2025, 2, 10, tzinfo=timezone.utc)
    )
    existing, _ = repo.upsert_plan(
        1, PeriodType.monthly, feb.start, {"period_end": feb.end, "time_zone": NY}
    )
    existing.budget_goals.append(BudgetGoal(category="rent", limit_minor=100_000))
    session.commit()

    result = PlanService(session).rollover_active_plan(
        datetime(2025, 3, 10, tzinfo=timezone.utc)
    )

    assert result.created_count == 1
    session.refresh(existing)
    assert [g.category for g in existing.budget_goals] == ["rent"]
    assert [g.category for g in result.plan.budget_goals] == ["dining"]


def test_rollover_carries_spendable_net_when_enabled() -> None:
    session = make_session()
    service = PlanService(session)
    service.ensure_active_plan(JAN_15)
    session.get(User, 1).cashflow_carryover_enabled = True
    session.commit()
    day = datetime(2025, 1, 10, tzinfo=timezone.utc)
    add_tx(session, TransactionType.income, 10_000, day)
    add_tx(session, TransactionType.expense, 3_000, day)
    add_tx(session, TransactionType.saving, 2_000, day)

    result = service.rollover_active_plan(datetime(2025, 2, 10, tzinfo=timezone.utc))

    assert result.plan.carryover_minor == 5_000


def test_rollover_without_carryover_starts_at_zero() -> None:
    session = make_session()
    service = PlanService(session)
    service.ensure_active_plan(JAN_15)
    day = datetime(2025, 1, 10, tzinfo=timezone.utc)
    add_tx(session, TransactionType.income, 10_000, day)

    result = service.rollover_active_plan(datetime(2025, 2, 10, tzinfo=timezone.utc))

    assert result.plan.carryover_minor == 0


def test_dedupe_keeps_lowest_id() -> None:
    session = make_session()
    plan = PlanService(session).ensure_active_plan(JAN_15)
    plan.budget_goals.append(BudgetGoal(category="Dining", limit_minor=100))
    session.flush()
    plan.budget_goals.append(BudgetGoal(category="dining ", limit_minor=200))
    session.flush()
    plan.savings_goals.append(SavingsGoal(name="Car", target_minor=1_000))
    session.flush()
    plan.savings_goals.append(SavingsGoal(name="car", target_minor=2_000))
    session.commit()

    removed = GoalRepository(session).dedupe(plan.id)
    session.commit()

    assert removed == 2
    assert [(g.category, g.limit_minor) for g in session.scalars(select(BudgetGoal))] == [
        ("Dining", 100)
    ]
    assert [g.name for g in session.scalars(select(SavingsGoal))] == ["Car"]


def test_non_positive_limit_deletes_goal_and_others_survive() -> None:
    session = make_session()
    service = PlanService(session)
    plan = service.ensure_active_plan(JAN_15)
    service.update_budget_goals(
        plan.id,
        [
            BudgetGoalIn(category="dining", limit_minor=5_000),
            BudgetGoalIn(category="rent", limit_minor=100_000),
        ],
    )

    service.update_budget_goals(plan.id, [BudgetGoalIn(category="Dining", limit_minor=0)])

    rows = session.scalars(select(BudgetGoal)).all()
    assert [(g.category, g.limit_minor) for g in rows] == [("rent", 100_000)]


def test_savings_goals_are_capped_per_plan() -> None:
    session = make_session()
    service = PlanService(session)
    plan = service.ensure_active_plan(JAN_15)
    goals = [SavingsGoalIn(name=f"Goal {i}", target_minor=100) for i in range(11)]

    with pytest.raises(ValueError):
        service.update_savings_goals(plan.id, goals)
    with pytest.raises(ValueError):
        service.update_savings_goals(plan.id, [SavingsGoalDTO(name="  ", target_minor=5)])

    service.update_savings_goals(plan.id, goals[:10])
    assert len(session.scalars(select(SavingsGoal)).all()) == 10


def test_switch_to_biweekly_uses_default_anchor_and_copies_goals() -> None:
    session = make_session()
    plan_with_goals(session)
    service = PlanService(session)
    now = datetime(2025, 1, 19, 17, tzinfo=timezone.utc)

    plan = service.switch_period_type(
        SwitchPeriodIn(period_type=PeriodType.biweekly), now=now
    )

    assert plan.period_type == PeriodType.biweekly
    assert plan.period_anchor == datetime(2025, 1, 6, 5, tzinfo=timezone.utc)
    assert plan.period_start == datetime(2025, 1, 6, 5, tzinfo=timezone.utc)
    assert plan.period_end == datetime(2025, 1, 20, 5, tzinfo=timezone.utc)
    assert [g.category for g in plan.budget_goals] == ["dining"]
    assert session.get(User, 1).active_plan_id == plan.id

    same = service.switch_period_type(
        SwitchPeriodIn(period_type=PeriodType.biweekly), now=now
    )
    assert same.id == plan.id


def test_switch_to_biweekly_with_explicit_anchor() -> None:
    session = make_session()
    PlanService(session).ensure_active_plan(JAN_15)

    plan = PlanService(session).switch_period_type(
        SwitchPeriodIn(
            period_type=PeriodType.biweekly,
            anchor_date=date(2025, 1, 13),
            time_zone="Asia/Seoul",
        ),
        now=JAN_15,
    )

    assert plan.time_zone == "Asia/Seoul"
    assert plan.period_start == datetime(2025, 1, 12, 15, tzinfo=timezone.utc)
    assert session.get(User, 1).time_zone == "Asia/Seoul"


def test_switch_currency_converts_goals() -> None:
    session = make_session()
    plan = plan_with_goals(session)
    plan.total_budget_limit_minor = 10_000
    session.commit()

    switched = PlanService(session).switch_currency(
        plan.id,
        SwitchCurrencyIn(
            currency=CurrencyCode.krw,
            goals_mode=GoalsMode.convert_using_fx,
            fx_usd_krw=1300,
        ),
    )

    assert switched.currency == CurrencyCode.krw
    assert switched.total_budget_limit_minor == 130_000
    assert [g.limit_minor for g in switched.budget_goals] == [260_000]
    assert [g.target_minor for g in switched.savings_goals] == [65_000]
    assert session.get(User, 1).currency == CurrencyCode.krw


def test_switch_currency_copy_and_reset_modes() -> None:
    session = make_session()
    plan = plan_with_goals(session)
    service = PlanService(session)

    copied = service.switch_currency(plan.id, SwitchCurrencyIn(currency=CurrencyCode.krw))
    assert [g.limit_minor for g in copied.budget_goals] == [20_000]

    reset = service.switch_currency(
        plan.id,
        SwitchCurrencyIn(currency=CurrencyCode.usd, goals_mode=GoalsMode.reset_empty),
    )
    assert reset.currency == CurrencyCode.usd
    assert reset.total_budget_limit_minor == 0
    assert reset.budget_goals == []
    assert reset.savings_goals == []


def test_switch_currency_conversion_requires_rate() -> None:
    session = make_session()
    plan = plan_with_goals(session)

    with pytest.raises(ValueError, match="fx_usd_krw"):
        PlanService(session).switch_currency(
            plan.id,
            SwitchCurrencyIn(
                currency=CurrencyCode.krw, goals_mode=GoalsMode.convert_using_fx
            ),
        )


def test_windows_lists_recent_periods_or_a_given_month() -> None:
    session = make_session()
    service = PlanService(session)
    service.ensure_active_plan(JAN_15)

    recent = service.windows(count=3, now=JAN_15)
    assert [w.start.month for w in recent] == [1, 12, 11]

    june = service.windows(at="2025-06", now=JAN_15)
    assert len(june) == 1
    assert june[0].start == datetime(2025, 6, 1, 4, tzinfo=timezone.utc)


def test_rollover_all_due_advances_every_ended_plan() -> None:
    session = make_session()
    PlanService(session, user_id=1).ensure_active_plan(JAN_15)
    PlanService(session, user_id=2).ensure_active_plan(JAN_15)
    now = datetime(2025, 2, 10, tzinfo=timezone.utc)

    assert rollover_all_due(session, now) == 2
    assert rollover_all_due(session, now) == 0


def test_transaction_query_is_half_open_and_newest_first() -> None:
    session = make_session()
    plan = PlanService(session).ensure_active_plan(JAN_15)
    start = add_tx(session, TransactionType.expense, 1, plan.period_start)
    middle = add_tx(session, TransactionType.expense, 2, JAN_15)
    add_tx(session, TransactionType.expense, 3, plan.period_end)

    window = compute_window(PeriodType.monthly, NY, JAN_15)
    found = TransactionQuery(session).in_window(1, window)

    assert [tx.id for tx in found] == [middle.id, start.id]


def test_dashboard_reports_period_totals() -> None:
    session = make_session()
    plan = PlanService(session).ensure_active_plan(JAN_15)
    service = PlanService(session)
    service.update_budget_goals(
        plan.id, [BudgetGoalIn(category="dining", limit_minor=1_000)]
    )
    service.update_savings_goals(
        plan.id, [SavingsGoalIn(name="Trip", target_minor=2_000)]
    )
    trip = session.scalars(select(SavingsGoal)).one()
    day = datetime(2025, 1, 12, tzinfo=timezone.utc)
    add_tx(session, TransactionType.income, 10_000, day, category="salary")
    add_tx(session, TransactionType.expense, 500, day, category="Dining")
    add_tx(
        session,
        TransactionType.saving,
        2_500,
        day,
        category="Trip",
        savings_goal_id=trip.id,
    )
    add_tx(session, TransactionType.expense, 9_000, day, currency=CurrencyCode.krw)
    session.get(User, 1).currency = CurrencyCode.krw
    session.commit()

    out = DashboardService(session).build(datetime(2025, 1, 20, tzinfo=timezone.utc))

    assert out.income_minor == 10_000
    assert out.expense_minor == 500
    assert out.saving_minor == 2_500
    assert out.operational_net_minor == 9_500
    assert out.spendable_net_minor == 7_000
    assert out.budget_rows[0].remaining_minor == 500
    assert out.savings_rows[0].saved_minor == 2_500
    assert out.progress_percent == 65
    assert "missing_fx_excluded:KRW->USD" in out.warnings
    assert "plan_currency_mismatch:USD->KRW" in out.warnings
