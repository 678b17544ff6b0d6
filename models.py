from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class TransactionType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"
    saving = "SAVING"


class CurrencyCode(str, Enum):
    usd = "USD"
    krw = "KRW"


class PeriodType(str, Enum):
    weekly = "WEEKLY"
    biweekly = "BIWEEKLY"
    monthly = "MONTHLY"


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda cls: [member.value for member in cls],
    )


CURRENCY_CODE_ENUM = _value_enum(CurrencyCode, "currencycode")
PERIOD_TYPE_ENUM = _value_enum(PeriodType, "periodtype")
TRANSACTION_TYPE_ENUM = _value_enum(TransactionType, "txtype")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(200), unique=True)
    time_zone: Mapped[str] = mapped_column(
        String(64), nullable=False, default="America/New_York"
    )
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    # Plain pointer; plans reference users, so no FK in this direction.
    active_plan_id: Mapped[Optional[int]] = mapped_column(Integer, unique=True)
    cashflow_carryover_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    plans: Mapped[list["Plan"]] = relationship(
        "Plan", back_populates="user", order_by="Plan.period_start"
    )


class Plan(Base, TimestampMixin):
    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    period_type: Mapped[PeriodType] = mapped_column(PERIOD_TYPE_ENUM, nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_anchor: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    time_zone: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(
        CURRENCY_CODE_ENUM, nullable=False, default=CurrencyCode.usd
    )
    total_budget_limit_minor: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    carryover_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    user: Mapped["User"] = relationship("User", back_populates="plans")
    budget_goals: Mapped[list["BudgetGoal"]] = relationship(
        "BudgetGoal",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="BudgetGoal.id",
    )
    savings_goals: Mapped[list["SavingsGoal"]] = relationship(
        "SavingsGoal",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="SavingsGoal.id",
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "period_type",
            "period_start",
            name="uq_plan_user_type_start",
        ),
        Index("ix_plans_user_start", "user_id", "period_start"),
        CheckConstraint("period_end > period_start", name="ck_plan_window_positive"),
        CheckConstraint(
            "total_budget_limit_minor >= 0", name="ck_plan_total_limit_positive"
        ),
    )


class BudgetGoal(Base, TimestampMixin):
    __tablename__ = "budget_goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("plans.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    limit_minor: Mapped[int] = mapped_column(Integer, nullable=False)

    plan: Mapped["Plan"] = relationship("Plan", back_populates="budget_goals")

    __table_args__ = (
        UniqueConstraint("plan_id", "category", name="uq_budget_goal_plan_category"),
        CheckConstraint("limit_minor > 0", name="ck_budget_goal_limit_positive"),
    )


class SavingsGoal(Base, TimestampMixin):
    __tablename__ = "savings_goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("plans.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    target_minor: Mapped[int] = mapped_column(Integer, nullable=False)

    plan: Mapped["Plan"] = relationship("Plan", back_populates="savings_goals")

    __table_args__ = (
        UniqueConstraint("plan_id", "name", name="uq_savings_goal_plan_name"),
        CheckConstraint("target_minor > 0", name="ck_savings_goal_target_positive"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(TRANSACTION_TYPE_ENUM, nullable=False)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[CurrencyCode] = mapped_column(CURRENCY_CODE_ENUM, nullable=False)
    # 1 USD = fx_usd_krw KRW, captured when the transaction was booked
    fx_usd_krw: Mapped[Optional[float]] = mapped_column(Float)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    savings_goal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_goals.id", ondelete="SET NULL")
    )
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    savings_goal: Mapped[Optional["SavingsGoal"]] = relationship("SavingsGoal")

    __table_args__ = (
        Index("ix_transactions_user_occurred", "user_id", "occurred_at"),
        Index("ix_transactions_user_type", "user_id", "type"),
        Index(
            "ix_transactions_user_goal_occurred",
            "user_id",
            "savings_goal_id",
            "occurred_at",
        ),
        CheckConstraint("amount_minor >= 0", name="ck_transactions_amount_positive"),
    )
