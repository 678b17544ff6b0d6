"""initial plan schema

Revision ID: 202601050900
Revises:
Create Date: 2026-01-05 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601050900"
down_revision = None
branch_labels = None
depends_on = None


currency_enum = sa.Enum("USD", "KRW", name="currencycode")
period_type_enum = sa.Enum("WEEKLY", "BIWEEKLY", "MONTHLY", name="periodtype")
tx_type_enum = sa.Enum("INCOME", "EXPENSE", "SAVING", name="txtype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=200), unique=True),
        sa.Column(
            "time_zone",
            sa.String(length=64),
            nullable=False,
            server_default="America/New_York",
        ),
        sa.Column("currency", currency_enum, nullable=False, server_default="USD"),
        sa.Column("active_plan_id", sa.Integer(), unique=True),
        sa.Column(
            "cashflow_carryover_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        *_timestamps(),
    )

    op.create_table(
        "plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("period_type", period_type_enum, nullable=False),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=False),
        sa.Column("period_anchor", sa.DateTime()),
        sa.Column("time_zone", sa.String(length=64), nullable=False),
        sa.Column("currency", currency_enum, nullable=False, server_default="USD"),
        sa.Column(
            "total_budget_limit_minor", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("carryover_minor", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "period_type", "period_start", name="uq_plan_user_type_start"
        ),
        sa.CheckConstraint("period_end > period_start", name="ck_plan_window_positive"),
        sa.CheckConstraint(
            "total_budget_limit_minor >= 0", name="ck_plan_total_limit_positive"
        ),
    )
    op.create_index("ix_plans_user_start", "plans", ["user_id", "period_start"])

    op.create_table(
        "budget_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "plan_id",
            sa.Integer(),
            sa.ForeignKey("plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("limit_minor", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("plan_id", "category", name="uq_budget_goal_plan_category"),
        sa.CheckConstraint("limit_minor > 0", name="ck_budget_goal_limit_positive"),
    )

    op.create_table(
        "savings_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "plan_id",
            sa.Integer(),
            sa.ForeignKey("plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("target_minor", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("plan_id", "name", name="uq_savings_goal_plan_name"),
        sa.CheckConstraint("target_minor > 0", name="ck_savings_goal_target_positive"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", tx_type_enum, nullable=False),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", currency_enum, nullable=False),
        sa.Column("fx_usd_krw", sa.Float()),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column(
            "savings_goal_id",
            sa.Integer(),
            sa.ForeignKey("savings_goals.id", ondelete="SET NULL"),
        ),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_minor >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_occurred", "transactions", ["user_id", "occurred_at"]
    )
    op.create_index("ix_transactions_user_type", "transactions", ["user_id", "type"])
    op.create_index(
        "ix_transactions_user_goal_occurred",
        "transactions",
        ["user_id", "savings_goal_id", "occurred_at"],
    )


def downgrade():
    op.drop_index("ix_transactions_user_goal_occurred", table_name="transactions")
    op.drop_index("ix_transactions_user_type", table_name="transactions")
    op.drop_index("ix_transactions_user_occurred", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("savings_goals")
    op.drop_table("budget_goals")
    op.drop_index("ix_plans_user_start", table_name="plans")
    op.drop_table("plans")
    op.drop_table("users")
    for enum in (tx_type_enum, period_type_enum, currency_enum):
        enum.drop(op.get_bind(), checkfirst=True)
