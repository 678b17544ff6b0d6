import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from calendar_math import ensure_utc
from goals import canonical_category, canonical_key
from models import CurrencyCode, Transaction, TransactionType
from money import FxUnavailable, convert_minor, normalize_currency
from periods import PeriodWindow
from schemas import PlanSnapshot


logger = logging.getLogger(__name__)

BUDGET_WEIGHT = 0.7
SAVINGS_WEIGHT = 0.3
NEUTRAL_SCORE = 0.5


@dataclass
class PeriodSummary:
    income_minor: int = 0
    expense_minor: int = 0
    saving_minor: int = 0
    spent_by_category: dict[str, int] = field(default_factory=dict)
    saved_by_goal: dict[int, int] = field(default_factory=dict)
    saved_by_goal_name: dict[str, int] = field(default_factory=dict)
    transaction_count: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def operational_net_minor(self) -> int:
        return self.income_minor - self.expense_minor

    @property
    def spendable_net_minor(self) -> int:
        return self.income_minor - self.expense_minor - self.saving_minor


def tx_to_home_minor(
    tx: Transaction, home_currency: CurrencyCode
) -> tuple[Optional[int], Optional[str]]:
    """Amount in home-currency minor units, or ``(None, warning)``."""
    currency = normalize_currency(tx.currency)
    amount = int(tx.amount_minor or 0)
    if amount == 0:
        return 0, None
    try:
        return convert_minor(amount, currency, home_currency, tx.fx_usd_krw), None
    except FxUnavailable:
        return None, f"missing_fx_excluded:{currency.value}->{home_currency.value}"


def summarize_period(
    transactions: Iterable[Transaction],
    home_currency: CurrencyCode,
    window: Optional[PeriodWindow] = None,
) -> PeriodSummary:
    summary = PeriodSummary()
    home = normalize_currency(home_currency)
    for tx in transactions:
        if window is not None and not window.contains(ensure_utc(tx.occurred_at)):
            continue
        amount, warning = tx_to_home_minor(tx, home)
        if amount is None:
            summary.warnings.append(warning)
            logger.warning(f"aggregation_excluded: tx_id={tx.id} reason={warning}")
            continue
        summary.transaction_count += 1

        if tx.type == TransactionType.income:
            summary.income_minor += amount
        elif tx.type == TransactionType.expense:
            summary.expense_minor += amount
            key = canonical_category(tx.category)
            summary.spent_by_category[key] = (
                summary.spent_by_category.get(key, 0) + amount
            )
        elif tx.type == TransactionType.saving:
            summary.saving_minor += amount
            if tx.savings_goal_id is not None:
                summary.saved_by_goal[tx.savings_goal_id] = (
                    summary.saved_by_goal.get(tx.savings_goal_id, 0) + amount
                )
            else:
                # older rows only carry the goal name in the category
                key = canonical_key(tx.category)
                if key:
                    summary.saved_by_goal_name[key] = (
                        summary.saved_by_goal_name.get(key, 0) + amount
                    )
    return summary


def _budget_ratio_score(spent: int, limit: int) -> float:
    ratio = spent / limit
    return 0.0 if ratio > 1 else max(0.0, 1 - ratio)


def plan_progress_percent(snapshot: PlanSnapshot, summary: PeriodSummary) -> int:
    """Overall 0..100 health of a period.

    Every positive budget limit (plus the plan total) scores ``1 - spent/limit``,
    zero once overspent. Savings targets score the saved fraction, capped at 1.
    """
    budget_scores: list[float] = []
    for goal in snapshot.budget_goals:
        if goal.limit_minor <= 0:
            continue
        spent = summary.spent_by_category.get(canonical_category(goal.category), 0)
        budget_scores.append(_budget_ratio_score(spent, goal.limit_minor))

    total_limit = abs(snapshot.total_budget_limit_minor)
    if total_limit > 0:
        budget_scores.append(_budget_ratio_score(summary.expense_minor, total_limit))

    savings_scores = [
        min(1.0, max(0.0, summary.saving_minor / goal.target_minor))
        for goal in snapshot.savings_goals
        if goal.target_minor > 0
    ]

    budget_score = (
        sum(budget_scores) / len(budget_scores) if budget_scores else NEUTRAL_SCORE
    )
    savings_score = (
        sum(savings_scores) / len(savings_scores) if savings_scores else NEUTRAL_SCORE
    )
    combined = budget_score * BUDGET_WEIGHT + savings_score * SAVINGS_WEIGHT
    return round(min(1.0, max(0.0, combined)) * 100)
