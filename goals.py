"""Deterministic reconciliation of goal lists held by a client with the
lists the server returns.

Both merges are idempotent: feeding a merge result back in as the server
list yields the same result.
"""

from typing import Iterable, Optional

from schemas import BudgetGoalDTO, SavingsGoalDTO


UNCATEGORIZED = "uncategorized"

EXPENSE_CATEGORY_KEYS: tuple[str, ...] = (
    "groceries",
    "dining",
    "rent",
    "utilities",
    "transportation",
    "shopping",
    "healthcare",
    "entertainment",
    "education",
    "subscriptions",
    "insurance",
    "travel",
    "gift",
    "misc_expense",
)


def canonical_key(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip().casefold()


def canonical_category(value: object) -> str:
    return canonical_key(value) or UNCATEGORIZED


def budget_goal_id(key: str) -> str:
    return f"budget:{key}"


def savings_goal_id(key: str) -> str:
    return f"savings:{key}"


def default_budget_goals() -> list[BudgetGoalDTO]:
    return [
        BudgetGoalDTO(id=budget_goal_id(key), category=key, limit_minor=0)
        for key in EXPENSE_CATEGORY_KEYS
    ]


def merge_budget_goals(
    defaults: Iterable[BudgetGoalDTO], server_goals: Iterable[BudgetGoalDTO]
) -> list[BudgetGoalDTO]:
    """Lay server limits over the default category list.

    Defaults keep their order and ids; server-only categories follow in
    server order. For repeated canonical keys the last server entry wins.
    Goals whose limit is not positive are dropped.
    """
    by_key: dict[str, BudgetGoalDTO] = {}
    for goal in server_goals:
        by_key[canonical_category(goal.category)] = goal

    merged: list[BudgetGoalDTO] = []
    seen: set[str] = set()
    for default in defaults:
        key = canonical_category(default.category)
        if key in seen:
            continue
        seen.add(key)
        source = by_key.get(key, default)
        merged.append(
            BudgetGoalDTO(
                id=default.id or budget_goal_id(key),
                category=key,
                limit_minor=source.limit_minor,
            )
        )

    for key, goal in by_key.items():
        if key in seen:
            continue
        seen.add(key)
        merged.append(
            BudgetGoalDTO(
                id=goal.id or budget_goal_id(key),
                category=key,
                limit_minor=goal.limit_minor,
            )
        )

    return [goal for goal in merged if goal.limit_minor > 0]


def merge_savings_goals(
    existing_client_goals: Iterable[SavingsGoalDTO],
    server_goals: Iterable[SavingsGoalDTO],
) -> list[SavingsGoalDTO]:
    """Take the server list, keeping ids the client already uses.

    Id preference: the client goal with the same canonical name, then the
    server id, then ``savings:<key>``.
    """
    client_ids: dict[str, str] = {}
    for goal in existing_client_goals:
        key = canonical_key(goal.name)
        if key and goal.id:
            client_ids.setdefault(key, goal.id)

    by_key: dict[str, SavingsGoalDTO] = {}
    for goal in server_goals:
        key = canonical_key(goal.name)
        if key:
            by_key[key] = goal

    merged: list[SavingsGoalDTO] = []
    for key, goal in by_key.items():
        if goal.target_minor <= 0:
            continue
        goal_id: Optional[str] = client_ids.get(key) or goal.id or savings_goal_id(key)
        merged.append(
            SavingsGoalDTO(
                id=goal_id, name=goal.name.strip(), target_minor=goal.target_minor
            )
        )
    return merged


def sum_budget_limits(goals: Iterable[BudgetGoalDTO]) -> int:
    return sum(goal.limit_minor for goal in goals if goal.limit_minor > 0)
