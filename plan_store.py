from typing import Any, Optional, Union

from goals import (
    default_budget_goals,
    merge_budget_goals,
    merge_savings_goals,
    sum_budget_limits,
)
from schemas import BudgetGoalDTO, PlanSnapshot


class PlanStore:
    """Client-side holder of the active plan snapshot."""

    def __init__(
        self,
        snapshot: Optional[PlanSnapshot] = None,
        defaults: Optional[list[BudgetGoalDTO]] = None,
    ) -> None:
        self.defaults = defaults if defaults is not None else default_budget_goals()
        self.snapshot: Optional[PlanSnapshot] = None
        if snapshot is not None:
            self.apply_server_plan(snapshot)

    @property
    def rollover_key(self) -> Optional[str]:
        return self.snapshot.rollover_key if self.snapshot else None

    def apply_server_plan(
        self, server_plan: Union[PlanSnapshot, dict[str, Any]]
    ) -> PlanSnapshot:
        incoming = (
            server_plan
            if isinstance(server_plan, PlanSnapshot)
            else PlanSnapshot.model_validate(server_plan)
        )
        held_savings = self.snapshot.savings_goals if self.snapshot else []
        budget_goals = merge_budget_goals(self.defaults, incoming.budget_goals)
        savings_goals = merge_savings_goals(held_savings, incoming.savings_goals)
        total = incoming.total_budget_limit_minor
        if total <= 0:
            total = sum_budget_limits(budget_goals)

        self.snapshot = incoming.model_copy(
            update={
                "budget_goals": budget_goals,
                "savings_goals": savings_goals,
                "total_budget_limit_minor": total,
            }
        )
        return self.snapshot

    def clear(self) -> None:
        self.snapshot = None
