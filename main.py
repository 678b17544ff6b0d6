from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy.orm import Session

from calendar_math import format_local
from database import SessionLocal
from scheduler import SchedulerManager
from schemas import (
    BudgetGoalsPatchIn,
    DashboardOut,
    PeriodWindowOut,
    PlanSnapshot,
    RolloverOut,
    SavingsGoalsPatchIn,
    SwitchCurrencyIn,
    SwitchPeriodIn,
)
from services import DashboardService, PlanService, plan_snapshot


app = FastAPI(title="Budget Plans")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _error_status(exc: ValueError) -> int:
    return 404 if "not found" in str(exc).lower() else 400


@app.get("/api/plans/current", response_model=PlanSnapshot)
def current_plan(db: Session = Depends(get_db)):
    return PlanService(db).current_snapshot()


@app.get("/api/plans/windows", response_model=list[PeriodWindowOut])
def plan_windows(
    count: int = Query(6),
    at: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    service = PlanService(db)
    plan = service.ensure_active_plan()
    try:
        windows = service.windows(count=count, at=at)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [
        PeriodWindowOut(
            period_type=window.period_type,
            start_utc=window.start,
            end_utc=window.end,
            start_local=format_local(window.start, plan.time_zone),
            end_local=format_local(window.end, plan.time_zone),
        )
        for window in windows
    ]


@app.post("/api/plans/actions/rollover", response_model=RolloverOut)
def rollover_plan(db: Session = Depends(get_db)):
    service = PlanService(db)
    service.ensure_active_plan()
    try:
        result = service.rollover_active_plan()
    except ValueError as exc:
        raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc
    return RolloverOut(
        rolled=result.rolled,
        created_count=result.created_count,
        plan=plan_snapshot(result.plan) if result.plan else None,
    )


@app.patch("/api/plans/{plan_id}/goals/budget", response_model=PlanSnapshot)
def patch_budget_goals(
    plan_id: int, payload: BudgetGoalsPatchIn, db: Session = Depends(get_db)
):
    try:
        plan = PlanService(db).update_budget_goals(plan_id, payload.goals)
    except ValueError as exc:
        raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc
    return plan_snapshot(plan)


@app.patch("/api/plans/{plan_id}/goals/savings", response_model=PlanSnapshot)
def patch_savings_goals(
    plan_id: int, payload: SavingsGoalsPatchIn, db: Session = Depends(get_db)
):
    try:
        plan = PlanService(db).update_savings_goals(plan_id, payload.goals)
    except ValueError as exc:
        raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc
    return plan_snapshot(plan)


@app.post("/api/plans/switch", response_model=PlanSnapshot)
def switch_period(payload: SwitchPeriodIn, db: Session = Depends(get_db)):
    try:
        plan = PlanService(db).switch_period_type(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return plan_snapshot(plan)


@app.post(
    "/api/plans/{plan_id}/actions/switch-currency", response_model=PlanSnapshot
)
def switch_currency(
    plan_id: int, payload: SwitchCurrencyIn, db: Session = Depends(get_db)
):
    try:
        plan = PlanService(db).switch_currency(plan_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=_error_status(exc), detail=str(exc)) from exc
    return plan_snapshot(plan)


@app.get("/api/dashboard", response_model=DashboardOut)
def dashboard(db: Session = Depends(get_db)):
    return DashboardService(db).build()
