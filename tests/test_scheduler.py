from datetime import datetime, timedelta, timezone

from database import Base, make_engine, make_session_factory, session_scope
from models import User
from scheduler import SchedulerManager
from services import PlanService


def test_run_job_rolls_ended_plans() -> None:
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    factory = make_session_factory(engine)
    with session_scope(factory) as session:
        PlanService(session).ensure_active_plan(
            datetime.now(timezone.utc) - timedelta(days=40)
        )

    manager = SchedulerManager(factory)

    assert manager.run_job("test") == 1
    assert manager.run_job("test") == 0
    with session_scope(factory) as session:
        plan = PlanService(session).ensure_active_plan()
        assert session.get(User, 1).active_plan_id == plan.id
        assert plan.period_end > datetime.now(timezone.utc)


def test_stop_without_start_is_a_no_op() -> None:
    manager = SchedulerManager()
    manager.stop()
    assert not manager.scheduler.running
