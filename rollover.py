"""Client-side trigger for moving the active plan into its next period.

Every entry point funnels into ``RolloverOrchestrator.try_rollover``. The
eligibility check and the claim of the dedupe key run before the first
``await``, so overlapping triggers on one event loop issue a single
server call per period.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol

from sqlalchemy.orm import sessionmaker

from calendar_math import is_same_local_day, utc_now
from config import get_settings
from database import session_scope
from plan_store import PlanStore
from schemas import PlanSnapshot, RolloverOut
from services import PlanService, plan_snapshot


logger = logging.getLogger(__name__)


class RolloverTrigger(str, Enum):
    launch = "launch"
    resume = "resume"
    period_switch = "period_switch"
    currency_switch = "currency_switch"
    timer = "timer"


class RolloverPhase(str, Enum):
    idle = "idle"
    checking = "checking"
    rolling = "rolling"


class RolloverOutcome(str, Enum):
    no_plan = "no_plan"
    duplicate = "duplicate"
    not_due = "not_due"
    cooling_down = "cooling_down"
    rolled = "rolled"
    not_rolled = "not_rolled"
    failed = "failed"


@dataclass
class RolloverState:
    cooldown: timedelta
    last_key: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    phase: RolloverPhase = RolloverPhase.idle

    def in_cooldown(self, now: datetime) -> bool:
        if self.last_attempt_at is None:
            return False
        return now - self.last_attempt_at < self.cooldown

    def claim(self, key: str, now: datetime) -> None:
        self.last_key = key
        self.last_attempt_at = now

    def release(self, key: str) -> None:
        if self.last_key == key:
            self.last_key = None

    def reset(self) -> None:
        self.last_key = None
        self.last_attempt_at = None
        self.phase = RolloverPhase.idle


class PlanGateway(ABC):
    @abstractmethod
    async def attempt_rollover(self) -> RolloverOut:
        raise NotImplementedError

    @abstractmethod
    async def fetch_active_plan(self) -> PlanSnapshot:
        raise NotImplementedError


class ServicePlanGateway(PlanGateway):
    """Runs the plan service in a worker thread, bounded by a timeout."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        user_id: Optional[int] = None,
        timeout_secs: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.user_id = user_id
        self.timeout_secs = (
            timeout_secs
            if timeout_secs is not None
            else get_settings().request_timeout_secs
        )
        self.clock = clock

    def _rollover(self) -> RolloverOut:
        with session_scope(self.session_factory) as session:
            result = PlanService(session, self.user_id).rollover_active_plan(
                self.clock()
            )
            plan = plan_snapshot(result.plan) if result.rolled and result.plan else None
            return RolloverOut(
                rolled=result.rolled, created_count=result.created_count, plan=plan
            )

    def _active_plan(self) -> PlanSnapshot:
        with session_scope(self.session_factory) as session:
            return PlanService(session, self.user_id).current_snapshot(self.clock())

    async def attempt_rollover(self) -> RolloverOut:
        return await asyncio.wait_for(
            asyncio.to_thread(self._rollover), timeout=self.timeout_secs
        )

    async def fetch_active_plan(self) -> PlanSnapshot:
        return await asyncio.wait_for(
            asyncio.to_thread(self._active_plan), timeout=self.timeout_secs
        )


class Timer(Protocol):
    def arm(self, run_at: datetime, callback: Callable[[], Awaitable[None]]) -> None:
        ...

    def disarm(self) -> None:
        ...


class RolloverOrchestrator:
    def __init__(
        self,
        gateway: PlanGateway,
        store: PlanStore,
        *,
        timer: Optional[Timer] = None,
        clock: Callable[[], datetime] = utc_now,
        cooldown_secs: Optional[float] = None,
        jitter_secs: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.gateway = gateway
        self.store = store
        self.timer = timer
        self.clock = clock
        self.state = RolloverState(
            cooldown=timedelta(
                seconds=cooldown_secs
                if cooldown_secs is not None
                else settings.rollover_cooldown_secs
            )
        )
        self.jitter = timedelta(
            seconds=jitter_secs
            if jitter_secs is not None
            else settings.rollover_timer_jitter_secs
        )
        self.foreground = True
        self.last_warning: Optional[str] = None

    def _check_and_claim(
        self, trigger: RolloverTrigger
    ) -> tuple[Optional[RolloverOutcome], Optional[str]]:
        plan = self.store.snapshot
        if plan is None:
            return RolloverOutcome.no_plan, None
        key = plan.rollover_key
        if self.state.last_key == key:
            return RolloverOutcome.duplicate, key
        now = self.clock()
        if now < plan.period_end_utc:
            return RolloverOutcome.not_due, key
        if trigger != RolloverTrigger.timer and self.state.in_cooldown(now):
            return RolloverOutcome.cooling_down, key
        self.state.claim(key, now)
        return None, key

    async def try_rollover(self, trigger: RolloverTrigger) -> RolloverOutcome:
        trigger = RolloverTrigger(trigger)
        if self.state.phase == RolloverPhase.idle:
            self.state.phase = RolloverPhase.checking
        blocked, key = self._check_and_claim(trigger)
        if blocked is not None:
            # a rejected trigger must not disturb a roll already in flight
            if self.state.phase == RolloverPhase.checking:
                self.state.phase = RolloverPhase.idle
            logger.debug(f"rollover_skipped: trigger={trigger.value} reason={blocked.value}")
            return blocked

        self.state.phase = RolloverPhase.rolling
        logger.info(f"rollover_attempt: trigger={trigger.value} key={key}")
        try:
            response = await self.gateway.attempt_rollover()
            if not response.rolled:
                self.state.release(key)
                logger.info(f"rollover_not_needed: trigger={trigger.value} key={key}")
                return RolloverOutcome.not_rolled
            refreshed = await self.gateway.fetch_active_plan()
        except Exception as exc:
            self.state.release(key)
            self.last_warning = f"rollover_failed:{trigger.value}:{type(exc).__name__}"
            logger.warning(
                f"rollover_failed: trigger={trigger.value} key={key} error={exc!r}"
            )
            return RolloverOutcome.failed
        finally:
            self.state.phase = RolloverPhase.idle

        self.store.apply_server_plan(refreshed)
        self.last_warning = None
        logger.info(
            f"rollover_applied: trigger={trigger.value} created={response.created_count} "
            f"key={self.store.rollover_key}"
        )
        self.schedule_timer_if_needed()
        return RolloverOutcome.rolled

    def clear_timer(self) -> None:
        if self.timer is not None:
            self.timer.disarm()

    def schedule_timer_if_needed(self) -> bool:
        """Arm a one-shot check for a period ending later on the current local day."""
        self.clear_timer()
        if self.timer is None or not self.foreground:
            return False
        plan = self.store.snapshot
        if plan is None:
            return False
        now = self.clock()
        end = plan.period_end_utc
        if now >= end:
            return False
        # the period ends at the coming local midnight
        if not is_same_local_day(now, end - timedelta(microseconds=1), plan.time_zone):
            return False
        self.timer.arm(end + self.jitter, self._on_timer)
        logger.info(f"rollover_timer_armed: run_at={(end + self.jitter).isoformat()}")
        return True

    async def _on_timer(self) -> None:
        await self.try_rollover(RolloverTrigger.timer)

    async def on_launch(self) -> RolloverOutcome:
        if self.store.snapshot is None:
            try:
                plan = await self.gateway.fetch_active_plan()
            except Exception as exc:
                self.last_warning = f"rollover_failed:launch:{type(exc).__name__}"
                logger.warning(f"rollover_failed: trigger=launch stage=fetch error={exc!r}")
                return RolloverOutcome.failed
            self.store.apply_server_plan(plan)
        outcome = await self.try_rollover(RolloverTrigger.launch)
        self.schedule_timer_if_needed()
        return outcome

    async def on_foreground(self) -> RolloverOutcome:
        self.foreground = True
        outcome = await self.try_rollover(RolloverTrigger.resume)
        self.schedule_timer_if_needed()
        return outcome

    def on_background(self) -> None:
        self.foreground = False
        self.clear_timer()

    async def on_plan_switched(
        self, plan: PlanSnapshot, trigger: RolloverTrigger = RolloverTrigger.period_switch
    ) -> RolloverOutcome:
        self.store.apply_server_plan(plan)
        outcome = await self.try_rollover(trigger)
        self.schedule_timer_if_needed()
        return outcome

    def reset(self) -> None:
        self.clear_timer()
        self.state.reset()
        self.store.clear()
        self.last_warning = None
