"""
AUTONOMOUS RUNTIME
==================

Top-level control loop that decides, cycle after cycle, what the agent
works on next.

Cycle
-----
Strict priority order:

1. **Scheduled task** due → run it as a task prompt, ``mark_complete``
   whatever the outcome, start the next cycle immediately.
2. **Active goal** → pick the highest priority one (high > medium > low,
   ties by list order), run it, emit goal_started / goal_completed, start
   the next cycle immediately.
3. **Idle** → emit a heartbeat; if the active session has been quiet for
   longer than ``heartbeat.idle_threshold_seconds`` run one heartbeat turn.
4. Sleep: 30s with an active goal, else 60s with an enabled schedule, else
   300s, never past the next scheduled task.

Error handling
--------------
Every unit of work is wrapped; a failure is logged and bumps
``consecutive_errors``, a clean cycle resets it. At
``max_consecutive_errors`` (5) the loop sleeps a flat cooldown (60s),
below that it adds ``backoff_step_seconds × counter`` (5s × n).

Shutdown is cooperative: ``stop()`` (or SIGINT/SIGTERM once
``install_signal_handlers`` ran) clears the running flag, which is checked
at cycle boundaries, and wakes the sleep.

Usage::

    runtime = AutonomousRuntime(config, agent_loop, scheduler, emitter=emitter)
    runtime.install_signal_handlers()
    runtime.run_forever()
"""

import logging
import signal
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union

from .config.loader import AutonomyConfig, GlobalConfig, GoalConfig
from .events import (
    ErrorEvent,
    EventEmitter,
    GoalCompletedEvent,
    GoalStartedEvent,
    HeartbeatEvent,
    ScheduledTaskEvent,
    StartedEvent,
    ThinkingEvent,
)
from .loop import AgentLoop, LoopResult
from .scheduler.scheduler import Scheduler

logger = logging.getLogger(__name__)

PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}

GoalsSource = Union[Sequence[GoalConfig], Callable[[], Sequence[GoalConfig]]]


# ============================================================================
# POLICY HELPERS
# ============================================================================

def select_next_goal(goals: Sequence[GoalConfig]) -> Optional[GoalConfig]:
    """Highest-priority active goal; ties keep list order."""
    active = [g for g in goals if g.is_active]
    if not active:
        return None
    # sorted() is stable, so equal priorities keep their original order
    return sorted(active, key=lambda g: PRIORITY_ORDER.get(g.priority, len(PRIORITY_ORDER)))[0]


def calculate_sleep_duration(has_goals: bool, has_schedules: bool,
                             config: Optional[AutonomyConfig] = None) -> float:
    """Seconds to sleep after an idle cycle."""
    config = config or AutonomyConfig()
    if has_goals:
        return config.goal_sleep_seconds
    if has_schedules:
        return config.schedule_sleep_seconds
    return config.idle_sleep_seconds


@dataclass
class CycleOutcome:
    """What one cycle did and how long to sleep before the next."""
    kind: str  # "scheduled", "goal", "heartbeat", "idle", "error"
    sleep_seconds: float
    failed: bool = False
    detail: Optional[str] = None


# ============================================================================
# RUNTIME
# ============================================================================

class AutonomousRuntime:
    """
    Runs the agent indefinitely.

    ``sleep`` and ``clock`` are injectable; the default sleep wakes early
    when ``stop()`` is called.
    """

    def __init__(
        self,
        config: GlobalConfig,
        agent_loop: AgentLoop,
        scheduler: Scheduler,
        goals: Optional[GoalsSource] = None,
        emitter: Optional[EventEmitter] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.agent_loop = agent_loop
        self.scheduler = scheduler
        self._goals_source: GoalsSource = config.goals if goals is None else goals
        self.emitter = emitter or agent_loop.emitter
        self._stop_event = threading.Event()
        self._sleep = sleep or self._interruptible_sleep
        self._clock = clock

        self.running = False
        self.consecutive_errors = 0
        self.cycles = 0
        self._started_at = clock()

    # ====================================================================
    # HELPERS
    # ====================================================================

    def _interruptible_sleep(self, seconds: float) -> None:
        self._stop_event.wait(seconds)

    def _emit(self, event) -> None:
        self.emitter.emit(event)

    def get_goals(self) -> List[GoalConfig]:
        """Current goal list (re-read every cycle)."""
        source = self._goals_source
        return list(source() if callable(source) else source)

    @property
    def uptime(self) -> float:
        return self._clock() - self._started_at

    def _run_unit(self, label: str, work: Callable[[], LoopResult]) -> bool:
        """Run one unit of work. Returns False on failure, never raises."""
        try:
            result = work()
        except Exception as e:
            logger.error("%s failed: %s", label, e, exc_info=True)
            self._emit(ErrorEvent(error=f"{label} failed: {e}"))
            return False
        if result.status == "error":
            logger.error("%s failed: %s", label, result.error or result.final_response)
            return False
        return True

    def _finish(self, kind: str, ok: bool, base_sleep: float, detail: Optional[str] = None) -> CycleOutcome:
        """Apply error accounting and produce the cycle outcome."""
        if ok:
            self.consecutive_errors = 0
            return CycleOutcome(kind=kind, sleep_seconds=base_sleep, detail=detail)

        self.consecutive_errors += 1
        autonomy = self.config.autonomy
        if self.consecutive_errors >= autonomy.max_consecutive_errors:
            message = f"Too many consecutive errors ({self.consecutive_errors}), backing off..."
            logger.error(message)
            self._emit(ErrorEvent(error=message))
            sleep_seconds = autonomy.cooldown_seconds
        else:
            sleep_seconds = base_sleep + autonomy.backoff_step_seconds * self.consecutive_errors
        return CycleOutcome(kind=kind, sleep_seconds=sleep_seconds, failed=True, detail=detail)

    # ====================================================================
    # CYCLE
    # ====================================================================

    def run_cycle(self) -> CycleOutcome:
        """Run one cycle of the control loop."""
        self.cycles += 1
        try:
            return self._cycle()
        except Exception as e:
            logger.error("Runtime loop error: %s", e, exc_info=True)
            self._emit(ErrorEvent(error=f"Loop error: {e}"))
            return self._finish("error", False, 0.0, detail=str(e))

    def _cycle(self) -> CycleOutcome:
        # 1. Scheduled work
        task = self.scheduler.get_next_due_task()
        if task:
            logger.info("Dispatching scheduled task '%s'", task.id)
            self._emit(ScheduledTaskEvent(task_id=task.id, action=task.action))
            ok = self._run_unit(f"Scheduled task '{task.id}'",
                                lambda: self.agent_loop.execute_task(task.action))
            self.scheduler.mark_complete(task.id, success=ok)
            return self._finish("scheduled", ok, 0.0, detail=task.id)

        # 2. Goal work
        goals = self.get_goals()
        goal = select_next_goal(goals)
        if goal:
            logger.info("Working on goal '%s' [%s]", goal.id, goal.priority)
            self._emit(GoalStartedEvent(goal_id=goal.id, description=goal.description))
            ok = self._run_unit(f"Goal '{goal.id}'",
                                lambda: self.agent_loop.execute_task(goal.description, goal.context))
            if ok:
                self._emit(GoalCompletedEvent(goal_id=goal.id))
            return self._finish("goal", ok, 0.0, detail=goal.id)

        # 3. Idle heartbeat
        self._emit(HeartbeatEvent(status="idle", uptime=self.uptime))
        kind = "idle"
        ok = True

        memory = self.agent_loop.get_memory()
        idle_ms = self._clock() * 1000 - memory.last_activity
        if idle_ms > self.config.heartbeat.idle_threshold_seconds * 1000:
            logger.info("Idle for %.0fs, running heartbeat turn", idle_ms / 1000)
            self._emit(ThinkingEvent(content="Running idle check..."))
            ok = self._run_unit("Heartbeat", self.agent_loop.execute_heartbeat)
            kind = "heartbeat"

        # 4. Sleep, never past the next scheduled task
        has_goals = any(g.is_active for g in goals)
        sleep_seconds = calculate_sleep_duration(
            has_goals, self.scheduler.has_enabled_schedules(), self.config.autonomy,
        )
        sleep_seconds = min(sleep_seconds, self.scheduler.get_time_until_next() / 1000.0)
        return self._finish(kind, ok, sleep_seconds)

    # ====================================================================
    # LIFECYCLE
    # ====================================================================

    def run_forever(self) -> None:
        """Loop until ``stop()`` is called."""
        self.running = True
        self._stop_event.clear()
        self._started_at = self._clock()
        self._emit(StartedEvent(config={
            "name": self.config.identity.name,
            "model": self.config.llm.model,
        }))
        logger.info("Autonomous runtime started (%d goals, %d schedules)",
                    len(self.get_goals()), len(self.scheduler.get_all_tasks()))

        while self.running:
            outcome = self.run_cycle()
            if outcome.sleep_seconds > 0 and self.running:
                logger.debug("Cycle %s, sleeping %.1fs", outcome.kind, outcome.sleep_seconds)
                self._sleep(outcome.sleep_seconds)

        logger.info("Autonomous runtime stopped after %d cycles", self.cycles)

    def stop(self) -> None:
        """Stop at the next cycle boundary."""
        if self.running:
            logger.info("Stop requested")
        self.running = False
        self._stop_event.set()

    def install_signal_handlers(self) -> bool:
        """Route SIGINT/SIGTERM to ``stop()``. Main thread only."""
        if threading.current_thread() is not threading.main_thread():
            logger.warning("Signal handlers can only be installed from the main thread")
            return False

        def _handler(signum, frame):
            logger.info("Received signal %s, shutting down", signum)
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        return True
