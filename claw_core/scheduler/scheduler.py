"""
TASK_SCHEDULER
==============

Cron-driven recurring tasks for the autonomous runtime.

The scheduler:
- Builds tasks from the declarative schedule list at startup
- Calculates next run times (next whole minute onward, one-year search)
- Answers "what is due now" and "how long until the next task"
- Guarantees at most one dispatch per task per wall-clock minute

It does not run anything itself: the runtime polls ``get_next_due_task``,
runs the action through the agent loop and calls ``mark_complete``, on
failure as well as on success.

Failure policy
--------------
``"skip"`` (default): a failed run still advances ``next_run`` to the next
occurrence, so a broken task cannot spin in an immediate-retry loop.

``"retry"``: a failed run keeps its ``next_run``; the task is due again as
soon as the minute rolls over.

Usage::

    scheduler = Scheduler(config.schedules,
                          failure_policy=config.autonomy.scheduled_failure_policy)
    task = scheduler.get_next_due_task()
    if task:
        ok = run(task.action)
        scheduler.mark_complete(task.id, success=ok)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from ..config.loader import FAILURE_POLICIES, ScheduleConfig
from .cron import CronExpression, ScheduleError

logger = logging.getLogger(__name__)

DEFAULT_TIME_UNTIL_NEXT_MS = 60000


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class ScheduledTask:
    """An enabled schedule with its computed run times."""
    id: str
    cron: str
    action: str
    expression: CronExpression = field(repr=False)
    next_run: datetime
    enabled: bool = True
    last_run: Optional[datetime] = None
    run_count: int = 0
    last_status: Optional[str] = None  # "success", "failed"

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "cron": self.cron,
            "action": self.action,
            "enabled": self.enabled,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "run_count": self.run_count,
            "last_status": self.last_status,
        }


# ============================================================================
# SCHEDULER
# ============================================================================

class Scheduler:
    """
    In-memory set of cron tasks.

    Single-threaded: the runtime is the only caller.
    """

    def __init__(
        self,
        schedules: Optional[Iterable[Union[ScheduleConfig, Dict[str, Any]]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        failure_policy: str = "skip",
    ):
        if failure_policy not in FAILURE_POLICIES:
            raise ValueError(f"Unknown failure policy: {failure_policy}")

        self._clock = clock or datetime.now
        self.failure_policy = failure_policy
        self._tasks: Dict[str, ScheduledTask] = {}
        self._completed_this_minute: Set[str] = set()
        self._last_minute: Optional[datetime] = None
        self.errors: Dict[str, str] = {}

        for schedule in schedules or []:
            try:
                self.add_schedule(schedule)
            except ScheduleError:
                # Already logged and recorded in self.errors
                continue

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Schedule management
    # ------------------------------------------------------------------

    def add_schedule(self, schedule: Union[ScheduleConfig, Dict[str, Any]]) -> Optional[ScheduledTask]:
        """
        Add or replace a schedule.

        A disabled schedule is removed from the task set entirely.

        Raises:
            ScheduleError: The cron expression is malformed or never fires
                within a year. The schedule is not registered.
        """
        if isinstance(schedule, dict):
            schedule = ScheduleConfig.from_dict(schedule)

        if not schedule.enabled:
            self._tasks.pop(schedule.id, None)
            self.errors.pop(schedule.id, None)
            return None

        try:
            expression = CronExpression.parse(schedule.cron)
            next_run = expression.next_run(self._now())
        except ScheduleError as e:
            self._tasks.pop(schedule.id, None)
            self.errors[schedule.id] = str(e)
            logger.error("Schedule '%s' disabled: %s", schedule.id, e)
            raise

        self.errors.pop(schedule.id, None)
        task = ScheduledTask(
            id=schedule.id,
            cron=schedule.cron,
            action=schedule.action,
            expression=expression,
            next_run=next_run,
        )
        self._tasks[schedule.id] = task
        logger.debug("Scheduled '%s' (%s), next run %s", task.id, task.cron, task.next_run)
        return task

    def remove_schedule(self, task_id: str) -> bool:
        self.errors.pop(task_id, None)
        self._completed_this_minute.discard(task_id)
        return self._tasks.pop(task_id, None) is not None

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def get_next_due_task(self) -> Optional[ScheduledTask]:
        """First task whose ``next_run`` has passed and that has not run this minute."""
        now = self._now()
        current_minute = now.replace(second=0, microsecond=0)

        if current_minute != self._last_minute:
            self._completed_this_minute.clear()
            self._last_minute = current_minute

        for task_id, task in self._tasks.items():
            if task_id in self._completed_this_minute:
                continue
            if task.next_run <= now:
                return task
        return None

    def mark_complete(self, task_id: str, success: bool = True) -> None:
        """
        Record a finished run (successful or not).

        Must be called for every dispatched task. Under the ``"skip"`` policy
        the next occurrence is always computed; under ``"retry"`` a failure
        leaves ``next_run`` where it was.
        """
        task = self._tasks.get(task_id)
        if not task:
            return

        now = self._now()
        self._completed_this_minute.add(task_id)
        task.last_run = now
        task.run_count += 1
        task.last_status = "success" if success else "failed"

        if not success:
            logger.warning("Scheduled task '%s' failed (policy: %s)", task_id, self.failure_policy)
            if self.failure_policy == "retry":
                return

        try:
            task.next_run = task.expression.next_run(now)
        except ScheduleError as e:
            self.errors[task_id] = str(e)
            del self._tasks[task_id]
            logger.error("Schedule '%s' removed: %s", task_id, e)

    def get_time_until_next(self) -> int:
        """Milliseconds until the nearest future ``next_run`` (60000 when none)."""
        now = self._now()
        min_ms: Optional[int] = None
        for task in self._tasks.values():
            ms = int((task.next_run - now).total_seconds() * 1000)
            if ms > 0 and (min_ms is None or ms < min_ms):
                min_ms = ms
        return DEFAULT_TIME_UNTIL_NEXT_MS if min_ms is None else min_ms

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_all_tasks(self) -> List[ScheduledTask]:
        return list(self._tasks.values())

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        return self._tasks.get(task_id)

    def has_enabled_schedules(self) -> bool:
        return bool(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)
