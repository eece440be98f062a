"""
Cron scheduler for recurring agent tasks.

Usage:
    from claw_core.scheduler import Scheduler

    scheduler = Scheduler(config.schedules)
    task = scheduler.get_next_due_task()
"""

from .cron import (
    CronExpression,
    ScheduleError,
    CronParseError,
    CronSearchError,
)
from .scheduler import (
    Scheduler,
    ScheduledTask,
)

__all__ = [
    "CronExpression",
    "ScheduleError",
    "CronParseError",
    "CronSearchError",
    "Scheduler",
    "ScheduledTask",
]
