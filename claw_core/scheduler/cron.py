"""
CRON
====

Five-field cron expressions (``minute hour day-of-month month weekday``)
evaluated with ``croniter``.

Field syntax is croniter's: ``*``, ``*/n``, ``a``, ``a-b``, ``a-b/n`` and
comma lists. Weekdays run 0-6 with 0 = Sunday; 7 is also Sunday. A value
outside its field range makes the expression invalid.

All five fields must match: day-of-month and weekday are ANDed
(``day_or=False``), not ORed as in Vixie cron.

Next-run search is strictly after ``after`` and bounded to one year
(``max_years_between_matches=1``). No match in that window raises
``CronSearchError``.

Usage::

    expr = CronExpression.parse("0 9 * * 1-5")
    expr.matches(datetime(2026, 10, 19, 9, 0))   # Monday 09:00 -> True
    expr.next_run(datetime(2026, 10, 17, 12, 0)) # -> 2026-10-19 09:00
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from croniter import croniter, CroniterBadDateError, CroniterError


class ScheduleError(Exception):
    """A schedule cannot be used."""


class CronParseError(ScheduleError):
    """Malformed cron expression."""


class CronSearchError(ScheduleError):
    """Cron expression has no occurrence within the search window."""


FIELD_COUNT = 5
SEARCH_YEARS = 1
SEARCH_WINDOW = timedelta(days=366)


@dataclass(frozen=True)
class CronExpression:
    expression: str

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        expression = (expression or "").strip()
        fields = expression.split()
        # croniter also takes a sixth (seconds) field
        if len(fields) != FIELD_COUNT:
            raise CronParseError(f"Expected {FIELD_COUNT} fields, got {len(fields)}: '{expression}'")
        if not croniter.is_valid(expression):
            raise CronParseError(f"Invalid cron expression: '{expression}'")
        return cls(" ".join(fields))

    def matches(self, dt: datetime) -> bool:
        return croniter.match(self.expression, dt.replace(second=0, microsecond=0), day_or=False)

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        """First matching minute strictly after ``after`` (default: now)."""
        after = after or datetime.now()
        try:
            itr = croniter(self.expression, after, day_or=False,
                           max_years_between_matches=SEARCH_YEARS)
            found = itr.get_next(datetime)
        except CroniterBadDateError as e:
            raise CronSearchError(f"Could not find next run time for cron: {self.expression}") from e
        except CroniterError as e:
            raise CronParseError(f"Invalid cron expression '{self.expression}': {e}") from e
        if found - after > SEARCH_WINDOW:
            raise CronSearchError(f"Could not find next run time for cron: {self.expression}")
        return found

    def __str__(self) -> str:
        return self.expression
