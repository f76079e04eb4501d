"""
Schedule evaluation: is a job due at a given instant?

Three schedule forms are understood:
- a predicate ``Callable[[datetime], bool]``
- an exact ``YYYY-MM-DD HH:MM:SS`` timestamp, matched at minute precision
- a five-field cron expression or macro (@daily, @hourly, ...), matched by croniter
"""
import logging
from datetime import datetime
from typing import Callable, Optional, Union

from croniter import croniter

from cronwarden.models import ConfigError

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

Schedule = Union[str, Callable[[datetime], bool]]


class ScheduleChecker:
    """
    Decides whether schedules are due for one fixed instant.

    Create a new checker per batch run; nothing is cached between runs.
    """

    def __init__(self, now: Optional[datetime] = None):
        self.now = now if now is not None else datetime.now()

    def is_due(self, schedule: Schedule) -> bool:
        """
        Check a schedule against this checker's instant.

        Args:
            schedule: Predicate, exact timestamp string or cron expression

        Returns:
            True if the job should run now

        Raises:
            ConfigError: If the cron expression is malformed
        """
        if callable(schedule):
            return bool(schedule(self.now))

        try:
            at = datetime.strptime(schedule, TIMESTAMP_FORMAT)
        except ValueError:
            at = None

        if at is not None:
            return _minute(at) == _minute(self.now)

        return cron_matches(schedule, self.now)


CRON_MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@hourly": "0 * * * *",
}


def cron_matches(expression: str, at: datetime) -> bool:
    """
    Match a five-field cron expression (or a macro like ``@daily``) against an instant.

    Raises:
        ConfigError: If the expression is neither a valid five-field
            expression nor a known macro
    """
    expression = CRON_MACROS.get(expression.strip().lower(), expression)
    if len(expression.split()) != 5 or not croniter.is_valid(expression):
        raise ConfigError(f"Invalid cron expression: {expression!r}")

    return croniter.match(expression, _minute(at))


def _minute(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)
