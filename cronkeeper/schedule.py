"""
Cron schedule evaluation.

Schedules are six-field cron expressions with the seconds field first:

    second minute hour day-of-month month day-of-week

Each field accepts the standard cron grammar (``*``, values, ``a-b``
ranges, ``/n`` steps, comma lists, month and weekday names). Day-of-week
0 and 7 are both Sunday. Extensions some cron dialects add (``L``, ``W``,
``#``, ``?``, random ``R`` and hashed ``H`` values) are rejected.

Everything here is stateless: the same expression and instants always
give the same answer. Remembering which instants already fired is the
scheduler loop's job.
"""

import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from croniter import croniter

from cronkeeper.errors import InvalidScheduleError

FIELD_NAMES = ("second", "minute", "hour", "day-of-month", "month", "day-of-week")

# Inclusive bounds per field, in FIELD_NAMES order
FIELD_RANGES = ((0, 59), (0, 59), (0, 23), (1, 31), (1, 12), (0, 7))

DAY_OF_WEEK = 5

_MONTH_NAMES = {
    name: number for number, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun",
         "jul", "aug", "sep", "oct", "nov", "dec"),
        start=1
    )
}
_DAY_NAMES = {
    name: number for number, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))
}
_FIELD_ALIASES: Dict[int, Dict[str, int]] = {4: _MONTH_NAMES, DAY_OF_WEEK: _DAY_NAMES}

_NUMBER = re.compile(r"[0-9]+")


def _field_value(token: str, index: int) -> int:
    aliases = _FIELD_ALIASES.get(index, {})
    if _NUMBER.fullmatch(token):
        value = int(token)
    elif token.lower() in aliases:
        value = aliases[token.lower()]
    else:
        raise InvalidScheduleError(f"Invalid {FIELD_NAMES[index]} value '{token}'")

    low, high = FIELD_RANGES[index]
    if not low <= value <= high:
        raise InvalidScheduleError(
            f"{FIELD_NAMES[index]} value {value} out of range {low}-{high}"
        )
    return value


def _check_field(field: str, index: int) -> str:
    """
    Validate one field and return it in the form croniter accepts.

    Items naming day-of-week 7 are expanded to explicit values with 7
    mapped to 0, since croniter rejects 7 in its six-field form.

    Raises:
        InvalidScheduleError: On anything outside the standard grammar
    """
    low, high = FIELD_RANGES[index]
    normalized: List[str] = []

    for item in field.split(","):
        base, has_step, step_text = item.partition("/")
        step: Optional[int] = None
        if has_step:
            if not _NUMBER.fullmatch(step_text) or int(step_text) == 0:
                raise InvalidScheduleError(
                    f"Invalid {FIELD_NAMES[index]} step '{step_text}' in '{item}'"
                )
            step = int(step_text)

        if base == "*":
            start, end = low, high
        elif "-" in base:
            first, _, last = base.partition("-")
            start, end = _field_value(first, index), _field_value(last, index)
            if start > end:
                raise InvalidScheduleError(f"Invalid {FIELD_NAMES[index]} range '{base}'")
        else:
            start = _field_value(base, index)
            end = high if step else start

        if index == DAY_OF_WEEK and base != "*" and end == 7:
            days = {day % 7 for day in range(start, end + 1, step or 1)}
            normalized.extend(str(day) for day in sorted(days))
        else:
            normalized.append(item)

    return ",".join(normalized)


class CronSchedule:
    """A validated six-field cron expression."""

    def __init__(self, expression: str):
        """
        Parse and validate an expression.

        Raises:
            InvalidScheduleError: On wrong field count, out-of-range or
                malformed values, or an expression that never matches
        """
        if not isinstance(expression, str):
            raise InvalidScheduleError(f"Schedule must be a string, got {type(expression).__name__}")

        parts = expression.split()
        if len(parts) != len(FIELD_NAMES):
            raise InvalidScheduleError(
                f"Expected {len(FIELD_NAMES)} fields "
                f"({' '.join(FIELD_NAMES)}), got {len(parts)}: '{expression}'"
            )

        try:
            parts = [_check_field(part, index) for index, part in enumerate(parts)]
        except InvalidScheduleError as e:
            raise InvalidScheduleError(f"Invalid schedule '{expression}': {e}") from e

        self.expression = expression
        # croniter takes seconds as the trailing sixth field
        self._croniter_expr = " ".join(parts[1:] + parts[:1])

        try:
            croniter(self._croniter_expr)
        except (ValueError, KeyError) as e:
            raise InvalidScheduleError(f"Invalid schedule '{expression}': {e}") from e

    def next_after(self, after: datetime) -> datetime:
        """
        First matching instant strictly after ``after``.

        Raises:
            InvalidScheduleError: If no matching instant exists (e.g. Feb 30)
        """
        start = _truncate(after)
        try:
            return croniter(self._croniter_expr, start).get_next(datetime)
        except (ValueError, KeyError) as e:
            raise InvalidScheduleError(f"Schedule '{self.expression}' never fires: {e}") from e

    def matches(self, instant: datetime) -> bool:
        """Whether the instant, truncated to the second, matches the expression."""
        instant = _truncate(instant)
        return self.next_after(instant - timedelta(seconds=1)) == instant

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, CronSchedule) and other.expression == self.expression

    def __hash__(self) -> int:
        return hash(self.expression)

    def __repr__(self):
        return f"CronSchedule('{self.expression}')"


def _truncate(instant: datetime) -> datetime:
    return instant.replace(microsecond=0)


def parse_schedule(expression: str) -> CronSchedule:
    """Validate an expression, raising InvalidScheduleError if it is malformed."""
    return CronSchedule(expression)


def next_due(expression: str, after: datetime) -> datetime:
    """Next instant at which the schedule fires, strictly after ``after``."""
    return parse_schedule(expression).next_after(after)


def is_due(expression: str, now: datetime, last_checked: datetime) -> bool:
    """
    Whether a job should fire at ``now``.

    A job is due when some instant matching its schedule lies in the
    half-open interval ``(last_checked, now]``, both ends truncated to the
    second. Callers advance ``last_checked`` to ``now`` after every check,
    so each matching instant fires at most once even when a tick arrives
    late and skips over a second.

    Args:
        expression: Six-field cron expression
        now: Current instant
        last_checked: Instant of the previous check for this job

    Returns:
        True if the job is due

    Raises:
        InvalidScheduleError: If the expression is malformed
    """
    schedule = parse_schedule(expression)
    now = _truncate(now)
    last_checked = _truncate(last_checked)
    if now <= last_checked:
        return False
    return schedule.next_after(last_checked) <= now
