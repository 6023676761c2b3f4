"""
Tests for cron schedule evaluation.
"""

from datetime import datetime, timedelta, timezone

import pytest

from cronkeeper.errors import InvalidScheduleError
from cronkeeper.schedule import CronSchedule, is_due, next_due, parse_schedule

UTC = timezone.utc


def _at(hour: int, minute: int, second: int, micro: int = 0) -> datetime:
    return datetime(2024, 5, 6, hour, minute, second, micro, tzinfo=UTC)  # a Monday


def test_every_minute_at_second_zero():
    assert next_due("0 * * * * *", _at(12, 0, 30)) == _at(12, 1, 0)
    assert next_due("0 * * * * *", _at(12, 0, 0)) == _at(12, 1, 0), \
        "next_due must be strictly after the reference instant"


def test_is_due_in_half_open_window():
    schedule = "0 * * * * *"
    assert is_due(schedule, _at(12, 1, 0), _at(12, 0, 59))
    # Late tick that skipped the matching second still fires
    assert is_due(schedule, _at(12, 1, 2), _at(12, 0, 58))
    # Matching instant equal to last_checked is already consumed
    assert not is_due(schedule, _at(12, 1, 1), _at(12, 1, 0))
    assert not is_due(schedule, _at(12, 0, 30), _at(12, 0, 29))


def test_is_due_is_pure():
    args = ("*/5 * * * * *", _at(8, 30, 15, 999_000), _at(8, 30, 14))
    first = is_due(*args)
    for _ in range(5):
        assert is_due(*args) == first
    assert first is True


def test_is_due_truncates_to_second():
    assert is_due("30 * * * * *", _at(9, 0, 30, 750_000), _at(9, 0, 29, 500_000))


def test_now_not_after_last_checked_is_never_due():
    assert not is_due("* * * * * *", _at(10, 0, 0), _at(10, 0, 0))
    assert not is_due("* * * * * *", _at(10, 0, 0), _at(10, 0, 5))


def test_ranges_steps_lists_and_names():
    schedule = parse_schedule("0 0 9-17/4 * * mon-fri")
    assert schedule.matches(_at(9, 0, 0))
    assert schedule.matches(_at(13, 0, 0))
    assert not schedule.matches(_at(11, 0, 0))

    weekend = parse_schedule("0 0 12 * * 0,6")
    saturday = _at(12, 0, 0) + timedelta(days=5)
    sunday = _at(12, 0, 0) + timedelta(days=6)
    assert weekend.matches(saturday)
    assert weekend.matches(sunday)
    assert not weekend.matches(_at(12, 0, 0))


def test_five_field_expression_rejected():
    with pytest.raises(InvalidScheduleError, match="Expected 6 fields"):
        is_due("* * * * *", _at(12, 0, 0), _at(11, 59, 59))


@pytest.mark.parametrize("expression", [
    "",
    "* * * * * * *",
    "60 * * * * *",
    "0 60 * * * *",
    "0 0 24 * * *",
    "0 0 0 32 * *",
    "0 0 0 * 13 *",
    "0 0 0 * * 8",
    "x * * * * *",
    "* * * 0 * *",
    "*/0 * * * * *",
    "0 0 5-1 * * *",
    "0 0 0 L * *",
    "0 0 0 ? * *",
    "0 0 0 * * 1#2",
    "R * * * * *",
    "H * * * * *",
    "0 H * * * *",
    "1,,2 * * * * *",
])
def test_invalid_expressions(expression):
    with pytest.raises(InvalidScheduleError):
        parse_schedule(expression)


def test_non_string_schedule_rejected():
    with pytest.raises(InvalidScheduleError):
        CronSchedule(None)


def test_schedule_that_never_fires():
    with pytest.raises(InvalidScheduleError):
        next_due("0 0 0 30 2 *", _at(0, 0, 0))


def test_timezone_is_preserved():
    tz = timezone(timedelta(hours=2))
    after = datetime(2024, 5, 6, 8, 59, 59, tzinfo=tz)
    result = next_due("0 0 9 * * *", after)
    assert result == datetime(2024, 5, 6, 9, 0, 0, tzinfo=tz)


def test_sunday_as_seven():
    sunday = datetime(2024, 5, 12, 0, 0, 0, tzinfo=UTC)
    assert next_due("0 0 0 * * 7", _at(12, 0, 0)) == sunday
    assert next_due("0 0 0 * * sun", _at(12, 0, 0)) == sunday

    weekend = parse_schedule("0 0 12 * * 5-7")
    friday = _at(12, 0, 0) + timedelta(days=4)
    for offset in range(4, 7):
        assert weekend.matches(_at(12, 0, 0) + timedelta(days=offset))
    assert not weekend.matches(_at(12, 0, 0))
    assert weekend.next_after(friday) == friday + timedelta(days=1)


def test_results_are_repeatable():
    results = {next_due("*/7 */3 * * * *", _at(12, 0, 30)) for _ in range(20)}
    assert len(results) == 1, "the same expression must always give the same instant"


@pytest.mark.parametrize("expression", ["R * * * * *", "0 R * * * *", "H H * * * *"])
def test_random_and_hashed_values_rejected(expression):
    with pytest.raises(InvalidScheduleError):
        is_due(expression, _at(12, 0, 0), _at(11, 59, 59))
