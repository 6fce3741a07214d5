from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from snapshot_api.cron import (
    InvalidScheduleExpression, InvalidTimezone, next_run, parse_day_of_week, upcoming_runs,
)

UTC = timezone.utc
REFERENCE = datetime(2025, 1, 15, 10, 0, tzinfo=UTC)

EXPRESSIONS = [
    "0 3 * * *",
    "*/15 * * * *",
    "30 2 * * 1,3,5",
    "0 0 1 * *",
    "0 12 * 6 0",
    "45 23 * * 6",
    "0 */6 * * *",
    "* * * * *",
]


def test_daily_three_am_eastern():
    result = next_run("0 3 * * *", "America/New_York", REFERENCE)
    assert result == datetime(2025, 1, 16, 8, 0, tzinfo=UTC)


def test_same_day_when_time_not_yet_reached():
    reference = datetime(2025, 1, 15, 6, 0, tzinfo=UTC)  # 01:00 EST
    result = next_run("0 3 * * *", "America/New_York", reference)
    assert result == datetime(2025, 1, 15, 8, 0, tzinfo=UTC)


def test_timezones_offset_the_same_literal_hour():
    new_york = next_run("0 3 * * *", "America/New_York", REFERENCE)
    berlin = next_run("0 3 * * *", "Europe/Berlin", REFERENCE)
    assert berlin == datetime(2025, 1, 16, 2, 0, tzinfo=UTC)
    assert new_york - berlin == timedelta(hours=6)


def test_summer_time_offset():
    reference = datetime(2025, 7, 1, 12, 0, tzinfo=UTC)
    assert next_run("0 3 * * *", "America/New_York", reference) == datetime(2025, 7, 2, 7, 0, tzinfo=UTC)


def test_naive_reference_is_utc():
    assert next_run("0 3 * * *", "America/New_York", REFERENCE.replace(tzinfo=None)) == \
        next_run("0 3 * * *", "America/New_York", REFERENCE)


def test_reference_exactly_on_fire_time_moves_forward():
    fire_time = datetime(2025, 1, 16, 8, 0, tzinfo=UTC)
    assert next_run("0 3 * * *", "America/New_York", fire_time) == fire_time + timedelta(days=1)


@pytest.mark.parametrize("expression", EXPRESSIONS)
def test_result_is_strictly_after_reference(expression):
    for reference in (REFERENCE, REFERENCE + timedelta(seconds=1, microseconds=5), datetime(2025, 3, 9, 6, 59, tzinfo=UTC)):
        assert next_run(expression, "America/New_York", reference) > reference


@pytest.mark.parametrize("expression", EXPRESSIONS)
def test_feeding_output_back_is_strictly_increasing(expression):
    runs = upcoming_runs(expression, "America/New_York", count=10, reference_time=REFERENCE)
    assert all(earlier < later for earlier, later in zip(runs, runs[1:]))
    assert len(set(runs)) == len(runs)


@pytest.mark.parametrize("expression,allowed", [
    ("30 2 * * 1,3,5", {1, 3, 5}),
    ("0 9 * * 0", {0}),
    ("0 9 * * 7", {0}),
    ("0 9 * * 1-5", {1, 2, 3, 4, 5}),
    ("0 9 * * sat,sun", {0, 6}),
])
def test_day_of_week_restriction(expression, allowed):
    tz = ZoneInfo("America/New_York")
    for run in upcoming_runs(expression, "America/New_York", count=12, reference_time=REFERENCE):
        local = run.astimezone(tz)
        cron_weekday = (local.weekday() + 1) % 7
        assert cron_weekday in allowed


def test_day_of_month_and_month_constrain_the_result():
    result = next_run("0 0 1 3 *", "UTC", REFERENCE)
    assert result == datetime(2025, 3, 1, 0, 0, tzinfo=UTC)


def test_wildcard_minute_fires_next_minute():
    assert next_run("* * * * *", "UTC", REFERENCE) == REFERENCE + timedelta(minutes=1)


@pytest.mark.parametrize("expression", [
    "0 3 * *",
    "0 3 * * * *",
    "",
    "61 3 * * *",
    "0 25 * * *",
    "abc 3 * * *",
    "0 3 * * 8",
    "0 3 * * 5-2",
    "0 3 * * funday",
])
def test_malformed_expressions_are_rejected(expression):
    with pytest.raises(InvalidScheduleExpression):
        next_run(expression, "America/New_York", REFERENCE)


def test_unknown_timezone_is_rejected():
    with pytest.raises(InvalidTimezone):
        next_run("0 3 * * *", "Mars/Olympus_Mons", REFERENCE)


def test_configuration_errors_are_value_errors():
    assert issubclass(InvalidScheduleExpression, ValueError)
    assert issubclass(InvalidTimezone, ValueError)


def test_parse_day_of_week():
    assert parse_day_of_week("*") is None
    assert parse_day_of_week("0,7") == {0}
    assert parse_day_of_week("*/2") == {0, 2, 4, 6}
    assert parse_day_of_week("5-7") == {5, 6, 0}
    assert parse_day_of_week("mon-wed") == {1, 2, 3}
