"""
Cron expression evaluation.

Schedules use standard 5-field crontab expressions
(minute hour day-of-month month day-of-week) evaluated in an IANA
timezone. Field matching is delegated to APScheduler's CronTrigger, so
ranges, steps and lists are accepted in every field. Day-of-week values
follow crontab numbering (0 and 7 are Sunday); names such as ``mon`` are
accepted as well.
"""
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from .utils import to_aware_utc

WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
EPOCH = datetime(1970, 1, 1, tzinfo=dt_timezone.utc)


class InvalidScheduleExpression(ValueError):
    pass


class InvalidTimezone(ValueError):
    pass


def resolve_timezone(name: str) -> ZoneInfo:
    if not name:
        raise InvalidTimezone("Timezone must not be empty")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidTimezone(f"Unknown timezone: {name}") from e


def _weekday_value(token: str, expression: str) -> int:
    token = token.strip().lower()
    if token in WEEKDAY_NAMES:
        return WEEKDAY_NAMES.index(token)
    try:
        value = int(token)
    except ValueError:
        raise InvalidScheduleExpression(f"Invalid day-of-week '{token}' in '{expression}'")
    if not 0 <= value <= 7:
        raise InvalidScheduleExpression(f"Day-of-week out of range (0-7): {value} in '{expression}'")
    return value % 7


def parse_day_of_week(field: str, expression: str = "") -> Optional[Set[int]]:
    """
    Expands a day-of-week field into crontab weekday numbers
    (0=Sunday..6=Saturday). Returns None for an unrestricted field.
    """
    if field == "*":
        return None

    days = set()
    for part in field.split(","):
        if not part:
            raise InvalidScheduleExpression(f"Empty day-of-week entry in '{expression}'")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            try:
                step = int(step_text)
            except ValueError:
                raise InvalidScheduleExpression(f"Invalid step '{step_text}' in '{expression}'")
            if step < 1:
                raise InvalidScheduleExpression(f"Step must be positive in '{expression}'")

        if part == "*":
            first, last = 0, 6
        elif "-" in part:
            low, high = part.split("-", 1)
            first = _weekday_value(low, expression)
            # 7 closes a range on Sunday, e.g. 5-7
            last = 7 if high.strip() == "7" else _weekday_value(high, expression)
            if first > last:
                raise InvalidScheduleExpression(f"Invalid day-of-week range '{part}' in '{expression}'")
        else:
            first = last = _weekday_value(part, expression)

        days.update(value % 7 for value in range(first, last + 1, step))
    return days


def build_trigger(expression: str, timezone: str) -> CronTrigger:
    if not isinstance(expression, str):
        raise InvalidScheduleExpression("Cron expression must be a string")

    parts = expression.split()
    if len(parts) != 5:
        raise InvalidScheduleExpression(
            "Invalid cron expression. Expected format: minute hour day-of-month month day-of-week"
        )

    tz = resolve_timezone(timezone)
    minute, hour, day, month, day_of_week = parts
    weekdays = parse_day_of_week(day_of_week, expression)
    if weekdays is None:
        day_of_week_field = "*"
    else:
        day_of_week_field = ",".join(WEEKDAY_NAMES[d] for d in sorted(weekdays))

    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week_field,
            timezone=tz,
            # evaluate relative to the caller's reference time, not construction time
            start_date=EPOCH,
        )
    except ValueError as e:
        raise InvalidScheduleExpression(f"Invalid cron expression '{expression}': {e}") from e


def next_run(expression: str, timezone: str, reference_time: datetime = None) -> datetime:
    """
    Returns the earliest instant strictly after ``reference_time`` matching
    ``expression`` in ``timezone``, as an aware UTC datetime. Naive
    reference times are taken as UTC.
    """
    trigger = build_trigger(expression, timezone)
    if reference_time is None:
        reference_time = datetime.now(dt_timezone.utc)
    reference_time = to_aware_utc(reference_time)

    # The trigger returns fire times >= now, rounded up to whole seconds.
    fire_time = trigger.get_next_fire_time(None, reference_time + timedelta(microseconds=1))
    if fire_time is None:
        raise InvalidScheduleExpression(f"Cron expression '{expression}' never fires")
    return fire_time.astimezone(dt_timezone.utc)


def upcoming_runs(expression: str, timezone: str, count: int = 5, reference_time: datetime = None) -> List[datetime]:
    runs = []
    moment = reference_time
    for _ in range(count):
        moment = next_run(expression, timezone, moment)
        runs.append(moment)
    return runs


def validate_schedule(expression: str, timezone: str):
    """Raises InvalidScheduleExpression / InvalidTimezone for bad input."""
    next_run(expression, timezone)
