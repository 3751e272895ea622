"""
Pure schedule-rule arithmetic shared by availability, batch pricing and
booking validation. Nothing here touches the database.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional

from tourbooking.schemas.tour import ScheduleConfig


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def weekday_index(day: date) -> int:
    """0 = Sunday ... 6 = Saturday, the convention stored in schedule configs."""
    return day.isoweekday() % 7


def iter_days(start: date, end: date) -> Iterator[date]:
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def is_blacked_out(config: ScheduleConfig, day: date) -> bool:
    return any(blackout.covers(day) for blackout in config.blackout_ranges)


def runs_on(config: ScheduleConfig, day: date) -> bool:
    return weekday_index(day) in config.days_of_week and not is_blacked_out(config, day)


def iter_slots(config: ScheduleConfig, start: date, end: date) -> Iterator[tuple[date, time]]:
    """Every scheduled (date, time) in [start, end], chronologically."""
    times = config.slot_times()
    for day in iter_days(start, end):
        if not runs_on(config, day):
            continue
        for slot_time in times:
            yield day, slot_time


def booking_window(booking_window_days: int, today: Optional[date] = None) -> tuple[date, date]:
    today = today or utc_today()
    return today, today + timedelta(days=booking_window_days)


def is_scheduled_slot(config: ScheduleConfig, day: date, slot_time: time) -> bool:
    slot_time = slot_time.replace(second=0, microsecond=0)
    return runs_on(config, day) and slot_time in config.slot_times()
