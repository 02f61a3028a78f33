"""Cron generation and missed-trigger detection for update schedules."""
from __future__ import annotations

from datetime import datetime
from datetime import timedelta
from datetime import timezone

from apscheduler.triggers.cron import CronTrigger

from dependabot_server.enums import ScheduleInterval
from dependabot_server.services.configuration import UpdateSchedule

# Daily updates that are due again within this window are not re-triggered.
DAILY_MISSED_THRESHOLD = timedelta(hours=12)

_DAY_FIELDS: dict[ScheduleInterval, str] = {
    ScheduleInterval.DAILY: "* * 1-5",  # weekdays only, `day` ignored
    ScheduleInterval.MONTHLY: "1 * *",
    ScheduleInterval.QUARTERLY: "1 1,4,7,10 *",
    ScheduleInterval.SEMIANNUALLY: "1 1,7 *",
    ScheduleInterval.YEARLY: "1 1 *",
}


def generate_cron(schedule: UpdateSchedule) -> str:
    """Five-field cron expression (minute hour day-of-month month day-of-week)."""
    if schedule.interval == ScheduleInterval.CRON:
        return schedule.cronjob.strip()

    if schedule.interval == ScheduleInterval.WEEKLY:
        days = f"* * {schedule.day.cron_number}"
    else:
        days = _DAY_FIELDS[schedule.interval]
    return f"{schedule.minute:02d} {schedule.hour:02d} {days}"


def make_trigger(schedule: UpdateSchedule) -> CronTrigger:
    return CronTrigger.from_crontab(generate_cron(schedule), timezone=schedule.timezone)


def next_occurrence(trigger: CronTrigger, after: datetime) -> datetime | None:
    """First fire time strictly after ``after``."""
    return trigger.get_next_fire_time(None, after + timedelta(microseconds=1))


def is_missed(
    schedule: UpdateSchedule,
    latest_update: datetime | None,
    reference: datetime,
) -> bool:
    """Whether an occurrence passed since ``latest_update`` without a run.

    Raises on an invalid timezone or cron expression; callers sweeping many
    updates catch per update.
    """
    trigger = make_trigger(schedule)
    if latest_update is None:
        return True
    if latest_update.tzinfo is None:
        latest_update = latest_update.replace(tzinfo=timezone.utc)

    next_from_last = next_occurrence(trigger, latest_update)
    if next_from_last is None:
        return False
    missed = next_from_last <= reference

    if missed and schedule.interval == ScheduleInterval.DAILY:
        next_from_reference = next_occurrence(trigger, reference)
        if next_from_reference is not None:
            missed = (next_from_reference - reference) > DAILY_MISSED_THRESHOLD
    return missed
