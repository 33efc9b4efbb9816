"""
Cron expression helpers for recurring scrape runs.
"""
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.cron import CronTrigger


def parse_cron(expression: str) -> CronTrigger:
    """Parse a 5-field crontab expression (UTC). Raises ValueError when invalid."""
    return CronTrigger.from_crontab(expression.strip(), timezone=timezone.utc)


def next_run_time(expression: str, now: datetime) -> datetime:
    """First fire time strictly after ``now``."""
    trigger = parse_cron(expression)
    fire_time = trigger.get_next_fire_time(None, now + timedelta(microseconds=1))
    if fire_time is None:
        raise ValueError(f"Cron expression never fires: {expression}")
    return fire_time
