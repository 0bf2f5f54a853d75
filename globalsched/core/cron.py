from __future__ import annotations

from datetime import datetime
from typing import Any

from apscheduler.triggers.cron import CronTrigger

from globalsched.core.errors import ValidationError
from globalsched.core.timeutil import ensure_aware

MIN_INTERVAL_HOURS = 1
MAX_INTERVAL_HOURS = 168
STAGGER_MINUTES = 15


def validate_interval_hours(
    value: Any,
    *,
    min_hours: int = MIN_INTERVAL_HOURS,
    max_hours: int = MAX_INTERVAL_HOURS,
) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"interval_hours must be an integer, got {value!r}")
    try:
        hours = int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"interval_hours must be an integer, got {value!r}") from e
    if hours != value and str(hours) != str(value).strip():
        raise ValidationError(f"interval_hours must be an integer, got {value!r}")
    if hours < min_hours or hours > max_hours:
        raise ValidationError(f"interval_hours={hours} outside {min_hours}..{max_hours}")
    if hours >= 24 and hours % 24 != 0:
        raise ValidationError(f"interval_hours={hours} must be a whole number of days when >= 24")
    return hours


def interval_to_cron(interval_hours: int, batch_index: int = 0) -> str:
    """
    Cron expression for one batch of an interval group.

    Batches of the same group are staggered by 15 minutes so they never fire together.
    Daily runs land at 09:xx UTC, multi-day runs at 10:xx UTC.
    """
    minute = (int(batch_index) * STAGGER_MINUTES) % 60
    hours = int(interval_hours)
    if hours < 24:
        return f"{minute} */{hours} * * *"
    days = hours // 24
    if days == 1:
        return f"{minute} 9 * * *"
    return f"{minute} 10 */{days} * *"


def next_fire_time(cron: str, after: datetime | None = None) -> datetime | None:
    trigger = CronTrigger.from_crontab(cron, timezone="UTC")
    return trigger.get_next_fire_time(None, ensure_aware(after))
