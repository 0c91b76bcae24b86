"""
User notification preferences and quiet-hours arithmetic.

Quiet hours are a half-open local-time window [start, end). A window whose
start is later than its end wraps midnight (22:00-08:00).
"""

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class QuietHours(BaseModel):
    enabled: bool = True
    start: str = "22:00"
    end: str = "08:00"
    timezone: str = "UTC"


class NotificationPreferences(BaseModel):
    """Per-user delivery preferences. A missing record means everything is allowed."""
    user_id: str
    push_enabled: bool = True
    notification_types: Dict[str, bool] = Field(default_factory=dict)
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    locale: str = "en"

    def type_enabled(self, notification_type: str) -> bool:
        # Types the user never touched stay enabled
        return self.notification_types.get(notification_type, True)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(int(hours), int(minutes))


def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', using UTC")
        return timezone.utc


def local_time(now: datetime, quiet: QuietHours) -> datetime:
    return now.astimezone(_zone(quiet.timezone))


def is_in_quiet_hours(now: datetime, quiet: Optional[QuietHours]) -> bool:
    """Check whether `now` falls inside the user's quiet window."""
    if quiet is None or not quiet.enabled:
        return False

    start = _parse_hhmm(quiet.start)
    end = _parse_hhmm(quiet.end)
    if start == end:
        return False

    current = local_time(now, quiet).time().replace(second=0, microsecond=0)
    if start < end:
        return start <= current < end
    return current >= start or current < end


def end_of_quiet_hours(now: datetime, quiet: QuietHours) -> datetime:
    """Next moment the quiet window ends, as an aware UTC datetime."""
    local_now = local_time(now, quiet)
    end = _parse_hhmm(quiet.end)
    candidate = local_now.replace(hour=end.hour, minute=end.minute, second=0, microsecond=0)
    if candidate <= local_now:
        candidate = candidate + timedelta(days=1)
    return candidate.astimezone(timezone.utc)


def delay_until_quiet_hours_end(now: datetime, quiet: QuietHours) -> timedelta:
    return end_of_quiet_hours(now, quiet) - now
