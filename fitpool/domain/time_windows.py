"""Time window evaluation for reminder triggers.

Events store a calendar date plus a free-form time range such as
``"10:00 AM - 11:00 AM"`` or ``"18:30 - 19:30"``. These helpers turn that pair
into timezone-aware datetimes and decide whether a trigger is due. They never
touch storage; flag state is passed in by the caller.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional

from fitpool.domain.models import RunType, TriggerType, UnparsableTimePolicy
from fitpool.utils.logger import get_logger


logger = get_logger(__name__)

_CLOCK_PATTERN = re.compile(r"^\s*(\d{1,2})(?:[:.](\d{2}))?\s*([AaPp]\.?[Mm]\.?)?\s*$")
_RANGE_SEPARATOR = re.compile(r"\s*(?:-|–|—|\bto\b)\s*")


@dataclass(frozen=True)
class EventWindow:
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return max(1, int((self.end - self.start).total_seconds() // 60))


def parse_clock(value: str) -> Optional[time]:
    """Parse ``"7"``, ``"7:30 pm"`` or ``"19:30"``; no meridiem means 24-hour clock."""
    match = _CLOCK_PATTERN.match(value or "")
    if match is None:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").replace(".", "").upper()
    if minute > 59:
        return None
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        if meridiem == "PM" and hour < 12:
            hour += 12
        elif meridiem == "AM" and hour == 12:
            hour = 0
    elif hour > 23:
        return None
    return time(hour=hour, minute=minute)


def parse_event_date(value: str) -> Optional[date]:
    try:
        return date.fromisoformat((value or "").strip()[:10])
    except ValueError:
        return None


def parse_instant(value: str | None) -> Optional[datetime]:
    """Parse a stored ISO datetime; naive values are taken as UTC."""
    if value is None or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_event_window(
    event_date: str,
    event_time: str | None,
    tz: tzinfo,
    *,
    default_duration_minutes: int = 60,
) -> Optional[EventWindow]:
    """Return the event's start/end in ``tz`` or ``None`` when unparsable."""
    day = parse_event_date(event_date)
    if day is None or not event_time or not event_time.strip():
        return None

    parts = _RANGE_SEPARATOR.split(event_time.strip(), maxsplit=1)
    start_clock = parse_clock(parts[0])
    if start_clock is None:
        return None
    start = datetime.combine(day, start_clock, tzinfo=tz)

    if len(parts) == 1 or not parts[1].strip():
        return EventWindow(start=start, end=start + timedelta(minutes=default_duration_minutes))

    end_clock = parse_clock(parts[1])
    if end_clock is None:
        return None
    end = datetime.combine(day, end_clock, tzinfo=tz)
    if end <= start:
        end += timedelta(days=1)
    return EventWindow(start=start, end=end)


def minutes_until(target: datetime, now: datetime) -> int:
    """Whole minutes from ``now`` to ``target`` (floored, negative once passed)."""
    return math.floor((target - now).total_seconds() / 60)


def _fallback(policy: UnparsableTimePolicy, reason: str) -> bool:
    outcome = policy is UnparsableTimePolicy.ALWAYS
    logger.warning(
        "Unparsable event schedule; applying fallback policy | policy=%s | outcome=%s | reason=%s",
        policy.value,
        outcome,
        reason,
    )
    return outcome


def should_fire(
    now: datetime,
    event_start: datetime | None,
    event_end: datetime | None,
    trigger_type: TriggerType,
    *,
    already_fired: bool = False,
    unparsable_policy: UnparsableTimePolicy = UnparsableTimePolicy.NEVER,
    post_event_delay: timedelta = timedelta(0),
) -> bool:
    """Decide whether ``trigger_type`` is due.

    Pre-event triggers fire once the window ``0 <= start - now <= threshold``
    has been entered; post-event fires once ``now > end + delay``. A trigger
    whose flag is already set never fires again.
    """
    if already_fired:
        return False

    if trigger_type is TriggerType.POST_EVENT:
        if event_end is None:
            return _fallback(unparsable_policy, "missing event end")
        return now > event_end + post_event_delay

    if event_start is None:
        return _fallback(unparsable_policy, "missing event start")
    threshold = trigger_type.threshold_minutes
    diff = minutes_until(event_start, now)
    return 0 <= diff <= threshold


def matches_run_type(
    event_start: datetime | None,
    run_type: RunType,
    *,
    unparsable_policy: UnparsableTimePolicy = UnparsableTimePolicy.NEVER,
) -> bool:
    """Morning sweeps handle events starting before noon, evening sweeps the rest."""
    if run_type is RunType.ALL:
        return True
    if event_start is None:
        return _fallback(unparsable_policy, "run type filter without event start")
    if run_type is RunType.MORNING:
        return event_start.hour < 12
    return event_start.hour >= 12
