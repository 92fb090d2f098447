"""Timezone-correct reminder arithmetic.

Deadlines and times of day are interpreted in a single reference timezone
(one IANA zone for the whole system, never the recipient's own zone). Results
are always returned as aware UTC datetimes, which is what the notification
store and the dispatch facility expect.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidTimeFormat, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_TIMEZONE = "Asia/Bangkok"

# Sends this close to "now" are fired immediately instead of being rejected.
GRACE_BUFFER = timedelta(minutes=5)
# Minimum lead time for new schedules. Must stay larger than GRACE_BUFFER.
SCHEDULING_GUARD_BUFFER = timedelta(minutes=10)
# Used by the day-level comparison when the precise computation fails.
FALLBACK_BUFFER = timedelta(hours=1)
MAX_SCHEDULE_HORIZON = timedelta(days=365)

_TIME_OF_DAY_RE = re.compile(r"^(\d+):(\d+)$")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_time_of_day(value: str) -> time:
    match = _TIME_OF_DAY_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise InvalidTimeFormat(f"invalid time of day {value!r}; expected HH:MM")
    hours = int(match.group(1))
    minutes = int(match.group(2))
    if hours > 23 or minutes > 59:
        raise InvalidTimeFormat(f"invalid time of day {value!r}; hours must be 00-23 and minutes 00-59")
    return time(hours, minutes)


def format_time_of_day(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def reference_zone(zone_name: str = DEFAULT_REFERENCE_TIMEZONE) -> ZoneInfo:
    return ZoneInfo(zone_name)


def deadline_calendar_day(deadline: datetime | date, zone: ZoneInfo) -> date:
    """Return the reference-zone calendar day a deadline falls on.

    A bare ``date`` already is a reference-zone calendar day. Naive datetimes
    are stored UTC timestamps and are converted like aware ones.
    """
    if not isinstance(deadline, datetime):
        return deadline
    return _coerce_utc(deadline).astimezone(zone).date()


def compute_delivery_instant(
    deadline: datetime | date,
    offset_days: int,
    time_of_day: str,
    *,
    zone_name: str = DEFAULT_REFERENCE_TIMEZONE,
) -> datetime:
    """Delivery instant (UTC) for a reminder ``offset_days`` before ``deadline``.

    The deadline's calendar day in the reference zone is taken, ``offset_days``
    are subtracted and the wall clock is set to ``time_of_day`` in that zone.
    """
    if offset_days < 0:
        raise ValidationError("offset_days must be greater than or equal to 0")
    wall_clock = parse_time_of_day(time_of_day)
    zone = reference_zone(zone_name)
    target_day = deadline_calendar_day(deadline, zone) - timedelta(days=offset_days)
    local = datetime.combine(target_day, wall_clock, tzinfo=zone)
    return local.astimezone(timezone.utc)


def is_effectively_past(instant: datetime, *, now: datetime | None = None) -> bool:
    current = _coerce_utc(now) if now is not None else _now_utc()
    return _coerce_utc(instant) < current + GRACE_BUFFER


def exceeds_horizon(instant: datetime, *, now: datetime | None = None) -> bool:
    current = _coerce_utc(now) if now is not None else _now_utc()
    return _coerce_utc(instant) > current + MAX_SCHEDULE_HORIZON


def can_schedule(
    deadline: datetime | date,
    offset_days: int,
    time_of_day: str,
    *,
    now: datetime | None = None,
    zone_name: str = DEFAULT_REFERENCE_TIMEZONE,
) -> bool:
    current = _coerce_utc(now) if now is not None else _now_utc()
    try:
        instant = compute_delivery_instant(deadline, offset_days, time_of_day, zone_name=zone_name)
    except (ZoneInfoNotFoundError, OverflowError, ValueError) as exc:
        logger.warning(
            "delivery instant computation failed (%s); falling back to day-level comparison",
            exc,
        )
        return _coarse_can_schedule(deadline, offset_days, current)
    return instant > current + SCHEDULING_GUARD_BUFFER


def _coarse_can_schedule(deadline: datetime | date, offset_days: int, now: datetime) -> bool:
    if isinstance(deadline, datetime):
        anchor = _coerce_utc(deadline)
    else:
        anchor = datetime.combine(deadline, time.min, tzinfo=timezone.utc)
    try:
        return anchor - timedelta(days=offset_days) > now + FALLBACK_BUFFER
    except OverflowError:
        return False


def format_reference_time(instant: datetime, *, zone_name: str = DEFAULT_REFERENCE_TIMEZONE) -> str:
    local = _coerce_utc(instant).astimezone(reference_zone(zone_name))
    return local.strftime("%d %b %Y, %H:%M (%Z)")
