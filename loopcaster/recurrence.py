"""
Schedule validation and recurring-time arithmetic.

All wall-clock comparisons happen in an explicit site time zone passed in
by the caller; nothing here reads the host's locale. Instants are compared
after conversion to UTC so that DST shifts cannot skew an elapsed time.
Weekdays are numbered 0 (Sunday) to 6 (Saturday).
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from loopcaster import config
from loopcaster.errors import ConfigurationError
from loopcaster.models import RECURRING_TYPES, ScheduleType

TIME_PATTERN = re.compile(r'^([01]?[0-9]|2[0-3]):([0-5][0-9])$')
RESOLUTION_PATTERN = re.compile(r'^[1-9][0-9]*x[1-9][0-9]*$')

DUE = 'due'
PENDING = 'pending'
MISSED = 'missed'
SKIP = 'skip'


@lru_cache(maxsize=None)
def site_zone(name=None) -> ZoneInfo:
    return ZoneInfo(name or config.SITE_TIMEZONE)


def parse_time_of_day(text) -> time:
    match = TIME_PATTERN.match(str(text or '').strip())
    if not match:
        raise ConfigurationError(f"Invalid time of day (expected HH:MM): {text!r}")
    return time(int(match.group(1)), int(match.group(2)))


def day_number(d: date) -> int:
    return (d.weekday() + 1) % 7


def validate_stream_config(stream_config):
    """Raises ConfigurationError if stream_config can never be started."""
    if not stream_config.id:
        raise ConfigurationError("Stream id is required")
    if not stream_config.video_ref and not stream_config.video_refs:
        raise ConfigurationError(f"[{stream_config.id}] A video reference or playlist is required")
    if any(not ref for ref in stream_config.video_refs):
        raise ConfigurationError(f"[{stream_config.id}] Empty entry in playlist {stream_config.video_refs}")
    _validate_encoding(stream_config)
    if not stream_config.rtmp_url or not stream_config.stream_key:
        raise ConfigurationError(f"[{stream_config.id}] RTMP URL and stream key are required")

    schedule_type = stream_config.schedule_type
    if schedule_type not in [t.value for t in ScheduleType]:
        raise ConfigurationError(f"[{stream_config.id}] Unknown schedule type: {schedule_type!r}")
    if schedule_type not in RECURRING_TYPES:
        return

    parse_time_of_day(stream_config.recurring_time)

    if schedule_type == ScheduleType.WEEKLY.value:
        days = stream_config.recurring_days or []
        if not days:
            raise ConfigurationError(f"[{stream_config.id}] Weekly schedule needs at least one day")
        for day in days:
            if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
                raise ConfigurationError(f"[{stream_config.id}] Invalid weekday {day!r} (0=Sunday .. 6=Saturday)")
        if len(set(days)) != len(days):
            raise ConfigurationError(f"[{stream_config.id}] Duplicate weekdays in {days}")


def _validate_encoding(stream_config):
    for name in ('bitrate', 'fps'):
        value = getattr(stream_config, name)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value <= 0):
            raise ConfigurationError(f"[{stream_config.id}] {name} must be a positive integer, got {value!r}")
    if stream_config.resolution is not None and not RESOLUTION_PATTERN.match(str(stream_config.resolution)):
        raise ConfigurationError(f"[{stream_config.id}] Invalid resolution (expected WIDTHxHEIGHT): "
                                 f"{stream_config.resolution!r}")


def _utc(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc)


def window_state(instant: datetime, now: datetime, window: timedelta) -> str:
    """Where now falls relative to the trigger window [instant, instant + window]."""
    lag = _utc(now) - _utc(instant)
    if lag < timedelta(0):
        return PENDING
    if lag <= window:
        return DUE
    return MISSED


def latest_occurrence(time_of_day, now: datetime, tz) -> datetime:
    """The most recent wall-clock slot at time_of_day that is not after now."""
    t = parse_time_of_day(time_of_day)
    local_now = now.astimezone(tz)
    slot = datetime.combine(local_now.date(), t, tzinfo=tz)
    if _utc(slot) > _utc(local_now):
        slot = datetime.combine(local_now.date() - timedelta(days=1), t, tzinfo=tz)
    return slot


def _already_ran(stream_config, slot: datetime, tz) -> bool:
    last = stream_config.last_run_at
    return last is not None and last.astimezone(tz).date() >= slot.date()


def due_occurrence(stream_config, now: datetime, tz, window: timedelta):
    """The local slot instant if a recurring stream should fire now, else None."""
    if not stream_config.is_recurring or not stream_config.recurring_enabled:
        return None
    slot = latest_occurrence(stream_config.recurring_time, now, tz)
    if stream_config.schedule_type == ScheduleType.WEEKLY.value:
        if day_number(slot.date()) not in (stream_config.recurring_days or []):
            return None
    if window_state(slot, now, window) != DUE:
        return None
    if _already_ran(stream_config, slot, tz):
        return None
    return slot


def daily_due(stream_config, now, tz, window) -> bool:
    if stream_config.schedule_type != ScheduleType.DAILY.value:
        return False
    return due_occurrence(stream_config, now, tz, window) is not None


def weekly_due(stream_config, now, tz, window) -> bool:
    if stream_config.schedule_type != ScheduleType.WEEKLY.value:
        return False
    return due_occurrence(stream_config, now, tz, window) is not None


def next_run_at(stream_config, now: datetime, tz):
    """First slot strictly after now, in UTC. None for one-off or disabled schedules."""
    if not stream_config.is_recurring or not stream_config.recurring_enabled:
        return None
    t = parse_time_of_day(stream_config.recurring_time)
    weekly = stream_config.schedule_type == ScheduleType.WEEKLY.value
    days = stream_config.recurring_days or []
    local_today = now.astimezone(tz).date()
    for offset in range(0, 8):
        d = local_today + timedelta(days=offset)
        if weekly and day_number(d) not in days:
            continue
        slot = datetime.combine(d, t, tzinfo=tz)
        if _utc(slot) > _utc(now):
            return _utc(slot)
    return None


def missed_run_action(stream_config, now: datetime, tz, recovery_window: timedelta):
    """
    Decides what to do with a recurring stream whose next_run_at passed
    while the service was down: DUE when the slot is on today's site-local
    date, inside the recovery window and that day has not run yet, SKIP
    otherwise, None when nothing was missed.
    """
    if not stream_config.is_recurring or not stream_config.recurring_enabled:
        return None
    planned = stream_config.next_run_at
    if planned is None or _utc(planned) > _utc(now):
        return None
    planned_local = planned.astimezone(tz)
    if _already_ran(stream_config, planned_local, tz):
        return SKIP
    same_day = planned_local.date() == now.astimezone(tz).date()
    if same_day and _utc(now) - _utc(planned) <= recovery_window:
        return DUE
    return SKIP
