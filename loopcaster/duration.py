"""
Duration resolution for stream configurations.

A StreamConfig carries four overlapping ways of saying how long a stream
runs. resolve_duration_seconds is the only place that turns them into a
number; the scheduler, the supervisor and the API all call through it.

Precedence (first positive value wins):
    1. duration_minutes
    2. schedule_end - schedule_start, when the end is after the start
    3. duration_hours
    4. legacy_duration_minutes
Otherwise the stream is unbounded and None is returned.
"""

import math
from datetime import datetime
from typing import Optional


def minutes_to_seconds(minutes) -> int:
    return int(round(minutes * 60))


def hours_to_seconds(hours) -> int:
    return int(round(hours * 3600))


def _positive(value) -> bool:
    return value is not None and not isinstance(value, bool) and value > 0


def resolve_duration_seconds(config) -> Optional[int]:
    if _positive(config.duration_minutes):
        return minutes_to_seconds(config.duration_minutes)

    start, end = config.schedule_start, config.schedule_end
    if isinstance(start, datetime) and isinstance(end, datetime) and end > start:
        seconds = math.floor((end - start).total_seconds())
        if seconds > 0:
            return seconds

    if _positive(config.duration_hours):
        return hours_to_seconds(config.duration_hours)

    if _positive(config.legacy_duration_minutes):
        return minutes_to_seconds(config.legacy_duration_minutes)

    return None


def format_duration(seconds: Optional[int]) -> str:
    if seconds is None:
        return "unlimited"
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"
