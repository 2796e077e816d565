"""StreamConfig record and its JSON representation."""

from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class ScheduleType(str, Enum):
    ONCE = 'once'
    DAILY = 'daily'
    WEEKLY = 'weekly'


class StreamStatus(str, Enum):
    OFFLINE = 'offline'
    SCHEDULED = 'scheduled'
    LIVE = 'live'


RECURRING_TYPES = (ScheduleType.DAILY.value, ScheduleType.WEEKLY.value)

TIMESTAMP_FIELDS = ('schedule_start', 'schedule_end', 'last_run_at', 'next_run_at',
                    'actual_start_time', 'stopped_at')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Accepts a datetime or an ISO-8601 string; naive values are taken as UTC."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


@dataclass
class StreamConfig:
    id: str
    title: str = ''

    # Media and destination
    video_ref: str = ''
    audio_ref: Optional[str] = None
    rtmp_url: str = ''
    stream_key: str = ''
    loop_video: bool = True

    # Playlist source: played in order (or shuffled) through the concat demuxer instead of video_ref
    video_refs: List[str] = field(default_factory=list)
    shuffle: bool = False

    # Re-encode video with libx264 instead of stream-copying it
    use_advanced_settings: bool = False
    bitrate: Optional[int] = None  # kbps
    resolution: Optional[str] = None  # WIDTHxHEIGHT
    fps: Optional[int] = None

    # Four overlapping duration representations, resolved by duration.resolve_duration_seconds
    duration_minutes: Optional[float] = None
    schedule_start: Optional[datetime] = None
    schedule_end: Optional[datetime] = None
    duration_hours: Optional[float] = None
    legacy_duration_minutes: Optional[float] = None

    # Schedule
    schedule_type: str = ScheduleType.ONCE.value
    recurring_time: Optional[str] = None
    recurring_days: List[int] = field(default_factory=list)
    recurring_enabled: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None

    # Runtime
    status: str = StreamStatus.OFFLINE.value
    actual_start_time: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    pid: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def is_recurring(self) -> bool:
        return self.schedule_type in RECURRING_TYPES

    @property
    def is_playlist(self) -> bool:
        return bool(self.video_refs)

    @property
    def destination(self) -> str:
        return f"{self.rtmp_url.rstrip('/')}/{self.stream_key}"

    def to_dict(self) -> dict:
        data = asdict(self)
        for name in TIMESTAMP_FIELDS:
            data[name] = format_timestamp(data[name])
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'StreamConfig':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name in TIMESTAMP_FIELDS:
            if name in values:
                values[name] = parse_timestamp(values[name])
        for name in ('recurring_days', 'video_refs'):
            values[name] = list(values.get(name) or [])
        for name in ('schedule_type', 'status'):
            if isinstance(values.get(name), Enum):
                values[name] = values[name].value
        return cls(**values)
