import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from loopcaster.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class TrackerEntry:
    stream_id: str
    start_time: datetime
    duration_ms: int
    expected_end_time: datetime
    original_duration_ms: int


class DurationTracker:
    """Start time and intended end of every running bounded stream."""

    def __init__(self, clock=utcnow):
        self._clock = clock
        self._entries: Dict[str, TrackerEntry] = {}
        self._lock = threading.Lock()

    def set(self, stream_id, start_time: datetime, duration_ms) -> Optional[TrackerEntry]:
        if duration_ms is None or duration_ms <= 0:
            logger.info(f"[{stream_id}] Not tracking duration {duration_ms!r}ms (unbounded or invalid)")
            return None
        duration_ms = int(duration_ms)
        entry = TrackerEntry(
            stream_id=stream_id,
            start_time=start_time,
            duration_ms=duration_ms,
            expected_end_time=start_time + timedelta(milliseconds=duration_ms),
            original_duration_ms=duration_ms,
        )
        with self._lock:
            self._entries[stream_id] = entry
        logger.debug(f"[{stream_id}] Tracking {duration_ms}ms, expected end {entry.expected_end_time.isoformat()}")
        return entry

    def get(self, stream_id) -> Optional[TrackerEntry]:
        with self._lock:
            return self._entries.get(stream_id)

    def remaining_ms(self, stream_id, now: Optional[datetime] = None) -> Optional[int]:
        entry = self.get(stream_id)
        if entry is None:
            return None
        now = now or self._clock()
        elapsed_ms = (now - entry.start_time).total_seconds() * 1000
        return max(0, int(entry.original_duration_ms - elapsed_ms))

    def duration_reached(self, stream_id, tolerance_s=0, now: Optional[datetime] = None) -> bool:
        entry = self.get(stream_id)
        if entry is None:
            return False
        now = now or self._clock()
        return now >= entry.expected_end_time - timedelta(seconds=tolerance_s)

    def clear(self, stream_id) -> bool:
        with self._lock:
            return self._entries.pop(stream_id, None) is not None

    def __contains__(self, stream_id):
        with self._lock:
            return stream_id in self._entries
