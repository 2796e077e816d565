"""Control surface used by the HTTP API and the CLI."""

import logging

from loopcaster.duration import resolve_duration_seconds
from loopcaster.models import format_timestamp, utcnow
from loopcaster.recurrence import next_run_at, validate_stream_config

logger = logging.getLogger(__name__)


class StreamService:

    def __init__(self, store, supervisor, tracker, clock=utcnow):
        self.store = store
        self.supervisor = supervisor
        self.tracker = tracker
        self._clock = clock

    def start_now(self, stream_id):
        self.store.require(stream_id)
        pid = self.supervisor.start(stream_id, trigger='manual')
        return self.get_runtime_status(stream_id, pid=pid)

    def stop_now(self, stream_id):
        self.store.require(stream_id)
        stopped = self.supervisor.stop(stream_id, reason='manual')
        return stopped, self.get_runtime_status(stream_id)

    def get_runtime_status(self, stream_id, pid=None):
        stream_config = self.store.require(stream_id)
        snapshot = self.supervisor.snapshot(stream_id)
        remaining_ms = self.tracker.remaining_ms(stream_id)
        return {
            'id': stream_config.id,
            'title': stream_config.title,
            'status': stream_config.status,
            'actual_start_time': format_timestamp(stream_config.actual_start_time),
            'remaining_seconds': None if remaining_ms is None else remaining_ms // 1000,
            'duration_seconds': resolve_duration_seconds(stream_config),
            'state': snapshot['state'],
            'pid': snapshot['pid'] or pid,
            'retry_count': snapshot['retry_count'],
            'process': snapshot['process'],
            'schedule_type': stream_config.schedule_type,
            'recurring_enabled': stream_config.recurring_enabled,
            'next_run_at': format_timestamp(stream_config.next_run_at),
            'last_run_at': format_timestamp(stream_config.last_run_at),
            'last_error': stream_config.last_error,
        }

    def list_runtime_status(self):
        return [self.get_runtime_status(c.id) for c in self.store.all()]

    def set_recurring_enabled(self, stream_id, enabled):
        """
        Toggles only recurring_enabled. Time of day and weekdays are left as
        they are so that re-enabling restores the same schedule.
        """
        with self.supervisor.lock_for(stream_id):
            stream_config = self.store.require(stream_id)
            if not stream_config.is_recurring:
                raise ValueError(f"Stream {stream_id} is a one-off stream, it has no recurring schedule")
            changes = {'recurring_enabled': bool(enabled)}
            if enabled:
                stream_config.recurring_enabled = True
                validate_stream_config(stream_config)
                changes['next_run_at'] = next_run_at(stream_config, self._clock(), self.supervisor.tz)
            updated = self.store.update(stream_id, **changes)
        logger.info(f"[{stream_id}] Recurring schedule {'enabled' if enabled else 'disabled'}")
        return updated

    def tail_log(self, stream_id, kind='log', lines=100):
        self.store.require(stream_id)
        return self.supervisor.tail_log(stream_id, kind, lines)
