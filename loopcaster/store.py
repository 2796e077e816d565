"""
JSON-file persistence for StreamConfig records.

The whole store is one JSON object keyed by stream id. Before each write
the previous file is copied to <file>.backup, and a primary file that
fails to parse is replaced on read by the backup's content.
"""

import json
import logging
import os
import shutil
import threading
from typing import Dict, List, Optional

from loopcaster import config
from loopcaster.errors import StreamNotFoundError
from loopcaster.models import StreamConfig, StreamStatus, utcnow

logger = logging.getLogger(__name__)


class StreamStore:

    def __init__(self, path=None, clock=utcnow):
        self.path = path or config.STREAM_STORE_FILE
        self.backup_path = f"{self.path}.backup"
        self._clock = clock
        self._lock = threading.RLock()

    # --- file access ---

    def _read_file(self, path) -> Dict[str, dict]:
        with open(path, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object in {path}, got {type(data).__name__}")
        return data

    def _load_raw(self) -> Dict[str, dict]:
        if not os.path.exists(self.path):
            return {}
        try:
            return self._read_file(self.path)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load stream store {self.path}: {e}")
            if not os.path.exists(self.backup_path):
                raise
            logger.info(f"Attempting to load from backup file {self.backup_path}")
            return self._read_file(self.backup_path)

    def _write_raw(self, data: Dict[str, dict]):
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        if os.path.exists(self.path):
            shutil.copy2(self.path, self.backup_path)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    # --- queries ---

    def all(self) -> List[StreamConfig]:
        with self._lock:
            raw = self._load_raw()
        configs = []
        for stream_id, record in raw.items():
            try:
                configs.append(StreamConfig.from_dict(dict(record, id=stream_id)))
            except (TypeError, ValueError) as e:
                logger.error(f"[{stream_id}] Skipping unreadable stream record: {e}")
        return configs

    def get(self, stream_id) -> Optional[StreamConfig]:
        with self._lock:
            record = self._load_raw().get(stream_id)
        if record is None:
            return None
        return StreamConfig.from_dict(dict(record, id=stream_id))

    def require(self, stream_id) -> StreamConfig:
        stream_config = self.get(stream_id)
        if stream_config is None:
            raise StreamNotFoundError(stream_id)
        return stream_config

    def find_by_status(self, *statuses) -> List[StreamConfig]:
        wanted = {getattr(s, 'value', s) for s in statuses}
        return [c for c in self.all() if c.status in wanted]

    # --- writes ---

    def save(self, stream_config: StreamConfig) -> StreamConfig:
        with self._lock:
            raw = self._load_raw()
            raw[stream_config.id] = stream_config.to_dict()
            self._write_raw(raw)
        logger.debug(f"[{stream_config.id}] Saved stream config")
        return stream_config

    def update(self, stream_id, **changes) -> StreamConfig:
        """Applies field changes to one record and returns the updated config."""
        with self._lock:
            stream_config = self.require(stream_id)
            for name, value in changes.items():
                if not hasattr(stream_config, name):
                    raise AttributeError(f"StreamConfig has no field {name!r}")
                setattr(stream_config, name, getattr(value, 'value', value))
            status = changes.get('status')
            if status is not None:
                status = getattr(status, 'value', status)
                if status == StreamStatus.SCHEDULED.value and 'actual_start_time' not in changes:
                    stream_config.actual_start_time = None
                if status == StreamStatus.OFFLINE.value and 'stopped_at' not in changes:
                    stream_config.stopped_at = self._clock()
            self.save(stream_config)
        return stream_config
