import logging
import threading

from loopcaster import config
from loopcaster.models import StreamStatus
from loopcaster.process import find_encoder, stop_orphan
from loopcaster.supervisor import State, status_after_end

logger = logging.getLogger(__name__)


class StatusSynchronizer:
    """
    Reconciles stored stream status with the processes the supervisor
    actually holds. A stream marked live with no supervised process (for
    instance after the service itself was restarted) is corrected, and
    any encoder still pushing to its stream key is terminated first.
    """

    def __init__(self, store, supervisor, interval_seconds=None, stop_grace=None):
        self.store = store
        self.supervisor = supervisor
        self.interval_seconds = interval_seconds or config.STATUS_SYNC_INTERVAL_SECONDS
        self.stop_grace = config.STOP_GRACE_SECONDS if stop_grace is None else stop_grace
        self._stop_event = threading.Event()
        self._thread = None

    def sync(self):
        corrected = []
        for stream_config in self.store.all():
            try:
                if self._sync_one(stream_config):
                    corrected.append(stream_config.id)
            except Exception as e:
                logger.error(f"[{stream_config.id}] Status sync failed: {e}", exc_info=True)
        if corrected:
            logger.info(f"Status sync corrected {len(corrected)} stream(s): {', '.join(corrected)}")
        return corrected

    def _sync_one(self, stream_config):
        stream_id = stream_config.id
        with self.supervisor.lock_for(stream_id):
            # Re-read under the lock; the listing may predate a start or stop
            stream_config = self.store.get(stream_id)
            if stream_config is None:
                return False
            return self._reconcile(stream_config)

    def _reconcile(self, stream_config):
        stream_id = stream_config.id
        active = self.supervisor.is_active(stream_id)

        if stream_config.status == StreamStatus.LIVE.value and not active:
            orphan = find_encoder(stream_config.pid, stream_config.stream_key)
            if orphan is not None:
                logger.warning(f"[{stream_id}] Terminating unsupervised encoder PID {orphan.pid}")
                stop_orphan(orphan, self.stop_grace)
            new_status = status_after_end(stream_config)
            logger.warning(f"[{stream_id}] Marked live but no encoder is supervised, setting {new_status}")
            self.store.update(stream_id, status=new_status, pid=None)
            return True

        if active and stream_config.status != StreamStatus.LIVE.value \
                and self.supervisor.state_of(stream_id) == State.RUNNING:
            logger.warning(f"[{stream_id}] Encoder running but status is {stream_config.status}, setting live")
            self.store.update(stream_id, status=StreamStatus.LIVE)
            return True
        return False

    def _run(self):
        logger.info(f"Status synchronizer started (every {self.interval_seconds}s)")
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sync()
            except Exception as e:
                logger.error(f"Error in status synchronizer: {e}", exc_info=True)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='status-sync', daemon=True)
        self._thread.start()

    def stop(self, timeout=5):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
