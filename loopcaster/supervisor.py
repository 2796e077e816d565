"""
Process supervisor: owns the FFmpeg process of every live stream.

Per stream id the supervisor moves through

    IDLE -> STARTING -> RUNNING -> STOPPING -> IDLE
                        RUNNING -> RESTARTING -> RUNNING

Every transition for one id happens under that id's lock, so a user stop,
a scheduler overrun stop and the monitor thread seeing the process exit
can race freely: whichever gets the lock first does the work and the
others find nothing left to do.
"""

import logging
import threading
import time
from enum import Enum

from loopcaster import config
from loopcaster.duration import format_duration, resolve_duration_seconds
from loopcaster.encode_plan import build_command, build_encode_plan, format_command, write_concat_file
from loopcaster.errors import ConfigurationError, SpawnError, StreamAlreadyActiveError, StreamNotFoundError
from loopcaster.models import StreamStatus, utcnow
from loopcaster.process import EncoderProcess, process_stats
from loopcaster.recurrence import next_run_at, site_zone, validate_stream_config
from loopcaster.streamlog import (LOG_KINDS, close_stream_log, ensure_dirs, read_log_tail,
                                  remove_pid_file, save_crash_report, stream_log, stream_paths,
                                  write_pid_file)

logger = logging.getLogger(__name__)


class State(str, Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    RUNNING = 'running'
    RESTARTING = 'restarting'
    STOPPING = 'stopping'


def status_after_end(stream_config):
    """Recurring streams wait for their next slot; everything else goes offline."""
    if stream_config.is_recurring and stream_config.recurring_enabled:
        return StreamStatus.SCHEDULED.value
    return StreamStatus.OFFLINE.value


class _Handle:
    def __init__(self, stream_id, paths):
        self.stream_id = stream_id
        self.paths = paths
        self.state = State.STARTING
        self.process = None
        self.command_line = None
        self.monitor = None
        self.stop_event = threading.Event()
        self.restart_timer = None
        self.retry_count = 0
        self.duration_s = None
        self.started_at = None


class ProcessSupervisor:

    def __init__(self, store, media, tracker, clock=utcnow, launcher=EncoderProcess.spawn, tz=None,
                 max_restarts=None, restart_backoff=None, confirm_seconds=None, stop_grace=None,
                 tolerance_seconds=None, monitor_interval=None, min_restart_remaining=None,
                 watch=True):
        self.store = store
        self.media = media
        self.tracker = tracker
        self._clock = clock
        self._launcher = launcher
        self.tz = tz or site_zone()
        self.max_restarts = config.MAX_RESTART_ATTEMPTS if max_restarts is None else max_restarts
        self.restart_backoff = config.RESTART_BACKOFF_SECONDS if restart_backoff is None else restart_backoff
        self.confirm_seconds = config.SPAWN_CONFIRM_SECONDS if confirm_seconds is None else confirm_seconds
        self.stop_grace = config.STOP_GRACE_SECONDS if stop_grace is None else stop_grace
        self.tolerance_seconds = config.DURATION_TOLERANCE_SECONDS if tolerance_seconds is None else tolerance_seconds
        self.monitor_interval = config.MONITOR_POLL_SECONDS if monitor_interval is None else monitor_interval
        self.min_restart_remaining = (config.MIN_RESTART_REMAINING_SECONDS
                                      if min_restart_remaining is None else min_restart_remaining)
        self.watch = watch

        self._handles = {}
        self._locks = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, stream_id):
        with self._registry_lock:
            return self._locks.setdefault(stream_id, threading.RLock())

    # --- queries ---

    def is_active(self, stream_id):
        return stream_id in self._handles

    def active_ids(self):
        return list(self._handles.keys())

    def state_of(self, stream_id):
        handle = self._handles.get(stream_id)
        return handle.state if handle else State.IDLE

    def snapshot(self, stream_id):
        handle = self._handles.get(stream_id)
        if handle is None:
            return {'state': State.IDLE.value, 'pid': None, 'retry_count': 0, 'process': None}
        pid = handle.process.pid if handle.process else None
        return {
            'state': handle.state.value,
            'pid': pid,
            'retry_count': handle.retry_count,
            'process': process_stats(pid) if pid else None,
        }

    def tail_log(self, stream_id, kind='log', lines=100):
        if kind not in LOG_KINDS:
            raise ValueError(f"Unknown log type {kind!r}, expected one of {sorted(LOG_KINDS)}")
        return read_log_tail(stream_paths(stream_id)[LOG_KINDS[kind]], lines)

    # --- start ---

    def start(self, stream_id, trigger='manual'):
        """Starts the stream's encoder and returns its pid once it is confirmed running."""
        with self.lock_for(stream_id):
            handle = self._handles.get(stream_id)
            if handle is not None:
                raise StreamAlreadyActiveError(stream_id, handle.state.value)

            stream_config = self.store.require(stream_id)
            validate_stream_config(stream_config)
            duration_s = resolve_duration_seconds(stream_config)
            paths = stream_paths(stream_id)
            plan = self._plan(stream_config, paths, duration_s)

            handle = _Handle(stream_id, paths)
            self._handles[stream_id] = handle
            try:
                self._spawn(handle, stream_config, plan)
            except SpawnError:
                self._handles.pop(stream_id, None)
                close_stream_log(stream_id, handle.paths)
                raise

            now = self._clock()
            handle.duration_s = duration_s
            handle.started_at = now
            if duration_s:
                self.tracker.set(stream_id, now, duration_s * 1000)

            changes = dict(status=StreamStatus.LIVE, actual_start_time=now, stopped_at=None,
                           pid=handle.process.pid, last_error=None)
            if stream_config.is_recurring:
                changes.update(last_run_at=now, next_run_at=next_run_at(stream_config, now, self.tz))
            try:
                self.store.update(stream_id, **changes)
            except Exception:
                stream_log(stream_id, handle.paths, "Could not record live status, stopping encoder", logging.ERROR)
                handle.process.stop(self.stop_grace)
                self.tracker.clear(stream_id)
                self._handles.pop(stream_id, None)
                remove_pid_file(handle.paths)
                close_stream_log(stream_id, handle.paths)
                raise

            handle.state = State.RUNNING
            stream_log(stream_id, handle.paths,
                       f"Live ({trigger}), PID {handle.process.pid}, duration {format_duration(duration_s)}")
            self._watch(handle)
            return handle.process.pid

    def _plan(self, stream_config, paths, duration_s):
        media_paths = self.media.paths_for(stream_config)
        plan = build_encode_plan(stream_config, media_paths, duration_s, concat_file=paths['concat_file'])
        if stream_config.is_playlist:
            try:
                ensure_dirs(paths)
                write_concat_file(paths['concat_file'], media_paths.playlist, shuffle=stream_config.shuffle)
            except OSError as e:
                raise SpawnError(f"Could not write playlist {paths['concat_file']}: {e}") from e
        return plan

    def _spawn(self, handle, stream_config, plan):
        ensure_dirs(handle.paths)
        command = build_command(plan)
        handle.command_line = format_command(command, stream_config.stream_key)
        stream_log(handle.stream_id, handle.paths, f"Starting. Cmd: {handle.command_line}")
        try:
            process = self._launcher(command, handle.paths)
        except OSError as e:
            save_crash_report(handle.stream_id, handle.paths, handle.command_line, -1, f"Popen fail: {e}")
            raise SpawnError(f"FFmpeg could not be launched: {e}") from e
        write_pid_file(handle.paths, process.pid)

        if self.confirm_seconds > 0:
            time.sleep(self.confirm_seconds)
        rc = process.poll()
        if rc is not None:
            process.close()
            remove_pid_file(handle.paths)
            save_crash_report(handle.stream_id, handle.paths, handle.command_line, rc, "FFmpeg died immediately")
            raise SpawnError(f"FFmpeg exited during startup (code {rc})", rc)
        handle.process = process

    def _watch(self, handle):
        if not self.watch:
            return
        handle.monitor = threading.Thread(target=self._monitor, args=(handle, handle.process),
                                          name=f"monitor-{handle.stream_id}", daemon=True)
        handle.monitor.start()

    def _monitor(self, handle, process):
        stream_log(handle.stream_id, handle.paths, f"Monitor started (PID {process.pid}).")
        try:
            while not handle.stop_event.is_set():
                rc = process.poll()
                if rc is not None:
                    self.handle_exit(handle.stream_id, rc, process=process)
                    return
                handle.stop_event.wait(self.monitor_interval)
        except Exception as e:
            logger.exception(f"[{handle.stream_id}] Monitor error (PID {process.pid}): {e}")

    # --- exit handling ---

    def handle_exit(self, stream_id, returncode, process=None):
        """Classifies an encoder exit and either restarts it or concludes the stream."""
        with self.lock_for(stream_id):
            handle = self._handles.get(stream_id)
            if handle is None or handle.state != State.RUNNING or handle.stop_event.is_set():
                return
            if process is not None and handle.process is not process:
                return

            handle.process.close()
            handle.process = None
            remove_pid_file(handle.paths)
            now = self._clock()
            elapsed = (now - handle.started_at).total_seconds() if handle.started_at else 0.0
            stream_log(stream_id, handle.paths, f"Exited (code {returncode}) after {elapsed:.1f}s.")

            if self.tracker.duration_reached(stream_id, self.tolerance_seconds, now):
                self._conclude(handle, f"duration reached (code {returncode})")
            elif returncode == 0:
                if stream_id in self.tracker:
                    remaining = (self.tracker.remaining_ms(stream_id, now) or 0) // 1000
                    stream_log(stream_id, handle.paths,
                               f"Exited cleanly with {format_duration(remaining)} still scheduled; not restarting",
                               logging.WARNING)
                self._conclude(handle, "encoder finished")
            else:
                self._on_crash(handle, returncode)

    def _on_crash(self, handle, returncode):
        stream_id = handle.stream_id
        handle.process = None
        remaining_ms = self.tracker.remaining_ms(stream_id)

        if handle.retry_count >= self.max_restarts:
            report = save_crash_report(stream_id, handle.paths, handle.command_line, returncode,
                                       f"FFmpeg crashed, {handle.retry_count} restarts exhausted")
            self._conclude(handle, "restart attempts exhausted",
                           error=f"FFmpeg crashed (code {returncode}) after {handle.retry_count} restarts. "
                                 f"Report: {report}")
            return
        if remaining_ms is not None and remaining_ms < self.min_restart_remaining * 1000:
            stream_log(stream_id, handle.paths,
                       f"Crashed (code {returncode}) with only {remaining_ms // 1000}s left; not restarting")
            self._conclude(handle, "crashed near scheduled end")
            return

        save_crash_report(stream_id, handle.paths, handle.command_line, returncode,
                          f"FFmpeg crashed, restart {handle.retry_count + 1}/{self.max_restarts}")
        handle.retry_count += 1
        handle.state = State.RESTARTING
        stream_log(stream_id, handle.paths,
                   f"Crashed (code {returncode}); restart {handle.retry_count}/{self.max_restarts} "
                   f"in {self.restart_backoff}s", logging.WARNING)
        if self.restart_backoff > 0:
            handle.restart_timer = threading.Timer(self.restart_backoff, self._restart, args=(stream_id, handle))
            handle.restart_timer.daemon = True
            handle.restart_timer.start()
        else:
            self._restart(stream_id, handle)

    def _restart(self, stream_id, handle):
        with self.lock_for(stream_id):
            if self._handles.get(stream_id) is not handle or handle.state != State.RESTARTING:
                return
            handle.restart_timer = None

            remaining_ms = self.tracker.remaining_ms(stream_id)
            duration_s = None if remaining_ms is None else remaining_ms // 1000
            if duration_s == 0:
                self._conclude(handle, "duration reached while restarting")
                return
            try:
                stream_config = self.store.require(stream_id)
                plan = self._plan(stream_config, handle.paths, duration_s)
                self._spawn(handle, stream_config, plan)
            except (ConfigurationError, StreamNotFoundError) as e:
                self._conclude(handle, "restart impossible", error=str(e))
                return
            except SpawnError as e:
                self._on_crash(handle, e.returncode if e.returncode is not None else -1)
                return

            try:
                self.store.update(stream_id, pid=handle.process.pid)
            except Exception as e:
                stream_log(stream_id, handle.paths, f"Could not record restarted PID {handle.process.pid}, "
                                                    f"stopping encoder: {e}", logging.ERROR)
                handle.process.stop(self.stop_grace)
                handle.process = None
                self._conclude(handle, "restart could not be recorded", error=f"Restart failed: {e}")
                return

            handle.duration_s = duration_s
            handle.started_at = self._clock()
            handle.state = State.RUNNING
            stream_log(stream_id, handle.paths,
                       f"Restarted, PID {handle.process.pid}, remaining {format_duration(duration_s)}")
            self._watch(handle)

    # --- stop ---

    def _conclude(self, handle, reason, error=None):
        """Terminal transition to IDLE. Caller holds the stream's lock."""
        stream_id = handle.stream_id
        handle.state = State.IDLE
        handle.stop_event.set()
        if handle.restart_timer is not None:
            handle.restart_timer.cancel()
            handle.restart_timer = None
        self.tracker.clear(stream_id)
        self._handles.pop(stream_id, None)
        remove_pid_file(handle.paths)

        stream_config = self.store.get(stream_id)
        if stream_config is not None:
            changes = dict(status=status_after_end(stream_config), pid=None)
            if error:
                changes['last_error'] = error
            self.store.update(stream_id, **changes)
        stream_log(stream_id, handle.paths, f"Stopped: {reason}",
                   logging.ERROR if error else logging.INFO)
        close_stream_log(stream_id, handle.paths)

    def stop(self, stream_id, reason='manual'):
        """
        Stops the stream's encoder and concludes the stream. Safe to call any
        number of times from any thread; returns False when there was
        nothing to stop.
        """
        with self.lock_for(stream_id):
            handle = self._handles.get(stream_id)
            if handle is None:
                self.tracker.clear(stream_id)
                return False
            handle.state = State.STOPPING
            handle.stop_event.set()
            if handle.restart_timer is not None:
                handle.restart_timer.cancel()
            process = handle.process
            if process is not None:
                level = logging.WARNING if reason == 'overrun' else logging.INFO
                stream_log(stream_id, handle.paths, f"Stop requested ({reason}), PID {process.pid}", level)
                rc = process.stop(self.stop_grace)
                stream_log(stream_id, handle.paths, f"PID {process.pid} ended with code {rc}")
            self._conclude(handle, reason)

        monitor = handle.monitor
        if monitor is not None and monitor is not threading.current_thread():
            monitor.join(timeout=self.monitor_interval + 1)
        return True

    def shutdown(self):
        active = self.active_ids()
        if active:
            logger.info(f"Stopping {len(active)} supervised stream(s) for shutdown")
        for stream_id in active:
            try:
                self.stop(stream_id, reason='shutdown')
            except Exception as e:
                logger.error(f"[{stream_id}] Error stopping stream during shutdown: {e}", exc_info=True)
