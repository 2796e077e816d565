"""
Scheduler loop.

Every tick walks all stream configs twice over:

* start pass - one-off streams whose schedule_start has arrived and
  recurring streams whose daily/weekly slot has arrived are started, but
  only inside the trigger window [slot, slot + window]. A slot whose
  window has passed is a missed occurrence and is skipped.
* overrun pass - live streams still running more than the grace period
  past actual_start_time + resolved duration are force-stopped.

Start and stop calls run on their own threads so one slow encoder cannot
hold up the tick for every other stream.
"""

import logging
import threading
from datetime import timedelta, timezone

from loopcaster import config
from loopcaster.duration import resolve_duration_seconds
from loopcaster.errors import ConfigurationError, LoopCasterError, StreamAlreadyActiveError
from loopcaster.models import ScheduleType, StreamStatus, utcnow
from loopcaster.recurrence import (DUE, MISSED, SKIP, due_occurrence, missed_run_action, next_run_at,
                                   site_zone, validate_stream_config, window_state)

logger = logging.getLogger(__name__)


class Scheduler:

    def __init__(self, store, supervisor, clock=utcnow, tz=None, window=None, grace=None,
                 tick_seconds=None, recovery_window=None, inline=False):
        self.store = store
        self.supervisor = supervisor
        self._clock = clock
        self.tz = tz or site_zone()
        self.window = window if window is not None else timedelta(minutes=config.TRIGGER_WINDOW_MINUTES)
        self.grace = grace if grace is not None else timedelta(seconds=config.FORCE_STOP_GRACE_SECONDS)
        self.tick_seconds = tick_seconds or config.SCHEDULER_TICK_SECONDS
        self.recovery_window = (recovery_window if recovery_window is not None
                                else timedelta(minutes=config.MISSED_RECOVERY_WINDOW_MINUTES))
        self.inline = inline

        self._dispatched = {}  # (stream_id, slot in UTC) -> slot
        self._reported = {}    # stream_id -> last logged problem, so each is logged once
        self._stop_event = threading.Event()
        self._thread = None

    # --- dispatch ---

    def _dispatch(self, fn, *args):
        if self.inline:
            fn(*args)
            return
        threading.Thread(target=fn, args=args, daemon=True).start()

    def _start_stream(self, stream_id, trigger, key=None):
        try:
            self.supervisor.start(stream_id, trigger=trigger)
        except StreamAlreadyActiveError as e:
            logger.info(f"[{stream_id}] Scheduled start skipped: {e}")
        except ConfigurationError as e:
            logger.error(f"[{stream_id}] Scheduled start rejected, not retrying: {e}")
        except LoopCasterError as e:
            # Transient, so the occurrence may fire again on a later tick inside its window
            self._dispatched.pop(key, None)
            logger.error(f"[{stream_id}] Scheduled start failed, retrying next tick: {e}")

    def _stop_stream(self, stream_id, reason):
        self.supervisor.stop(stream_id, reason=reason)

    def _report_once(self, stream_id, message, level=logging.WARNING):
        if self._reported.get(stream_id) == message:
            return
        self._reported[stream_id] = message
        logger.log(level, f"[{stream_id}] {message}")

    def _trigger(self, stream_config, slot, trigger):
        """Dispatches a start for slot unless this slot was already dispatched."""
        key = (stream_config.id, slot.astimezone(timezone.utc).isoformat())
        if key in self._dispatched:
            return False
        self._dispatched[key] = slot
        logger.info(f"[{stream_config.id}] Triggering {trigger} start for slot {slot.isoformat()}")
        self._dispatch(self._start_stream, stream_config.id, trigger, key)
        return True

    def _forget_old_triggers(self, now):
        horizon = now - timedelta(days=2)
        for key, slot in list(self._dispatched.items()):
            if slot < horizon:
                del self._dispatched[key]

    # --- passes ---

    def _check_start(self, stream_config, now):
        if stream_config.status == StreamStatus.LIVE.value or self.supervisor.is_active(stream_config.id):
            return False
        try:
            validate_stream_config(stream_config)
        except ConfigurationError as e:
            self._report_once(stream_config.id, f"Invalid schedule, skipping: {e}", logging.ERROR)
            return False

        if stream_config.schedule_type == ScheduleType.ONCE.value:
            if stream_config.status != StreamStatus.SCHEDULED.value or stream_config.schedule_start is None:
                return False
            state = window_state(stream_config.schedule_start, now, self.window)
            if state == DUE:
                return self._trigger(stream_config, stream_config.schedule_start, 'schedule')
            if state == MISSED:
                self._report_once(stream_config.id,
                                  f"Missed one-off start at {stream_config.schedule_start.isoformat()} "
                                  f"(trigger window of {self.window} elapsed), skipping")
            return False

        if stream_config.status not in (StreamStatus.SCHEDULED.value, StreamStatus.OFFLINE.value):
            return False
        slot = due_occurrence(stream_config, now, self.tz, self.window)
        if slot is None:
            self._advance_stale_next_run(stream_config, now)
            return False
        return self._trigger(stream_config, slot, stream_config.schedule_type)

    def _advance_stale_next_run(self, stream_config, now):
        """
        Moves a past next_run_at forward once its occurrence can no longer
        fire, because it already ran that day or its window elapsed.
        """
        planned = stream_config.next_run_at
        if not stream_config.recurring_enabled or planned is None or planned > now:
            return
        fresh = next_run_at(stream_config, now, self.tz)
        logger.info(f"[{stream_config.id}] Occurrence at {planned.isoformat()} will not run, "
                    f"next run {fresh.isoformat()}")
        self.store.update(stream_config.id, next_run_at=fresh)

    def _check_overrun(self, stream_config, now):
        if stream_config.status != StreamStatus.LIVE.value or stream_config.actual_start_time is None:
            return False
        duration_s = resolve_duration_seconds(stream_config)
        if not duration_s:
            return False
        expected_end = stream_config.actual_start_time + timedelta(seconds=duration_s)
        overrun = now - expected_end
        if overrun <= self.grace:
            return False
        logger.warning(f"[{stream_config.id}] Overrun: still live {int(overrun.total_seconds())}s past expected "
                       f"end {expected_end.isoformat()}, force-stopping")
        self._dispatch(self._stop_stream, stream_config.id, 'overrun')
        return True

    def tick(self, now=None):
        """One scheduler pass over every stream config. Returns the ids acted on."""
        now = now or self._clock()
        summary = {'started': [], 'stopped': []}
        for stream_config in self.store.all():
            try:
                if self._check_start(stream_config, now):
                    summary['started'].append(stream_config.id)
                if self._check_overrun(stream_config, now):
                    summary['stopped'].append(stream_config.id)
            except Exception as e:
                logger.error(f"[{stream_config.id}] Scheduler check failed, retrying next tick: {e}", exc_info=True)
        self._forget_old_triggers(now)
        return summary

    def recover_missed_schedules(self, now=None):
        """
        Run once at service start. Recurring slots missed while the service
        was down are started now if still inside the recovery window and
        skipped otherwise; enabled recurring streams without a next_run_at
        get one.
        """
        now = now or self._clock()
        summary = {'started': [], 'skipped': [], 'initialised': []}
        for stream_config in self.store.all():
            if not stream_config.is_recurring or not stream_config.recurring_enabled:
                continue
            try:
                validate_stream_config(stream_config)
                if stream_config.next_run_at is None:
                    self.store.update(stream_config.id, next_run_at=next_run_at(stream_config, now, self.tz))
                    summary['initialised'].append(stream_config.id)
                    continue
                action = missed_run_action(stream_config, now, self.tz, self.recovery_window)
                if action == DUE:
                    if stream_config.status == StreamStatus.LIVE.value or self.supervisor.is_active(stream_config.id):
                        continue
                    logger.info(f"[{stream_config.id}] Recovering missed run planned for "
                                f"{stream_config.next_run_at.isoformat()}")
                    self._trigger(stream_config, stream_config.next_run_at, 'recovery')
                    summary['started'].append(stream_config.id)
                elif action == SKIP:
                    fresh = next_run_at(stream_config, now, self.tz)
                    logger.warning(f"[{stream_config.id}] Skipping stale run planned for "
                                   f"{stream_config.next_run_at.isoformat()}, next run {fresh.isoformat()}")
                    self.store.update(stream_config.id, next_run_at=fresh)
                    summary['skipped'].append(stream_config.id)
            except ConfigurationError as e:
                self._report_once(stream_config.id, f"Invalid schedule, skipping recovery: {e}", logging.ERROR)
            except Exception as e:
                logger.error(f"[{stream_config.id}] Missed-schedule recovery failed: {e}", exc_info=True)
        return summary

    # --- background loop ---

    def _run(self):
        logger.info(f"Scheduler loop started (tick {self.tick_seconds}s, window {self.window}, "
                    f"grace {self.grace}, timezone {self.tz})")
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in scheduler tick: {e}", exc_info=True)
            self._stop_event.wait(self.tick_seconds)
        logger.info("Scheduler loop stopped")

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name='scheduler', daemon=True)
        self._thread.start()

    def stop(self, timeout=5):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
