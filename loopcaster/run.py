#!/usr/bin/env python3
"""
LoopCaster service entry point.

Configures logging, wires the store, supervisor, scheduler and status
synchronizer together, reconciles state left over from the previous run
and serves the control API.
"""

import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler

from loopcaster import config
from loopcaster.app import create_app
from loopcaster.cleanup import periodic_cleanup_task
from loopcaster.media import MediaStore
from loopcaster.scheduler import Scheduler
from loopcaster.service import StreamService
from loopcaster.status_sync import StatusSynchronizer
from loopcaster.store import StreamStore
from loopcaster.supervisor import ProcessSupervisor
from loopcaster.tracker import DurationTracker

logger = logging.getLogger('loopcaster')


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=config.LOG_FORMAT
    )
    root_logger = logging.getLogger()

    if config.APP_LOG_FILE:
        os.makedirs(os.path.dirname(os.path.abspath(config.APP_LOG_FILE)), exist_ok=True)
        app_log_handler = RotatingFileHandler(
            config.APP_LOG_FILE,
            maxBytes=config.APP_LOG_MAX_BYTES,
            backupCount=config.APP_LOG_BACKUP_COUNT
        )
        app_log_handler.setFormatter(logging.Formatter(config.LOG_FORMAT))

        # Log to the file only, unless debugging
        if not config.DEBUG:
            for handler in root_logger.handlers[:]:
                if isinstance(handler, logging.StreamHandler) and handler.stream in [sys.stdout, sys.stderr]:
                    root_logger.removeHandler(handler)
        root_logger.addHandler(app_log_handler)
        root_logger.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))

    print(
        f"\n"
        f"****************************************************\n"
        f"* LoopCaster Runtime Files Location:\n"
        f"****************************************************\n"
        f"  Application Log:       {config.APP_LOG_FILE or 'console'}\n"
        f"  FFmpeg Logs Directory: {config.LOG_DIR}\n"
        f"  Crash Logs Directory:  {config.CRASH_LOG_DIR}\n"
        f"  PID Files Directory:   {config.PID_DIR}\n"
        f"  Stream Store:          {config.STREAM_STORE_FILE}\n"
        f"  Site Timezone:         {config.SITE_TIMEZONE}"
    )


def build_components():
    for d_path in [config.BASE_TMP_DIR, config.LOG_DIR, config.CRASH_LOG_DIR, config.PID_DIR,
                   config.PLAYLIST_DIR, config.DATA_DIR]:
        os.makedirs(d_path, exist_ok=True)

    store = StreamStore(config.STREAM_STORE_FILE)
    tracker = DurationTracker()
    supervisor = ProcessSupervisor(store, MediaStore(config.MEDIA_DIR), tracker)
    scheduler = Scheduler(store, supervisor)
    synchronizer = StatusSynchronizer(store, supervisor)
    service = StreamService(store, supervisor, tracker)
    return store, supervisor, scheduler, synchronizer, service


def main():
    errors = config.validate_config()
    if errors:
        for error in errors:
            print(f"Configuration error: {error}", file=sys.stderr)
        sys.exit(1)

    configure_logging()
    store, supervisor, scheduler, synchronizer, service = build_components()

    # Streams left "live" by a previous run have no process here any more
    synchronizer.sync()
    scheduler.recover_missed_schedules()

    scheduler.start()
    synchronizer.start()

    cleanup_stop = threading.Event()
    if config.ENABLE_PERIODIC_CLEANUP:
        threading.Thread(target=periodic_cleanup_task, args=(supervisor, cleanup_stop),
                         name='cleanup', daemon=True).start()

    shutdown_lock = threading.Lock()
    shutdown_done = []

    def shutdown():
        with shutdown_lock:
            if shutdown_done:
                return
            shutdown_done.append(True)
        logger.info("Shutting down: stopping scheduler and all supervised streams...")
        cleanup_stop.set()
        scheduler.stop()
        synchronizer.stop()
        supervisor.shutdown()
        logger.info("Shutdown complete.")

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    atexit.register(shutdown)

    app = create_app(service)
    logger.info(f"Serving control API on {config.HOST}:{config.PORT}")
    app.run(debug=config.DEBUG, host=config.HOST, port=config.PORT, use_reloader=False)


if __name__ == '__main__':
    main()
