"""Retention for encoder output files and crash reports."""

import glob
import logging
import os
import time

from loopcaster import config

logger = logging.getLogger(__name__)


def _protected(path, keep_ids):
    name = os.path.basename(path)
    return any(name.startswith(f"ffmpeg_{stream_id}.") or name.startswith(f"ffmpeg_{stream_id}_")
               for stream_id in keep_ids)


def delete_old_files(directory, retention_days, pattern="*", keep_ids=(), now=None):
    if not os.path.isdir(directory):
        logger.warning(f"Cleanup: Directory not found {directory}")
        return 0, 0  # deleted_count, deleted_size

    now = now or time.time()
    deleted_count = 0
    deleted_size = 0

    for file_path in glob.glob(os.path.join(directory, pattern)):
        if not os.path.isfile(file_path) or _protected(file_path, keep_ids):
            continue
        try:
            stat_info = os.stat(file_path)
            if (now - stat_info.st_mtime) > (retention_days * 86400):
                os.remove(file_path)
                deleted_count += 1
                deleted_size += stat_info.st_size
                logger.debug(f"Cleanup: Deleted old file {file_path} (age: {(now - stat_info.st_mtime)/86400:.1f} days)")
        except OSError as e:
            logger.error(f"Cleanup: Error deleting file {file_path}: {e}")
    if deleted_count > 0:
        logger.info(f"Cleanup: Deleted {deleted_count} files from {directory} (pattern: {pattern}), "
                    f"freeing {deleted_size / (1024*1024):.2f} MB by age.")
    return deleted_count, deleted_size


def enforce_max_dir_size(directory, max_size_mb, pattern="*", keep_ids=()):
    if not os.path.isdir(directory):
        logger.warning(f"Cleanup: Directory not found for size enforcement {directory}")
        return 0, 0

    max_size_bytes = max_size_mb * 1024 * 1024
    total_size_bytes = 0
    files_with_mtime = []

    for file_path in glob.glob(os.path.join(directory, pattern)):
        try:
            if os.path.isfile(file_path):
                stat_info = os.stat(file_path)
                total_size_bytes += stat_info.st_size
                if not _protected(file_path, keep_ids):
                    files_with_mtime.append((file_path, stat_info.st_mtime, stat_info.st_size))
        except OSError as e:
            logger.error(f"Cleanup: Error statting file {file_path} for size enforcement: {e}")

    if total_size_bytes <= max_size_bytes:
        return 0, 0

    logger.info(f"Cleanup: {directory} is {total_size_bytes / (1024*1024):.2f} MB, over the {max_size_mb} MB limit. "
                f"Deleting oldest files...")
    files_with_mtime.sort(key=lambda x: x[1])  # Oldest first
    amount_to_free = total_size_bytes - max_size_bytes
    deleted_count = 0
    freed = 0
    for file_path, _, size in files_with_mtime:
        if freed >= amount_to_free:
            break
        try:
            os.remove(file_path)
            freed += size
            deleted_count += 1
        except OSError as e:
            logger.error(f"Cleanup: Error deleting file {file_path} for size enforcement: {e}")
    logger.info(f"Cleanup: Size enforcement deleted {deleted_count} files from {directory}, "
                f"freeing {freed / (1024*1024):.2f} MB.")
    return deleted_count, freed


def run_cleanup(keep_ids=()):
    keep_ids = list(keep_ids)
    delete_old_files(config.LOG_DIR, config.LOG_RETENTION_DAYS, "ffmpeg_*.out", keep_ids)
    delete_old_files(config.LOG_DIR, config.LOG_RETENTION_DAYS, "ffmpeg_*.err", keep_ids)
    delete_old_files(config.LOG_DIR, config.LOG_RETENTION_DAYS, "ffmpeg_*.log.*", keep_ids)
    delete_old_files(config.CRASH_LOG_DIR, config.CRASH_LOG_RETENTION_DAYS, "*.log", keep_ids)
    delete_old_files(config.PLAYLIST_DIR, config.LOG_RETENTION_DAYS, "ffmpeg_*.txt", keep_ids)
    enforce_max_dir_size(config.LOG_DIR, config.MAX_LOG_DIR_SIZE_MB, "*", keep_ids)


def periodic_cleanup_task(supervisor, stop_event):
    logger.info("Periodic cleanup task starting its loop.")
    interval = config.CLEANUP_INTERVAL_HOURS * 3600
    while not stop_event.is_set():
        try:
            run_cleanup(keep_ids=supervisor.active_ids())
        except Exception as e:
            logger.error(f"Error in periodic cleanup task: {e}", exc_info=True)
        stop_event.wait(interval)
