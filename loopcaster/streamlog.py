"""Per-stream runtime files: wrapper log, encoder output, pid file and crash reports."""

import logging
import os
import platform
import time
from logging.handlers import RotatingFileHandler

import psutil

from loopcaster import config

logger = logging.getLogger(__name__)

_stream_log_handlers = {}  # Cache for RotatingFileHandlers for stream logs

LOG_KINDS = {'log': 'log_file', 'out': 'out_file', 'err': 'err_file'}


def stream_paths(stream_id, log_dir=None, pid_dir=None, crash_dir=None, playlist_dir=None):
    log_dir = log_dir or config.LOG_DIR
    pid_dir = pid_dir or config.PID_DIR
    crash_dir = crash_dir or config.CRASH_LOG_DIR
    playlist_dir = playlist_dir or config.PLAYLIST_DIR
    return {k: os.path.join(d, f"ffmpeg_{stream_id}{ext}") for k, d, ext in [
        ('log_file', log_dir, ".log"), ('out_file', log_dir, ".out"), ('err_file', log_dir, ".err"),
        ('pid_file', pid_dir, ".pid"), ('crash_report_file', crash_dir, "_crash.log"),
        ('concat_file', playlist_dir, ".txt")]}


def ensure_dirs(paths):
    for path in paths.values():
        os.makedirs(os.path.dirname(path), exist_ok=True)


def _get_stream_log_handler(log_file_path):
    if log_file_path not in _stream_log_handlers:
        handler = RotatingFileHandler(
            log_file_path,
            maxBytes=config.STREAM_LOG_MAX_BYTES,
            backupCount=config.STREAM_LOG_BACKUP_COUNT
        )
        handler.setFormatter(logging.Formatter('%(asctime)s - %(message)s'))  # Simpler format for stream logs
        _stream_log_handlers[log_file_path] = handler
    return _stream_log_handlers[log_file_path]


def stream_log(stream_id, paths, msg, level=logging.INFO):
    """Writes msg to the stream's own log file and mirrors it to the module logger."""
    logger.log(level, f"[{stream_id}] {msg}")
    log_file_path = paths.get('log_file')
    if not log_file_path:
        return
    try:
        handler = _get_stream_log_handler(log_file_path)
        stream_logger = logging.getLogger(f"stream.{stream_id}")
        if handler not in stream_logger.handlers:
            stream_logger.addHandler(handler)
            stream_logger.setLevel(logging.INFO)
            stream_logger.propagate = False  # Already mirrored above
        stream_logger.log(level, msg)
    except OSError as e:
        logger.error(f"[{stream_id}] Error writing to stream log {log_file_path}: {e}")


def close_stream_log(stream_id, paths):
    handler = _stream_log_handlers.pop(paths.get('log_file'), None)
    if handler is not None:
        logging.getLogger(f"stream.{stream_id}").removeHandler(handler)
        handler.close()


def read_log_tail(file_path, num_lines):
    try:
        if not os.path.exists(file_path):
            return [f"Log file {file_path} not found."]
        with open(file_path, 'r', errors='replace') as f:
            lines = f.readlines()
        return [l.rstrip('\n') for l in lines[-num_lines:]]
    except OSError as e:
        return [f"Error reading {file_path}: {e}"]


def write_pid_file(paths, pid):
    try:
        with open(paths['pid_file'], 'w') as f:
            f.write(str(pid))
    except OSError as e:
        logger.warning(f"Could not write pid file {paths['pid_file']}: {e}")


def remove_pid_file(paths):
    try:
        os.remove(paths['pid_file'])
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove pid file {paths['pid_file']}: {e}")


def _system_info():
    lines = []
    try:
        lines.append(f"Kernel: {' '.join(platform.uname())}")
        if hasattr(os, 'getloadavg'):
            lines.append("Load: " + " ".join(f"{v:.2f}" for v in os.getloadavg()))
        mem = psutil.virtual_memory()
        lines.append(f"Memory: {mem.available / (1024 * 1024):.0f} MB available of {mem.total / (1024 * 1024):.0f} MB")
    except (OSError, psutil.Error) as e:
        lines.append(f"Sys Info Error: {e}")
    return lines


def save_crash_report(stream_id, paths, command_line, code, reason="Unknown"):
    report = [f"FFmpeg Crash: {stream_id} @ {time.strftime('%Y-%m-%d %H:%M:%S')}",
              f"Code: {code}, Reason: {reason}", f"Cmd: {command_line}", ""]
    for desc, key, n_lines in [("Wrapper", 'log_file', 50), ("STDOUT", 'out_file', 50), ("STDERR", 'err_file', 100)]:
        report.append(f"--- {desc} (last {n_lines}) ---")
        report.extend(read_log_tail(paths.get(key, ''), n_lines))
        report.append("")
    report.append("--- System Info ---")
    report.extend(_system_info())
    try:
        with open(paths['crash_report_file'], 'w') as f:
            f.write("\n".join(report))
        stream_log(stream_id, paths, f"Crash report: {paths['crash_report_file']}")
    except OSError as e:
        stream_log(stream_id, paths, f"Error saving crash report: {e}", logging.ERROR)
    return paths['crash_report_file']
