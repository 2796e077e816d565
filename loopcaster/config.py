# LoopCaster Configuration

import os
import platform
import tempfile

# Detect operating system
SYSTEM = platform.system().lower()
IS_WINDOWS = SYSTEM == 'windows'

# Base paths
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Runtime directories - OS-specific temp directories
if IS_WINDOWS:
    DEFAULT_TMP_DIR = os.path.join(tempfile.gettempdir(), 'loopcaster')
else:
    DEFAULT_TMP_DIR = '/tmp/loopcaster'

BASE_TMP_DIR = os.environ.get('LOOPCASTER_TMP_DIR', DEFAULT_TMP_DIR)
LOG_DIR = os.path.join(BASE_TMP_DIR, "ffmpeg_logs")
CRASH_LOG_DIR = os.path.join(BASE_TMP_DIR, "crash_logs")
PID_DIR = os.path.join(BASE_TMP_DIR, "pids")
PLAYLIST_DIR = os.path.join(BASE_TMP_DIR, "playlists")  # Concat lists for playlist streams

# Stream configurations survive reboots, so they live outside the tmp dir
DATA_DIR = os.environ.get('LOOPCASTER_DATA_DIR', os.path.join(BASE_DIR, 'data'))
STREAM_STORE_FILE = os.environ.get('STREAM_STORE_FILE', os.path.join(DATA_DIR, "streams.json"))
MEDIA_DIR = os.environ.get('LOOPCASTER_MEDIA_DIR', os.path.join(BASE_DIR, 'media'))

# Server configuration
HOST = os.environ.get('LOOPCASTER_HOST', '0.0.0.0')
PORT = int(os.environ.get('LOOPCASTER_PORT', '5000'))
DEBUG = os.environ.get('LOOPCASTER_DEBUG', 'False').lower() == 'true'

# FFmpeg invocation
FFMPEG_BINARY = os.environ.get('FFMPEG_BINARY', 'ffmpeg')
ENCODER_THREADS = int(os.environ.get('ENCODER_THREADS', '2'))  # Per stream, keeps parallel streams from starving each other
THREAD_QUEUE_SIZE = int(os.environ.get('THREAD_QUEUE_SIZE', '512'))
MAX_MUXING_QUEUE_SIZE = int(os.environ.get('MAX_MUXING_QUEUE_SIZE', '1024'))
OUTPUT_BUFFER_SIZE = os.environ.get('OUTPUT_BUFFER_SIZE', '4000k')
AUDIO_BITRATE = os.environ.get('AUDIO_BITRATE', '128k')
AUDIO_SAMPLE_RATE = int(os.environ.get('AUDIO_SAMPLE_RATE', '44100'))
RECONNECT_DELAY_MAX = int(os.environ.get('RECONNECT_DELAY_MAX', '5'))  # Seconds

# Re-encode mode (streams with use_advanced_settings)
X264_PRESET = os.environ.get('X264_PRESET', 'ultrafast')
DEFAULT_VIDEO_BITRATE = int(os.environ.get('DEFAULT_VIDEO_BITRATE', '2500'))  # kbps
DEFAULT_RESOLUTION = os.environ.get('DEFAULT_RESOLUTION', '1280x720')
DEFAULT_FPS = int(os.environ.get('DEFAULT_FPS', '30'))

# Scheduler policy
SCHEDULER_TICK_SECONDS = int(os.environ.get('SCHEDULER_TICK_SECONDS', '30'))
TRIGGER_WINDOW_MINUTES = int(os.environ.get('TRIGGER_WINDOW_MINUTES', '5'))
FORCE_STOP_GRACE_SECONDS = int(os.environ.get('FORCE_STOP_GRACE_SECONDS', '90'))
STATUS_SYNC_INTERVAL_SECONDS = int(os.environ.get('STATUS_SYNC_INTERVAL_SECONDS', '300'))
MISSED_RECOVERY_WINDOW_MINUTES = int(os.environ.get('MISSED_RECOVERY_WINDOW_MINUTES', '120'))
SITE_TIMEZONE = os.environ.get('SITE_TIMEZONE', 'UTC')  # IANA name, e.g. Asia/Jakarta

# Supervisor policy
MAX_RESTART_ATTEMPTS = int(os.environ.get('MAX_RESTART_ATTEMPTS', '3'))
RESTART_BACKOFF_SECONDS = float(os.environ.get('RESTART_BACKOFF_SECONDS', '3'))
SPAWN_CONFIRM_SECONDS = float(os.environ.get('SPAWN_CONFIRM_SECONDS', '2'))
STOP_GRACE_SECONDS = float(os.environ.get('STOP_GRACE_SECONDS', '5'))
DURATION_TOLERANCE_SECONDS = int(os.environ.get('DURATION_TOLERANCE_SECONDS', '5'))
MONITOR_POLL_SECONDS = float(os.environ.get('MONITOR_POLL_SECONDS', '2'))
MIN_RESTART_REMAINING_SECONDS = int(os.environ.get('MIN_RESTART_REMAINING_SECONDS', '60'))

# Logging
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

APP_LOG_FILE = os.environ.get('APP_LOG_FILE', os.path.join(BASE_TMP_DIR, "loopcaster.log"))
APP_LOG_MAX_BYTES = int(os.environ.get('APP_LOG_MAX_BYTES', 10*1024*1024)) # 10 MB
APP_LOG_BACKUP_COUNT = int(os.environ.get('APP_LOG_BACKUP_COUNT', 5))

# Per-stream wrapper log settings (ffmpeg_<id>.log)
STREAM_LOG_MAX_BYTES = int(os.environ.get('STREAM_LOG_MAX_BYTES', 5*1024*1024)) # 5 MB per stream log
STREAM_LOG_BACKUP_COUNT = int(os.environ.get('STREAM_LOG_BACKUP_COUNT', 2))

# Log/File Retention and Cleanup
ENABLE_PERIODIC_CLEANUP = os.environ.get('ENABLE_PERIODIC_CLEANUP', 'True').lower() == 'true'
CLEANUP_INTERVAL_HOURS = int(os.environ.get('CLEANUP_INTERVAL_HOURS', 24))
LOG_RETENTION_DAYS = int(os.environ.get('LOG_RETENTION_DAYS', 7))
CRASH_LOG_RETENTION_DAYS = int(os.environ.get('CRASH_LOG_RETENTION_DAYS', 30))
MAX_LOG_DIR_SIZE_MB = int(os.environ.get('MAX_LOG_DIR_SIZE_MB', 512))

def validate_config():
    """Validate configuration values"""
    errors = []

    if PORT < 1 or PORT > 65535:
        errors.append(f"PORT must be between 1 and 65535, got {PORT}")

    for name, value in [('SCHEDULER_TICK_SECONDS', SCHEDULER_TICK_SECONDS),
                        ('TRIGGER_WINDOW_MINUTES', TRIGGER_WINDOW_MINUTES),
                        ('FORCE_STOP_GRACE_SECONDS', FORCE_STOP_GRACE_SECONDS),
                        ('STATUS_SYNC_INTERVAL_SECONDS', STATUS_SYNC_INTERVAL_SECONDS),
                        ('ENCODER_THREADS', ENCODER_THREADS),
                        ('DEFAULT_VIDEO_BITRATE', DEFAULT_VIDEO_BITRATE),
                        ('DEFAULT_FPS', DEFAULT_FPS)]:
        if value <= 0:
            errors.append(f"{name} must be positive, got {value}")

    # A tick longer than the trigger window could step over a whole occurrence
    if SCHEDULER_TICK_SECONDS > TRIGGER_WINDOW_MINUTES * 60:
        errors.append(f"SCHEDULER_TICK_SECONDS ({SCHEDULER_TICK_SECONDS}) must not exceed the trigger window "
                      f"({TRIGGER_WINDOW_MINUTES * 60}s)")

    if MAX_RESTART_ATTEMPTS < 0:
        errors.append(f"MAX_RESTART_ATTEMPTS must not be negative, got {MAX_RESTART_ATTEMPTS}")

    try:
        from zoneinfo import ZoneInfo
        ZoneInfo(SITE_TIMEZONE)
    except (KeyError, ValueError) as e:
        errors.append(f"SITE_TIMEZONE is not a known time zone: {SITE_TIMEZONE} ({e})")

    return errors

# Load optional local config overrides
try:
    from config_local import *
except ImportError:
    pass
