"""Shared fixtures: a settable clock and a fake encoder launcher, so no FFmpeg is ever run."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from loopcaster import config
from loopcaster.media import MediaStore
from loopcaster.models import StreamConfig
from loopcaster.scheduler import Scheduler
from loopcaster.service import StreamService
from loopcaster.store import StreamStore
from loopcaster.supervisor import ProcessSupervisor
from loopcaster.tracker import DurationTracker

JAKARTA = ZoneInfo('Asia/Jakarta')

# Monday 2024-03-04 08:00 in Jakarta
MONDAY_8AM_UTC = datetime(2024, 3, 4, 1, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds=0, minutes=0, hours=0):
        self.now += timedelta(seconds=seconds, minutes=minutes, hours=hours)
        return self.now

    def set_local(self, tz, *args):
        self.now = datetime(*args, tzinfo=tz).astimezone(timezone.utc)
        return self.now


class FakeProcess:
    _next_pid = 40000

    def __init__(self, command, returncode=None):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.command = command
        self.returncode = returncode
        self.closed = False
        self.stopped = False

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        return self.returncode

    def exit(self, code):
        self.returncode = code

    def stop(self, grace_seconds):
        self.stopped = True
        if self.returncode is None:
            self.returncode = -15
        self.close()
        return self.returncode

    def close(self):
        self.closed = True


class FakeLauncher:
    def __init__(self):
        self.processes = []
        self.fail_with = None
        self.raise_error = None

    def __call__(self, command, paths):
        if self.raise_error is not None:
            raise self.raise_error
        process = FakeProcess(command, returncode=self.fail_with)
        self.processes.append(process)
        return process

    @property
    def last(self):
        return self.processes[-1]

    def duration_arg(self, index=-1):
        command = self.processes[index].command
        if '-t' not in command:
            return None
        return int(command[command.index('-t') + 1])


@pytest.fixture(autouse=True)
def runtime_dirs(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'LOG_DIR', str(tmp_path / 'ffmpeg_logs'))
    monkeypatch.setattr(config, 'PID_DIR', str(tmp_path / 'pids'))
    monkeypatch.setattr(config, 'CRASH_LOG_DIR', str(tmp_path / 'crash_logs'))
    monkeypatch.setattr(config, 'PLAYLIST_DIR', str(tmp_path / 'playlists'))
    return tmp_path


@pytest.fixture
def tz():
    return JAKARTA


@pytest.fixture
def clock():
    return FakeClock(MONDAY_8AM_UTC)


@pytest.fixture
def media_dir(tmp_path):
    media = tmp_path / 'media'
    media.mkdir()
    (media / 'video.mp4').write_bytes(b'\x00' * 16)
    (media / 'music.mp3').write_bytes(b'\x00' * 16)
    return media


@pytest.fixture
def media(media_dir):
    return MediaStore(str(media_dir))


@pytest.fixture
def store(tmp_path, clock):
    return StreamStore(str(tmp_path / 'data' / 'streams.json'), clock=clock)


@pytest.fixture
def tracker(clock):
    return DurationTracker(clock=clock)


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def supervisor(store, media, tracker, clock, launcher, tz):
    return ProcessSupervisor(store, media, tracker, clock=clock, launcher=launcher, tz=tz,
                             max_restarts=3, restart_backoff=0, confirm_seconds=0, stop_grace=0.1,
                             tolerance_seconds=5, monitor_interval=0.01, min_restart_remaining=0,
                             watch=False)


@pytest.fixture
def scheduler(store, supervisor, clock, tz):
    return Scheduler(store, supervisor, clock=clock, tz=tz, window=timedelta(minutes=5),
                     grace=timedelta(seconds=90), tick_seconds=30,
                     recovery_window=timedelta(minutes=120), inline=True)


@pytest.fixture
def service(store, supervisor, tracker, clock):
    return StreamService(store, supervisor, tracker, clock=clock)


@pytest.fixture
def make_stream(store):
    def _make(stream_id='show', **fields):
        values = dict(
            video_ref='video.mp4',
            rtmp_url='rtmp://a.rtmp.youtube.com/live2',
            stream_key='abcd-1234-efgh',
            schedule_type='once',
            status='scheduled',
        )
        values.update(fields)
        return store.save(StreamConfig(id=stream_id, **values))
    return _make
