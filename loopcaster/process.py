import logging
import os
import signal
import subprocess

import psutil

logger = logging.getLogger(__name__)


class EncoderProcess:
    """
    One FFmpeg child running in its own process group, with stdout and
    stderr redirected to the stream's .out and .err files. Signals go to
    the whole group so wrappers and helpers die with the encoder.
    """

    def __init__(self, popen, out_log=None, err_log=None):
        self._popen = popen
        self._out_log = out_log
        self._err_log = err_log

    @classmethod
    def spawn(cls, command, paths):
        out_log = open(paths['out_file'], 'wb')
        err_log = open(paths['err_file'], 'wb')
        try:
            popen = subprocess.Popen(command, stdout=out_log, stderr=err_log,
                                     stdin=subprocess.DEVNULL, preexec_fn=os.setsid)
        except OSError:
            out_log.close()
            err_log.close()
            raise
        return cls(popen, out_log, err_log)

    @property
    def pid(self):
        return self._popen.pid

    @property
    def returncode(self):
        return self._popen.returncode

    def poll(self):
        return self._popen.poll()

    def wait(self, timeout=None):
        return self._popen.wait(timeout=timeout)

    def _signal_group(self, sig):
        try:
            os.killpg(self._popen.pid, sig)
            return True
        except ProcessLookupError:
            return False

    def terminate_group(self):
        return self._signal_group(signal.SIGTERM)

    def kill_group(self):
        return self._signal_group(signal.SIGKILL)

    def stop(self, grace_seconds):
        """SIGTERM the group, then SIGKILL if it has not exited after grace_seconds."""
        if self.poll() is None and self.terminate_group():
            try:
                self.wait(timeout=grace_seconds)
            except subprocess.TimeoutExpired:
                logger.warning(f"PID {self.pid} ignored SIGTERM for {grace_seconds}s, sending SIGKILL")
                self.kill_group()
                try:
                    self.wait(timeout=grace_seconds)
                except subprocess.TimeoutExpired:
                    logger.error(f"PID {self.pid} still alive after SIGKILL")
        self.close()
        return self.poll()

    def close(self):
        for f in (self._out_log, self._err_log):
            if f is not None and not f.closed:
                f.close()


def process_stats(pid):
    """CPU and memory usage of a running process, or None if it is gone."""
    try:
        process = psutil.Process(pid)
        with process.oneshot():
            return {
                'cpu_percent': process.cpu_percent(interval=None),
                'memory_mb': process.memory_info().rss / (1024 * 1024),
                'status': process.status(),
            }
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def find_encoder(pid, stream_key):
    """The psutil.Process for pid if it is still an encoder pushing to stream_key."""
    if not pid:
        return None
    try:
        process = psutil.Process(pid)
        cmdline = process.cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None
    if stream_key and any(stream_key in part for part in cmdline):
        return process
    return None


def stop_orphan(process, grace_seconds):
    """Terminates an encoder this service no longer supervises."""
    try:
        process.terminate()
        _, alive = psutil.wait_procs([process], timeout=grace_seconds)
        for p in alive:
            logger.warning(f"Orphan PID {p.pid} ignored SIGTERM, sending SIGKILL")
            p.kill()
    except psutil.NoSuchProcess:
        pass
