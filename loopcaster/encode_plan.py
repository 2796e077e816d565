"""
Builds the FFmpeg argument list for one run of a stream.

The primary input is either a single video or a playlist fed through the
concat demuxer. Video is stream-copied unless the stream asks for
re-encoding (use_advanced_settings), in which case libx264 runs at the
configured bitrate, resolution and frame rate. A secondary audio track,
when its file exists, is mapped from a second input and re-encoded to
AAC; otherwise the primary input's audio is copied as-is. The duration
limit sits directly before the output target: FFmpeg reads -t as an
option of the file that follows it, so anywhere earlier would bound an
input instead.
"""

import logging
import random
import shlex
from typing import List, Optional

from loopcaster import config
from loopcaster.errors import MediaNotFoundError
from loopcaster.media import MediaPaths, is_network_source

logger = logging.getLogger(__name__)


def _reconnect_args(path) -> List[str]:
    # Only FFmpeg's http protocol understands the reconnect options
    if not is_network_source(path) or not path.lower().startswith(('http://', 'https://')):
        return []
    return ['-reconnect', '1', '-reconnect_streamed', '1',
            '-reconnect_delay_max', str(config.RECONNECT_DELAY_MAX)]


def _input_args(path, loop: bool, native_rate: bool, concat: bool = False) -> List[str]:
    args = [] if concat else _reconnect_args(path)
    args += ['-thread_queue_size', str(config.THREAD_QUEUE_SIZE)]
    if loop:
        args += ['-stream_loop', '-1']
    if native_rate:
        args.append('-re')
    if concat:
        args += ['-f', 'concat', '-safe', '0']
    args += ['-i', path]
    return args


def _video_codec_args(stream_config) -> List[str]:
    if not stream_config.use_advanced_settings:
        return ['-c:v', 'copy']
    bitrate = stream_config.bitrate or config.DEFAULT_VIDEO_BITRATE
    fps = stream_config.fps or config.DEFAULT_FPS
    resolution = stream_config.resolution or config.DEFAULT_RESOLUTION
    return ['-c:v', 'libx264', '-preset', config.X264_PRESET, '-tune', 'zerolatency',
            '-b:v', f"{bitrate}k",
            '-maxrate', f"{int(bitrate * 1.5)}k",
            '-bufsize', f"{bitrate * 2}k",
            '-pix_fmt', 'yuv420p',
            '-g', str(fps * 2),
            '-s', resolution,
            '-r', str(fps)]


def _primary_input(stream_config, media_paths: MediaPaths, concat_file: Optional[str]) -> List[str]:
    if not stream_config.is_playlist:
        if not media_paths.video:
            raise MediaNotFoundError(stream_config.video_ref)
        return _input_args(media_paths.video, loop=stream_config.loop_video, native_rate=True)

    for ref, path in zip(stream_config.video_refs, media_paths.playlist):
        if not path:
            raise MediaNotFoundError(ref)
    if len(media_paths.playlist) != len(stream_config.video_refs):
        raise MediaNotFoundError(stream_config.video_refs[len(media_paths.playlist)])
    if not concat_file:
        raise ValueError(f"[{stream_config.id}] A playlist stream needs a concat list path")
    return _input_args(concat_file, loop=stream_config.loop_video, native_rate=True, concat=True)


def build_encode_plan(stream_config, media_paths: MediaPaths, duration_s: Optional[int],
                      concat_file: Optional[str] = None) -> List[str]:
    """
    Returns the ordered FFmpeg arguments (without the binary) for stream_config.

    For playlist streams concat_file names the list written by
    write_concat_file; every playlist entry must already be confirmed.
    """
    args = ['-hide_banner', '-nostdin', '-loglevel', 'warning']
    args += _primary_input(stream_config, media_paths, concat_file)

    if media_paths.audio:
        # The audio track repeats under the video; -shortest ends with the video when it does not loop
        args += _input_args(media_paths.audio, loop=True, native_rate=False)
        args += ['-map', '0:v:0', '-map', '1:a:0']
        args += _video_codec_args(stream_config)
        args += ['-c:a', 'aac', '-b:a', config.AUDIO_BITRATE, '-ar', str(config.AUDIO_SAMPLE_RATE),
                 '-shortest']
    else:
        if stream_config.audio_ref:
            logger.warning(f"[{stream_config.id}] Audio track {stream_config.audio_ref} not found, "
                           f"streaming the video's own audio")
        args += _video_codec_args(stream_config)
        args += ['-c:a', 'copy']

    args += ['-threads', str(config.ENCODER_THREADS)]
    if not stream_config.use_advanced_settings:
        args += ['-bufsize', config.OUTPUT_BUFFER_SIZE]
    args += ['-max_muxing_queue_size', str(config.MAX_MUXING_QUEUE_SIZE),
             '-flvflags', 'no_duration_filesize']

    if duration_s:
        args += ['-t', str(int(duration_s))]

    args += ['-f', 'flv', stream_config.destination]
    return args


def concat_list(files: List[str]) -> str:
    """Concat demuxer script for files, single quotes escaped the way FFmpeg expects."""
    return "".join("file '{}'\n".format(f.replace('\\', '/').replace("'", "'\\''")) for f in files)


def write_concat_file(path, files: List[str], shuffle=False, rng=random) -> List[str]:
    """Writes the playlist order for this run to path and returns it."""
    files = list(files)
    if shuffle:
        rng.shuffle(files)
    with open(path, 'w') as f:
        f.write(concat_list(files))
    return files


def build_command(plan: List[str]) -> List[str]:
    return [config.FFMPEG_BINARY] + list(plan)


def format_command(command: List[str], stream_key: Optional[str] = None) -> str:
    """Shell-quoted command line for logs, with the stream key masked."""
    text = shlex.join(command)
    if stream_key:
        text = text.replace(stream_key, '****')
    return text
