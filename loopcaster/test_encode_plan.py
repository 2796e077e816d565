import logging

import pytest

from loopcaster.encode_plan import build_command, build_encode_plan, concat_list, format_command, write_concat_file
from loopcaster.errors import MediaNotFoundError
from loopcaster.media import MediaPaths
from loopcaster.models import StreamConfig

DESTINATION = 'rtmp://a.rtmp.youtube.com/live2/abcd-1234'


def _config(**fields):
    values = dict(video_ref='video.mp4', rtmp_url='rtmp://a.rtmp.youtube.com/live2/', stream_key='abcd-1234',
                  loop_video=False)
    values.update(fields)
    return StreamConfig(id='show', **values)


def _value(plan, flag):
    return plan[plan.index(flag) + 1]


def test_ninety_minutes_video_only():
    plan = build_encode_plan(_config(duration_minutes=90), MediaPaths('/media/video.mp4'), 5400)

    assert plan.count('-i') == 1
    assert '-map' not in plan
    assert _value(plan, '-c:v') == 'copy'
    assert _value(plan, '-c:a') == 'copy'
    assert '-stream_loop' not in plan
    # Duration limit immediately before the output target, destination last
    assert plan[-5:] == ['-t', '5400', '-f', 'flv', DESTINATION]
    assert plan.index('-t') < plan.index(DESTINATION)


def test_secondary_audio_is_mapped_and_reencoded():
    plan = build_encode_plan(_config(audio_ref='music.mp3'),
                             MediaPaths('/media/video.mp4', '/media/music.mp3'), 3600)

    assert plan.count('-i') == 2
    assert _value(plan, '-i') == '/media/video.mp4'
    maps = [plan[i + 1] for i, arg in enumerate(plan) if arg == '-map']
    assert maps == ['0:v:0', '1:a:0']
    assert _value(plan, '-c:v') == 'copy'
    assert _value(plan, '-c:a') == 'aac'
    assert int(_value(plan, '-b:a').rstrip('k')) >= 128
    assert plan[-5:] == ['-t', '3600', '-f', 'flv', DESTINATION]


def test_missing_audio_file_falls_back_to_single_input(caplog):
    with caplog.at_level(logging.WARNING, logger='loopcaster.encode_plan'):
        plan = build_encode_plan(_config(audio_ref='gone.mp3'), MediaPaths('/media/video.mp4', None), 60)

    assert plan.count('-i') == 1
    assert '-map' not in plan
    assert _value(plan, '-c:a') == 'copy'
    assert 'gone.mp3' in caplog.text


def test_loop_flag_precedes_its_input():
    plan = build_encode_plan(_config(loop_video=True), MediaPaths('/media/video.mp4'), 600)
    loop_at = plan.index('-stream_loop')
    assert plan[loop_at + 1] == '-1'
    assert loop_at < plan.index('-i')


def test_audio_input_always_loops():
    plan = build_encode_plan(_config(loop_video=False, audio_ref='music.mp3'),
                             MediaPaths('/media/video.mp4', '/media/music.mp3'), 600)
    second_input = len(plan) - 1 - plan[::-1].index('-i')
    assert plan[second_input + 1] == '/media/music.mp3'
    assert '-stream_loop' in plan[plan.index('-i') + 2:second_input]


def test_thread_cap_and_buffers_always_present():
    for duration in (None, 60):
        plan = build_encode_plan(_config(), MediaPaths('/media/video.mp4'), duration)
        assert _value(plan, '-threads') == '2'
        assert '-max_muxing_queue_size' in plan
        assert '-bufsize' in plan
        assert '-thread_queue_size' in plan


def test_unbounded_plan_has_no_duration_limit():
    plan = build_encode_plan(_config(), MediaPaths('/media/video.mp4'), None)
    assert '-t' not in plan
    assert plan[-3:] == ['-f', 'flv', DESTINATION]


def test_network_input_gets_reconnect_options():
    url = 'https://cdn.example.com/loop.mp4'
    plan = build_encode_plan(_config(video_ref=url), MediaPaths(url), 60)
    assert _value(plan, '-reconnect') == '1'
    assert plan.index('-reconnect') < plan.index('-i')

    local = build_encode_plan(_config(), MediaPaths('/media/video.mp4'), 60)
    assert '-reconnect' not in local


def test_missing_primary_media_fails_before_anything_else():
    with pytest.raises(MediaNotFoundError):
        build_encode_plan(_config(video_ref='nowhere.mp4'), MediaPaths(None), 60)


def test_command_masks_stream_key():
    command = build_command(build_encode_plan(_config(), MediaPaths('/media/video.mp4'), 60))
    assert command[0] == 'ffmpeg'
    text = format_command(command, 'abcd-1234')
    assert 'abcd-1234' not in text
    assert 'rtmp://a.rtmp.youtube.com/live2/****' in text


# --- playlists and re-encoding ---

PLAYLIST = ['intro.mp4', 'main.mp4', 'outro.mp4']
PLAYLIST_PATHS = ['/media/intro.mp4', '/media/main.mp4', '/media/outro.mp4']


def test_playlist_uses_concat_demuxer():
    plan = build_encode_plan(_config(video_refs=PLAYLIST, loop_video=True, duration_minutes=30),
                             MediaPaths(None, playlist=PLAYLIST_PATHS), 1800,
                             concat_file='/tmp/ffmpeg_show.txt')

    assert plan.count('-i') == 1
    assert _value(plan, '-i') == '/tmp/ffmpeg_show.txt'
    input_at = plan.index('-i')
    assert plan[input_at - 4:input_at] == ['-f', 'concat', '-safe', '0']
    assert plan.index('-stream_loop') < input_at
    assert _value(plan, '-c:v') == 'copy'
    assert plan[-5:] == ['-t', '1800', '-f', 'flv', DESTINATION]


def test_playlist_entry_missing_fails_before_build():
    with pytest.raises(MediaNotFoundError) as excinfo:
        build_encode_plan(_config(video_refs=PLAYLIST),
                          MediaPaths(None, playlist=['/media/intro.mp4', None, '/media/outro.mp4']), 60,
                          concat_file='/tmp/ffmpeg_show.txt')
    assert excinfo.value.reference == 'main.mp4'


def test_reencode_mode_uses_libx264_settings():
    plan = build_encode_plan(_config(use_advanced_settings=True, bitrate=3000, resolution='1920x1080', fps=25),
                             MediaPaths('/media/video.mp4'), 600)

    assert _value(plan, '-c:v') == 'libx264'
    assert _value(plan, '-preset') == 'ultrafast'
    assert _value(plan, '-b:v') == '3000k'
    assert _value(plan, '-maxrate') == '4500k'
    assert _value(plan, '-bufsize') == '6000k'
    assert plan.count('-bufsize') == 1
    assert _value(plan, '-s') == '1920x1080'
    assert _value(plan, '-r') == '25'
    assert _value(plan, '-g') == '50'
    assert _value(plan, '-c:a') == 'copy'
    assert plan[-5:] == ['-t', '600', '-f', 'flv', DESTINATION]


def test_reencode_defaults_and_secondary_audio():
    plan = build_encode_plan(_config(use_advanced_settings=True, audio_ref='music.mp3'),
                             MediaPaths('/media/video.mp4', '/media/music.mp3'), 600)

    assert _value(plan, '-b:v') == '2500k'
    assert _value(plan, '-s') == '1280x720'
    assert _value(plan, '-r') == '30'
    assert _value(plan, '-c:a') == 'aac'
    assert plan.index('-map') < plan.index('-c:v')
    assert plan[-5:] == ['-t', '600', '-f', 'flv', DESTINATION]


def test_reencoded_playlist_keeps_duration_before_output():
    plan = build_encode_plan(_config(video_refs=PLAYLIST, use_advanced_settings=True),
                             MediaPaths(None, playlist=PLAYLIST_PATHS), 900,
                             concat_file='/tmp/ffmpeg_show.txt')
    assert _value(plan, '-c:v') == 'libx264'
    assert plan[-5:] == ['-t', '900', '-f', 'flv', DESTINATION]


def test_concat_list_quotes_paths():
    assert concat_list(['/media/a.mp4', "/media/it's.mp4"]) == \
        "file '/media/a.mp4'\nfile '/media/it'\\''s.mp4'\n"


def test_write_concat_file_shuffles_a_copy(tmp_path):
    class Reverse:
        def shuffle(self, items):
            items.reverse()

    target = tmp_path / 'list.txt'
    order = write_concat_file(str(target), PLAYLIST_PATHS, shuffle=True, rng=Reverse())

    assert order == PLAYLIST_PATHS[::-1]
    assert PLAYLIST_PATHS[0] == '/media/intro.mp4'
    assert target.read_text().splitlines()[0] == "file '/media/outro.mp4'"
