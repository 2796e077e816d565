import pytest

from loopcaster.app import create_app
from loopcaster.streamlog import close_stream_log, ensure_dirs, stream_log, stream_paths


@pytest.fixture
def client(service):
    app = create_app(service)
    app.config['TESTING'] = True
    return app.test_client()


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    assert response.get_json()['active_streams'] == 0


def test_start_and_stop(client, launcher, make_stream):
    make_stream(duration_minutes=30)

    response = client.post('/streams/show/start')
    assert response.status_code == 200
    stream = response.get_json()['stream']
    assert stream['status'] == 'live'
    assert stream['state'] == 'running'
    assert stream['pid'] == launcher.last.pid
    assert stream['remaining_seconds'] == 1800

    response = client.post('/streams/show/stop')
    data = response.get_json()
    assert response.status_code == 200
    assert data['stopped'] is True
    assert data['stream']['status'] == 'offline'
    assert data['stream']['remaining_seconds'] is None


def test_stop_when_not_running(client, make_stream):
    make_stream()
    data = client.post('/streams/show/stop').get_json()
    assert data['success'] is True
    assert data['stopped'] is False


def test_second_start_is_a_conflict(client, launcher, make_stream):
    make_stream()
    client.post('/streams/show/start')

    response = client.post('/streams/show/start')
    assert response.status_code == 409
    assert response.get_json()['state'] == 'running'
    assert len(launcher.processes) == 1


def test_unknown_stream_is_404(client):
    for response in (client.get('/streams/nope/status'),
                     client.post('/streams/nope/start'),
                     client.post('/streams/nope/stop')):
        assert response.status_code == 404
        assert response.get_json()['message'] == 'Unknown stream: nope'


def test_missing_media_is_a_bad_request(client, launcher, make_stream):
    make_stream(video_ref='gone.mp4')
    response = client.post('/streams/show/start')
    assert response.status_code == 400
    assert 'gone.mp4' in response.get_json()['message']
    assert launcher.processes == []


def test_encoder_dying_at_startup_is_502(client, launcher, store, make_stream):
    make_stream()
    launcher.fail_with = 1
    response = client.post('/streams/show/start')
    assert response.status_code == 502
    assert response.get_json()['returncode'] == 1
    assert store.get('show').status == 'scheduled'


def test_list_streams(client, make_stream):
    make_stream('a')
    make_stream('b', schedule_type='daily', recurring_time='08:00')
    streams = client.get('/streams').get_json()['streams']
    assert sorted(s['id'] for s in streams) == ['a', 'b']
    assert all(s['state'] == 'idle' for s in streams)


def test_recurring_toggle_keeps_time_and_days(client, store, clock, make_stream):
    make_stream(schedule_type='weekly', recurring_time='19:30', recurring_days=[1, 3, 5])

    response = client.post('/streams/show/recurring', json={'enabled': False})
    assert response.status_code == 200
    assert response.get_json()['stream']['recurring_enabled'] is False

    client.post('/streams/show/recurring', json={'enabled': True})
    stored = store.get('show')
    assert stored.recurring_enabled is True
    assert stored.recurring_time == '19:30'
    assert stored.recurring_days == [1, 3, 5]
    # Monday 19:30 in Jakarta
    assert stored.next_run_at.isoformat() == '2024-03-04T12:30:00+00:00'


def test_recurring_toggle_validation(client, make_stream):
    make_stream()
    make_stream('daily', schedule_type='daily', recurring_time='08:00')

    assert client.post('/streams/daily/recurring', json={'enabled': 'yes'}).status_code == 400
    assert client.post('/streams/daily/recurring', data='not json').status_code == 400
    # One-off streams have no recurring schedule to toggle
    assert client.post('/streams/show/recurring', json={'enabled': True}).status_code == 400


def test_logs(client, make_stream):
    make_stream()
    paths = stream_paths('show')
    ensure_dirs(paths)
    stream_log('show', paths, "first line")
    stream_log('show', paths, "second line")
    close_stream_log('show', paths)

    data = client.get('/streams/show/logs?lines=1').get_json()
    assert data['type'] == 'log'
    assert len(data['lines']) == 1
    assert data['lines'][0].endswith("second line")


def test_logs_rejects_bad_arguments(client, make_stream):
    make_stream()
    assert client.get('/streams/show/logs?type=core').status_code == 400
    assert client.get('/streams/show/logs?lines=many').status_code == 400


def test_unknown_route_keeps_its_status(client):
    response = client.get('/nowhere')
    assert response.status_code == 404
    assert response.get_json()['success'] is False
