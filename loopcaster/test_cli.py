import pytest
import requests

from loopcaster import cli


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


@pytest.fixture
def api(monkeypatch):
    calls = []
    replies = {}

    def fake_request(self, method, url, timeout=None, **kwargs):
        calls.append((method, url, kwargs))
        reply = replies.get((method, url.split('localhost:5000', 1)[1]))
        if isinstance(reply, requests.exceptions.RequestException):
            raise reply
        return reply or FakeResponse({'success': False, 'message': 'not found'}, 404)

    monkeypatch.setattr(requests.Session, 'request', fake_request)
    return calls, replies


def _stream(**fields):
    stream = {'id': 'show', 'status': 'live', 'state': 'running', 'remaining_seconds': 3725,
              'next_run_at': None, 'last_error': None}
    stream.update(fields)
    return stream


def test_start_prints_result(api, capsys):
    calls, replies = api
    replies[('POST', '/streams/show/start')] = FakeResponse(
        {'success': True, 'message': 'Stream show is live.', 'stream': _stream()})

    assert cli.main(['start', 'show']) == 0

    out = capsys.readouterr().out
    assert 'Stream show is live.' in out
    assert '1:02:05' in out
    assert calls[0][0] == 'POST'


def test_list_prints_table(api, capsys):
    _, replies = api
    replies[('GET', '/streams')] = FakeResponse({'success': True, 'streams': [
        _stream(), _stream(id='night', status='scheduled', state='idle', remaining_seconds=None,
                           next_run_at='2024-03-04T15:00:00+00:00')]})

    assert cli.main(['list']) == 0

    out = capsys.readouterr().out
    assert 'night' in out
    assert '2024-03-04T15:00:00+00:00' in out


def test_disable_sends_flag(api):
    calls, replies = api
    replies[('POST', '/streams/show/recurring')] = FakeResponse({'success': True, 'stream': _stream()})

    assert cli.main(['disable', 'show']) == 0
    assert calls[0][2]['json'] == {'enabled': False}


def test_logs_passes_type_and_lines(api, capsys):
    calls, replies = api
    replies[('GET', '/streams/show/logs')] = FakeResponse({'success': True, 'lines': ['a', 'b']})

    assert cli.main(['logs', 'show', '--type', 'err', '--lines', '2']) == 0
    assert calls[0][2]['params'] == {'type': 'err', 'lines': 2}
    assert capsys.readouterr().out == "a\nb\n"


def test_api_error_returns_failure(api, capsys):
    _, replies = api
    replies[('POST', '/streams/show/start')] = FakeResponse(
        {'success': False, 'message': 'Stream show already has an encoder process (running)'}, 409)

    assert cli.main(['start', 'show']) == 1
    assert 'already has an encoder process' in capsys.readouterr().out


def test_connection_failure(api, capsys):
    _, replies = api
    replies[('GET', '/streams/show/status')] = requests.exceptions.ConnectionError("refused")

    assert cli.main(['status', 'show']) == 1
    assert 'API connection failed' in capsys.readouterr().out


def test_non_json_reply(api, capsys):
    _, replies = api
    replies[('GET', '/health')] = FakeResponse(ValueError("no json"), 502)

    assert cli.StreamControl().test_connection() is False


def test_json_output(api, capsys):
    _, replies = api
    replies[('GET', '/streams/show/status')] = FakeResponse({'success': True, 'stream': _stream()})

    assert cli.main(['--json', 'status', 'show']) == 0
    assert '"remaining_seconds": 3725' in capsys.readouterr().out
