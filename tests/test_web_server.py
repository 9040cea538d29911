"""
Tests for backend/web_server: the read-only deck monitor API.
Run from project root: python -m pytest tests/test_web_server.py -v
"""
import sys
import os
import json
import urllib.request

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from backend.session import PlaybackSession
from backend.waveform import extract_waveform
from backend.web_server import SharedSessionState, DeckWebServer, create_flask_app
from tests.fakes import make_buffer


@pytest.fixture
def shared():
    loaded = PlaybackSession("/music/track.wav")
    buf = make_buffer(seconds=30.0)
    loaded.load_succeeded(loaded.begin_load(), buf, extract_waveform(buf, 8), 128.0)

    failed = PlaybackSession("gone.mp3")
    failed.load_failed(failed.begin_load(), "DecodeError", "File not found")

    state = SharedSessionState()
    state.update_from_snapshots([loaded.snapshot("h1"), failed.snapshot("h2")])
    return state


@pytest.fixture
def client(shared):
    return create_flask_app(shared).test_client()


def test_index_page(client):
    response = client.get('/')
    assert response.status_code == 200
    assert b"MultiDeck" in response.data


def test_list_sessions(client):
    data = client.get('/api/sessions').get_json()
    assert [d["handle"] for d in data] == ["h1", "h2"]
    assert data[0]["state"] == "STOPPED"
    assert data[0]["bpm"] == 128.0
    assert data[0]["tempo_known"] is True
    assert len(data[0]["waveform"]) == 8
    assert data[1]["state"] == "FAILED"
    assert data[1]["error_kind"] == "DecodeError"
    assert data[1]["waveform"] is None


def test_single_session(client):
    data = client.get('/api/sessions/h1').get_json()
    assert data["name"] == "track.wav"
    assert data["duration_seconds"] == pytest.approx(30.0)


def test_unknown_session_is_404(client):
    assert client.get('/api/sessions/nope').status_code == 404


def test_update_replaces_published_state(shared):
    shared.update_from_snapshots([])
    assert shared.get_sessions() == []
    assert shared.get_session("h1") is None


def test_server_url_empty_until_started(shared):
    server = DeckWebServer(shared, port=0)
    assert server.get_url() == ""
    server.stop()
    assert not server.running


def test_server_serves_on_free_port(shared):
    server = DeckWebServer(shared, port=0, host='127.0.0.1')
    try:
        url = server.start()
        assert server.running
        assert server.port != 0
        assert url.endswith(f":{server.port}")
        with urllib.request.urlopen(f"http://127.0.0.1:{server.port}/api/sessions", timeout=5) as response:
            data = json.loads(response.read().decode())
        assert [d["handle"] for d in data] == ["h1", "h2"]
    finally:
        server.stop()
    assert not server.running
    assert server.get_url() == ""
