"""
Tests for backend/state_manager: the SessionRegistry.
Run from project root: python -m pytest tests/test_state_manager.py -v

Loads run on real background threads against in-memory decoders.
"""
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from config import DEFAULT_ANALYSIS_SETTINGS
from backend.session import SessionState
from backend.state_manager import SessionRegistry
from tests.fakes import (
    FakeClock, RecordingSink, FakeDecoder, GatedDecoder,
    make_buffer, pulse_buffer, join_load_threads,
)


def make_registry(decoder, clock=None, sink_factory="recording"):
    if sink_factory == "recording":
        clock = clock or FakeClock()
        sink_factory = lambda buffer: RecordingSink(buffer.duration, clock)
    return SessionRegistry(decoder, sink_factory=sink_factory,
                           settings=dict(DEFAULT_ANALYSIS_SETTINGS))


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------

def test_add_loads_in_background():
    decoder = FakeDecoder({"beat.wav": pulse_buffer(600, 10.0, 1000)})
    registry = make_registry(decoder)
    handle = registry.add("beat.wav")

    assert handle in registry
    assert registry.wait_for_loads(5)
    [snap] = registry.poll()
    assert snap.handle == handle
    assert snap.state == SessionState.STOPPED
    assert snap.bpm == pytest.approx(100.0)
    assert snap.tempo_known
    assert len(snap.waveform) == 200
    assert snap.duration_seconds == pytest.approx(10.0)
    assert decoder.calls == ["beat.wav"]


def test_poll_before_commit_shows_loading():
    decoder = GatedDecoder({"a.wav": make_buffer()})
    registry = make_registry(decoder)
    registry.add("a.wav")
    assert decoder.entered.wait(5)

    [snap] = registry.poll()
    assert snap.state == SessionState.LOADING
    assert registry.loads_in_flight() == 1

    decoder.release()
    assert registry.wait_for_loads(5)
    assert registry.poll()[0].state == SessionState.STOPPED
    assert registry.loads_in_flight() == 0


def test_results_only_committed_by_pump():
    decoder = FakeDecoder({"a.wav": make_buffer()})
    registry = make_registry(decoder)
    registry.add("a.wav")
    join_load_threads()

    assert registry.poll()[0].state == SessionState.LOADING
    assert registry.pump() == 1
    assert registry.poll()[0].state == SessionState.STOPPED


def test_wait_for_loads_times_out():
    decoder = GatedDecoder({"a.wav": make_buffer()})
    registry = make_registry(decoder)
    registry.add("a.wav")
    assert decoder.entered.wait(5)
    assert not registry.wait_for_loads(0.05)
    decoder.release()
    assert registry.wait_for_loads(5)


def test_failure_is_isolated():
    decoder = FakeDecoder({
        "good.wav": make_buffer(seconds=3.0),
        "broken.wav": RuntimeError("analysis bug"),
    })
    registry = make_registry(decoder)
    good = registry.add("good.wav")
    missing = registry.add("missing.mp3")
    broken = registry.add("broken.wav")
    registry.wait_for_loads(5)

    snaps = registry.poll()
    assert [s.handle for s in snaps] == [good, missing, broken]
    assert snaps[0].state == SessionState.STOPPED
    assert snaps[1].state == SessionState.FAILED
    assert snaps[1].error_kind == "DecodeError"
    assert "missing.mp3" in snaps[1].error_message
    assert snaps[2].state == SessionState.FAILED
    assert snaps[2].error_kind == "RuntimeError"

    assert registry.get(good).play()


def test_handles_are_unique_and_ordered():
    decoder = FakeDecoder({"a.wav": make_buffer()})
    registry = make_registry(decoder)
    handles = [registry.add("a.wav") for _ in range(3)]
    registry.wait_for_loads(5)
    assert len(set(handles)) == 3
    assert registry.handles() == handles
    assert len(registry) == 3


def test_sink_factory_failure_leaves_session_usable():
    def broken_factory(buffer):
        raise OSError("no audio device")

    decoder = FakeDecoder({"a.wav": make_buffer()})
    registry = make_registry(decoder, sink_factory=broken_factory)
    handle = registry.add("a.wav")
    registry.wait_for_loads(5)

    session = registry.get(handle)
    assert session.state == SessionState.STOPPED
    assert session.play()


def test_no_sink_factory():
    decoder = FakeDecoder({"a.wav": make_buffer()})
    registry = make_registry(decoder, sink_factory=None)
    handle = registry.add("a.wav")
    registry.wait_for_loads(5)
    assert registry.get(handle).is_loaded


def test_reload():
    decoder = FakeDecoder({"a.wav": make_buffer(seconds=2.0)})
    registry = make_registry(decoder)
    handle = registry.add("a.wav")
    registry.wait_for_loads(5)

    decoder.outcomes["a.wav"] = make_buffer(seconds=4.0)
    assert registry.reload(handle)
    assert registry.get(handle).state == SessionState.LOADING
    registry.wait_for_loads(5)

    assert registry.get(handle).duration_seconds == pytest.approx(4.0)
    assert decoder.calls == ["a.wav", "a.wav"]


def test_reload_rejected_for_failed_and_unknown():
    registry = make_registry(FakeDecoder())
    handle = registry.add("missing.wav")
    registry.wait_for_loads(5)
    assert not registry.reload(handle)
    assert not registry.reload("no-such-handle")


# -----------------------------------------------------------------------------
# Removal
# -----------------------------------------------------------------------------

def test_remove_during_load_discards_result():
    decoder = GatedDecoder({"a.wav": make_buffer()})
    registry = make_registry(decoder)
    removed = []
    loaded = []
    registry.on('session_removed', removed.append)
    registry.on('session_loaded', lambda handle, snap: loaded.append(handle))

    handle = registry.add("a.wav")
    session = registry.get(handle)
    assert decoder.entered.wait(5)

    assert registry.remove(handle)
    decoder.release()
    join_load_threads()

    assert registry.pump() == 0
    assert handle not in registry
    assert registry.get(handle) is None
    assert registry.poll() == []
    assert session.state == SessionState.DESTROYED
    assert removed == [handle]
    assert loaded == []
    assert registry.loads_in_flight() == 0


def test_remove_loaded_session_closes_sink():
    clock = FakeClock()
    sinks = []

    def factory(buffer):
        sink = RecordingSink(buffer.duration, clock)
        sinks.append(sink)
        return sink

    decoder = FakeDecoder({"a.wav": make_buffer(), "b.wav": make_buffer()})
    registry = make_registry(decoder, sink_factory=factory)
    a = registry.add("a.wav")
    b = registry.add("b.wav")
    registry.wait_for_loads(5)

    registry.get(a).play()
    registry.get(b).play()
    assert registry.remove(a)
    assert [s.handle for s in registry.poll()] == [b]
    assert registry.get(b).state == SessionState.PLAYING
    assert sum(sink.closed for sink in sinks) == 1


def test_remove_unknown_handle():
    registry = make_registry(FakeDecoder())
    assert not registry.remove("no-such-handle")


def test_shutdown_removes_everything():
    decoder = FakeDecoder({"a.wav": make_buffer()})
    registry = make_registry(decoder)
    sessions = [registry.get(registry.add("a.wav")) for _ in range(2)]
    registry.wait_for_loads(5)
    registry.shutdown()
    assert len(registry) == 0
    assert all(s.state == SessionState.DESTROYED for s in sessions)


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------

def test_events_for_load_and_failure():
    decoder = FakeDecoder({"a.wav": make_buffer()})
    registry = make_registry(decoder)
    events = []
    registry.on('session_added', lambda h: events.append(("added", h)))
    registry.on('session_loaded', lambda h, snap: events.append(("loaded", h, snap.state)))
    registry.on('session_failed', lambda h, snap: events.append(("failed", h, snap.error_kind)))

    good = registry.add("a.wav")
    bad = registry.add("b.wav")
    registry.wait_for_loads(5)

    assert ("added", good) in events
    assert ("added", bad) in events
    assert ("loaded", good, SessionState.STOPPED) in events
    assert ("failed", bad, "DecodeError") in events


def test_session_ended_event():
    clock = FakeClock()
    decoder = FakeDecoder({"a.wav": make_buffer(seconds=10.0)})
    registry = make_registry(decoder, clock=clock)
    ended = []
    registry.on('session_ended', ended.append)
    handle = registry.add("a.wav")
    registry.wait_for_loads(5)

    registry.get(handle).play()
    clock.advance(5)
    registry.pump()
    assert ended == []

    clock.advance(6)
    registry.pump()
    assert ended == [handle]
    assert registry.poll()[0].state == SessionState.STOPPED
    assert registry.poll()[0].position_seconds == 0.0


def test_failing_callback_does_not_break_registry():
    decoder = FakeDecoder({"a.wav": make_buffer()})
    registry = make_registry(decoder)

    def explode(handle):
        raise RuntimeError("callback bug")

    registry.on('session_added', explode)
    handle = registry.add("a.wav")
    registry.wait_for_loads(5)
    assert registry.get(handle).is_loaded

    registry.off('session_added', explode)
    registry.add("a.wav")
    registry.wait_for_loads(5)
    assert len(registry) == 2


def test_poll_after_extreme_pitch_changes():
    clock = FakeClock()
    decoder = FakeDecoder({"a.wav": make_buffer(seconds=10.0), "b.wav": make_buffer(seconds=10.0)})
    registry = make_registry(decoder, clock=clock)
    up = registry.add("a.wav")
    down = registry.add("b.wav")
    registry.wait_for_loads(5)

    registry.get(up).change_pitch(13000)
    registry.get(down).change_pitch(-110000)
    registry.get(up).play()
    registry.get(down).play()
    clock.advance(2)
    registry.pump()

    snaps = {s.handle: s for s in registry.poll()}
    assert snaps[up].rate == pytest.approx(2.0)
    assert snaps[up].position_seconds == pytest.approx(4.0)
    assert snaps[down].rate == pytest.approx(0.5)
    assert snaps[down].position_seconds == pytest.approx(1.0)
