"""
PlaybackSession: the per-track state machine.

    UNLOADED -> LOADING -> STOPPED <-> PLAYING <-> PAUSED
                       +-> FAILED
    any state -> DESTROYED

All transitions happen through explicit methods on the caller's control
path. Load results arrive via load_succeeded()/load_failed() with the token
begin_load() handed out; results carrying any other token are discarded.

Transport calls made in the wrong state are ignored: they return False
and never raise.
"""

import os
import math
import logging
from enum import Enum, auto
from typing import Optional

from config import PITCH_STEP_SEMITONES, PITCH_MIN_SEMITONES, PITCH_MAX_SEMITONES

logger = logging.getLogger("MultiDeck.Session")


class SessionState(Enum):
    """Session lifecycle state."""
    UNLOADED = auto()
    LOADING = auto()
    STOPPED = auto()
    PLAYING = auto()
    PAUSED = auto()
    FAILED = auto()
    DESTROYED = auto()

    @property
    def is_loaded(self) -> bool:
        return self in _LOADED_STATES


_LOADED_STATES = frozenset({SessionState.STOPPED, SessionState.PLAYING, SessionState.PAUSED})


def clamp_pitch(semitones: float) -> float:
    """Limit a pitch offset to [PITCH_MIN_SEMITONES, PITCH_MAX_SEMITONES]."""
    return max(PITCH_MIN_SEMITONES, min(PITCH_MAX_SEMITONES, float(semitones)))


def pitch_to_rate(semitones: float) -> float:
    """
    Playback rate multiplier for a pitch offset: 2 ** (semitones / 12).

    The offset is clamped first, so the result is always in [0.5, 2.0].
    """
    return 2.0 ** (clamp_pitch(semitones) / 12.0)


class SessionSnapshot:
    """
    Read-only copy of a session's observable state.

    Attributes:
        handle: Registry handle (None for a standalone session)
        name: Display name (file basename)
        state: SessionState
        waveform: Tuple of floats in [0, 1], or None until loaded
        bpm: Estimated tempo, 0.0 when unknown
        tempo_known: True only for a loaded session with bpm > 0
        error_kind / error_message: Set only when state is FAILED
    """

    __slots__ = (
        'handle', 'name', 'source', 'state', 'waveform', 'bpm', 'tempo_known',
        'position_seconds', 'duration_seconds', 'remaining_seconds',
        'pitch_semitones', 'rate', 'error_kind', 'error_message',
    )

    def __init__(self, **fields):
        for key in self.__slots__:
            object.__setattr__(self, key, fields.get(key))

    def __setattr__(self, key, value):
        raise AttributeError("SessionSnapshot is read-only")

    def to_dict(self):
        """Serialize for JSON (monitor API)."""
        data = {key: getattr(self, key) for key in self.__slots__}
        data['state'] = self.state.name
        data['waveform'] = list(self.waveform) if self.waveform is not None else None
        return data

    def __repr__(self):
        return (f"SessionSnapshot({self.name!r}, {self.state.name}, "
                f"pos={self.position_seconds:.2f}/{self.duration_seconds:.2f}, bpm={self.bpm:.1f})")


class PlaybackSession:
    """
    One track: its analysis results, transport state and pitch offset.

    Usage:
        session = PlaybackSession("song.mp3")
        token = session.begin_load()
        # ... worker decodes and analyzes ...
        session.load_succeeded(token, buffer, waveform, bpm, sink)
        session.play()
        session.change_pitch(+1)
        session.seek(30.0)
    """

    def __init__(self, source):
        self.source = source
        self.name = os.path.basename(os.fspath(source)) if source else ""

        self.state = SessionState.UNLOADED
        self.buffer = None
        self.waveform = None
        self.bpm: float = 0.0
        self.pitch_semitones: float = 0.0
        self.error_kind: Optional[str] = None
        self.error_message: Optional[str] = None

        self._sink = None
        self._position: float = 0.0
        self._load_token: int = 0
        self._pending_token: Optional[int] = None

    # =========================================================================
    # DERIVED STATE
    # =========================================================================

    @property
    def rate(self) -> float:
        return pitch_to_rate(self.pitch_semitones)

    @property
    def duration_seconds(self) -> float:
        return self.buffer.duration if self.buffer is not None else 0.0

    @property
    def position_seconds(self) -> float:
        if self.state == SessionState.PLAYING and self._sink is not None:
            pos = self._sink.position()
        else:
            pos = self._position
        return max(0.0, min(pos, self.duration_seconds))

    @property
    def remaining_seconds(self) -> float:
        return max(0.0, self.duration_seconds - self.position_seconds)

    @property
    def is_loaded(self) -> bool:
        return self.state.is_loaded

    @property
    def is_playing(self) -> bool:
        return self.state == SessionState.PLAYING

    @property
    def is_loading(self) -> bool:
        return self.state == SessionState.LOADING

    @property
    def pending_token(self) -> Optional[int]:
        """Token of the load in flight, if any."""
        return self._pending_token

    # =========================================================================
    # LOADING
    # =========================================================================

    def begin_load(self) -> Optional[int]:
        """
        Enter LOADING and hand out the token the load result must carry.

        Allowed from UNLOADED, or from a loaded state to reload. While
        reloading, the previous waveform and bpm stay visible.

        Returns:
            The load token, or None if a load cannot start now
        """
        if self.state == SessionState.LOADING:
            logger.warning(f"[{self.name}] Load already in progress, rejected")
            return None
        if self.state not in (SessionState.UNLOADED,) and not self.state.is_loaded:
            logger.debug(f"[{self.name}] begin_load ignored in {self.state.name}")
            return None

        if self.state.is_loaded:
            logger.info(f"[{self.name}] Reloading")
            self._position = self.position_seconds
            self._stop_sink()

        self._load_token += 1
        self._pending_token = self._load_token
        self.state = SessionState.LOADING
        return self._pending_token

    def load_succeeded(self, token, buffer, waveform, bpm, sink=None) -> bool:
        """
        Commit a finished load: LOADING -> STOPPED.

        Args:
            token: Token from begin_load()
            buffer: Decoded SampleBuffer
            waveform: Envelope from extract_waveform()
            bpm: Tempo estimate (0.0 = unknown)
            sink: Playback sink for this buffer

        Returns:
            False if the result is stale and was discarded
        """
        if not self._accept(token):
            if sink is not None:
                sink.close()
            return False

        self._release_sink()
        self.buffer = buffer
        self.waveform = waveform
        self.bpm = float(bpm)
        self._sink = sink
        self._position = 0.0
        self._pending_token = None
        self.error_kind = None
        self.error_message = None
        self.state = SessionState.STOPPED

        if self._sink is not None:
            self._sink.set_rate(self.rate)

        logger.info(f"[{self.name}] Loaded: {self.duration_seconds:.2f}s, BPM {self.bpm:.1f}")
        return True

    def load_failed(self, token, error_kind, error_message="") -> bool:
        """
        Commit a failed load: LOADING -> FAILED.

        Returns:
            False if the result is stale and was discarded
        """
        if not self._accept(token):
            return False

        self._release_sink()
        self.buffer = None
        self.waveform = None
        self.bpm = 0.0
        self._position = 0.0
        self._pending_token = None
        self.error_kind = error_kind
        self.error_message = error_message
        self.state = SessionState.FAILED
        logger.error(f"[{self.name}] Load failed: {error_kind}: {error_message}")
        return True

    def _accept(self, token) -> bool:
        if self.state != SessionState.LOADING or token != self._pending_token:
            logger.debug(f"[{self.name}] Discarding stale load result (token={token}, "
                         f"pending={self._pending_token}, state={self.state.name})")
            return False
        return True

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def play(self) -> bool:
        """Start or resume playback."""
        if self.state not in (SessionState.STOPPED, SessionState.PAUSED):
            logger.debug(f"[{self.name}] play ignored in {self.state.name}")
            return False

        logger.info(f"[{self.name}] PLAY from {self._position:.3f}s (was {self.state.name.lower()})")
        if self._sink is not None:
            self._sink.set_rate(self.rate)
            self._sink.set_position(self._position)
            self._sink.play()
        self.state = SessionState.PLAYING
        return True

    def pause(self) -> bool:
        """Pause playback, keeping the position."""
        if self.state != SessionState.PLAYING:
            logger.debug(f"[{self.name}] pause ignored in {self.state.name}")
            return False

        self._position = self.position_seconds
        if self._sink is not None:
            self._sink.pause()
        self.state = SessionState.PAUSED
        logger.info(f"[{self.name}] PAUSE at {self._position:.3f}s")
        return True

    def toggle_play_pause(self) -> bool:
        """Toggle between play and pause."""
        if self.state == SessionState.PLAYING:
            return self.pause()
        return self.play()

    def stop(self) -> bool:
        """Stop playback and rewind to the start."""
        if self.state not in (SessionState.PLAYING, SessionState.PAUSED):
            logger.debug(f"[{self.name}] stop ignored in {self.state.name}")
            return False

        self._stop_sink()
        self._position = 0.0
        self.state = SessionState.STOPPED
        logger.info(f"[{self.name}] STOP")
        return True

    def seek(self, target_seconds) -> bool:
        """
        Seek to a position, clamped to [0, duration]. Play/pause status is kept.
        """
        if not self.state.is_loaded:
            logger.debug(f"[{self.name}] seek ignored in {self.state.name}")
            return False

        position = max(0.0, min(float(target_seconds), self.duration_seconds))
        self._position = position
        if self._sink is not None:
            self._sink.set_position(position)
        logger.debug(f"[{self.name}] SEEK to {position:.3f}s")
        return True

    def nudge(self, amount) -> bool:
        """Seek relative to the current position."""
        if not self.state.is_loaded:
            logger.debug(f"[{self.name}] nudge ignored in {self.state.name}")
            return False
        return self.seek(self.position_seconds + amount)

    def change_pitch(self, delta_semitones) -> bool:
        """
        Shift the pitch offset. The rate follows as 2 ** (pitch / 12) and is
        applied to the sink immediately, playing or not.

        The offset is clamped to [PITCH_MIN_SEMITONES, PITCH_MAX_SEMITONES].
        Nothing is committed unless the sink accepted the new rate.

        Returns:
            False if ignored (not loaded, non-finite delta, already at the limit)
        """
        if not self.state.is_loaded:
            logger.debug(f"[{self.name}] change_pitch ignored in {self.state.name}")
            return False
        try:
            delta = float(delta_semitones)
        except (TypeError, ValueError):
            delta = math.nan
        if not math.isfinite(delta):
            logger.warning(f"[{self.name}] change_pitch ignored: bad delta {delta_semitones!r}")
            return False

        pitch = clamp_pitch(self.pitch_semitones + delta)
        if pitch == self.pitch_semitones:
            logger.debug(f"[{self.name}] Pitch already at {pitch:+.1f} st")
            return False

        rate = pitch_to_rate(pitch)
        if self._sink is not None:
            try:
                self._sink.set_rate(rate)
            except ValueError as e:
                logger.error(f"[{self.name}] Sink rejected rate {rate:.4f}: {e}")
                return False

        self.pitch_semitones = pitch
        logger.info(f"[{self.name}] Pitch {pitch:+.1f} st (rate {rate:.4f})")
        return True

    def pitch_up(self) -> bool:
        return self.change_pitch(PITCH_STEP_SEMITONES)

    def pitch_down(self) -> bool:
        return self.change_pitch(-PITCH_STEP_SEMITONES)

    def reset_pitch(self) -> bool:
        """Return to the original pitch."""
        if not self.state.is_loaded:
            return False
        return self.change_pitch(-self.pitch_semitones)

    def check_finished(self) -> bool:
        """
        Detect the end of the track while playing.

        The sink runs off the end on its own; when it has, the session
        goes back to STOPPED at position 0.

        Returns:
            True if the track just ended
        """
        if self.state != SessionState.PLAYING or self._sink is None:
            return False
        if not self._sink.is_finished():
            return False

        self._stop_sink()
        self._position = 0.0
        self.state = SessionState.STOPPED
        logger.info(f"[{self.name}] Track ended")
        return True

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def destroy(self):
        """Release buffer, waveform and sink. Terminal."""
        if self.state == SessionState.DESTROYED:
            return
        self._release_sink()
        self.buffer = None
        self.waveform = None
        self._position = 0.0
        self._pending_token = None
        self.state = SessionState.DESTROYED
        logger.info(f"[{self.name}] Destroyed")

    def snapshot(self, handle=None) -> SessionSnapshot:
        """Copy the observable state. Never mutates the session."""
        waveform = tuple(float(v) for v in self.waveform) if self.waveform is not None else None
        position = self.position_seconds
        duration = self.duration_seconds
        return SessionSnapshot(
            handle=handle,
            name=self.name,
            source=os.fspath(self.source) if self.source else "",
            state=self.state,
            waveform=waveform,
            bpm=self.bpm,
            tempo_known=self.state.is_loaded and self.bpm > 0,
            position_seconds=position,
            duration_seconds=duration,
            remaining_seconds=max(0.0, duration - position),
            pitch_semitones=self.pitch_semitones,
            rate=self.rate,
            error_kind=self.error_kind,
            error_message=self.error_message,
        )

    def _stop_sink(self):
        if self._sink is not None:
            self._sink.stop()

    def _release_sink(self):
        if self._sink is not None:
            self._sink.close()
            self._sink = None

    def __repr__(self):
        return f"PlaybackSession({self.name!r}, {self.state.name})"
