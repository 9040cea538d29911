"""
Playback sinks for MultiDeck.

A sink performs the actual audio output for one session. Two are provided:

1. ClockSink: silent transport clock. Tracks position from a timestamp and
   the current rate, so sessions behave the same with or without audio
   hardware (analysis-only runs, tests, headless servers).

2. PygameSink: ClockSink plus real output through pygame.mixer.Sound.
   The buffer is resampled in RAM in short chunks for the current rate,
   played on the session's own mixer channel with the next chunk queued
   behind. Rate changes and seeks while playing re-render from the
   current position.

Because playback runs at `rate`, pitch and speed change together
(varispeed), which is what the pitch offset means here.

This module has NO UI dependencies and can be tested independently.
"""

import io
import math
import time
import wave
import logging
import threading
import numpy as np

import pygame

from config import SAMPLE_RATE, CHANNELS, MIXER_BUFFER_SIZE, RENDER_CHUNK_SECONDS

logger = logging.getLogger("MultiDeck.AudioEngine")

_mixer_lock = threading.Lock()


def init_mixer():
    """
    Initialize pygame.mixer once with a low latency buffer.

    Returns:
        (frequency, channels) the mixer actually opened with
    """
    with _mixer_lock:
        if not pygame.mixer.get_init():
            pygame.mixer.init(
                frequency=SAMPLE_RATE,
                size=-16,
                channels=CHANNELS,
                buffer=MIXER_BUFFER_SIZE
            )
            logger.info("pygame mixer initialized")
        frequency, _size, channels = pygame.mixer.get_init()
        # Each deck gets its own channel
        if pygame.mixer.get_num_channels() < 16:
            pygame.mixer.set_num_channels(16)
        return frequency, channels


class ClockSink:
    """
    Transport clock with the playback sink interface.

    Usage:
        sink = ClockSink(duration=180.0)
        sink.set_rate(2.0)
        sink.play()
        ...
        sink.position()   # advances at 2x wall clock
    """

    def __init__(self, duration, clock=time.monotonic):
        """
        Args:
            duration: Track length in seconds
            clock: Monotonic time source (injectable for tests)
        """
        self.duration = max(0.0, float(duration))
        self._clock = clock
        self._offset = 0.0          # Position when the clock was last (re)started
        self._started_at = None     # clock() at last (re)start, None while not running
        self._rate = 1.0

    # =========================================================================
    # OUTPUT HOOKS (overridden by real sinks)
    # =========================================================================

    def _start_output(self, position, rate):
        pass

    def _stop_output(self):
        pass

    # =========================================================================
    # SINK INTERFACE
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._started_at is not None

    @property
    def rate(self) -> float:
        return self._rate

    def play(self):
        """Start output from the current position at the current rate."""
        if self.is_running:
            return
        self._started_at = self._clock()
        self._start_output(self._offset, self._rate)
        logger.debug(f"[PLAY] from {self._offset:.3f}s at rate {self._rate:.3f}")

    def pause(self):
        """Stop output, keep the position."""
        if not self.is_running:
            return
        self._offset = self.position()
        self._started_at = None
        self._stop_output()
        logger.debug(f"[PAUSE] at {self._offset:.3f}s")

    def stop(self):
        """Stop output and rewind."""
        was_running = self.is_running
        self._started_at = None
        self._offset = 0.0
        if was_running:
            self._stop_output()
        logger.debug("[STOP]")

    def set_position(self, seconds):
        """Jump to `seconds` (clamped to the track), continuing output if running."""
        seconds = max(0.0, min(float(seconds), self.duration))
        self._offset = seconds
        if self.is_running:
            self._restart()

    def set_rate(self, multiplier):
        """Change playback rate, continuing from the current position."""
        if not math.isfinite(multiplier) or multiplier <= 0:
            raise ValueError(f"Playback rate must be finite and > 0, got {multiplier}")
        if self.is_running:
            self._offset = self.position()
            self._rate = float(multiplier)
            self._restart()
        else:
            self._rate = float(multiplier)

    def position(self) -> float:
        """Current playback position in seconds."""
        if not self.is_running:
            return self._offset
        elapsed = self._clock() - self._started_at
        return min(self.duration, self._offset + elapsed * self._rate)

    def is_finished(self) -> bool:
        """True once running output has reached the end of the track."""
        if not self.is_running:
            return False
        elapsed = self._clock() - self._started_at
        return self._offset + elapsed * self._rate >= self.duration

    def close(self):
        """Release output resources."""
        self.stop()

    def _restart(self):
        self._stop_output()
        self._started_at = self._clock()
        self._start_output(self._offset, self._rate)


class PygameSink(ClockSink):
    """
    Plays a SampleBuffer through pygame.mixer.

    The "Slice, Resample, and Queue" approach:
    1. Take at most RENDER_CHUNK_SECONDS of samples from the current position
    2. Resample them so the mixer's fixed output rate plays them at `rate`
    3. Wrap them in a pygame.mixer.Sound and play it on a free channel
    4. While it plays, keep the following chunk queued on the same channel

    Only one or two chunks exist at a time, so play, seek and rate changes
    cost the same on a long track as on a short one.
    """

    def __init__(self, buffer, clock=time.monotonic, fade_ms=15):
        super().__init__(buffer.duration, clock=clock)
        self.buffer = buffer
        self.fade_ms = fade_ms
        self._sound = None
        self._queued = None
        self._channel = None
        self._mixer_frequency, self._mixer_channels = init_mixer()
        self._chunk_frames = max(1, int(RENDER_CHUNK_SECONDS * self._mixer_frequency))
        self._next_frame = 0.0      # Source frame (fractional) where the next chunk starts
        self._render_rate = 1.0

    def _step(self, rate):
        # Source frames consumed per output frame
        return rate * self.buffer.sample_rate / self._mixer_frequency

    def _render(self, position, rate, max_frames=None):
        """
        Build int16 output frames for the mixer starting at `position`.

        Args:
            position: Start in seconds
            rate: Playback rate multiplier
            max_frames: Cap on the number of output frames (None = to the end)

        Returns:
            Array of shape (frames, mixer_channels), possibly empty
        """
        total = self.buffer.frame_count
        start = min(position * self.buffer.sample_rate, float(total))
        first = int(start)
        remaining = total - first

        step = self._step(rate)
        out_len = int(remaining / step) if remaining > 1 else 0
        if max_frames is not None:
            out_len = min(out_len, int(max_frames))
        if out_len <= 0:
            return np.zeros((0, self._mixer_channels), dtype=np.int16)

        positions = start + np.arange(out_len, dtype=np.float64) * step
        # Only the source frames this output actually reads
        last = min(total, int(positions[-1]) + 2)
        source = self.buffer.channels[:, first:last]
        index = np.arange(first, last, dtype=np.float64)
        resampled = np.stack([np.interp(positions, index, ch) for ch in source])

        # Match the mixer's channel layout
        if self._mixer_channels == 1:
            resampled = resampled.mean(axis=0, keepdims=True)
        elif resampled.shape[0] == 1:
            resampled = np.repeat(resampled, self._mixer_channels, axis=0)
        else:
            resampled = resampled[:self._mixer_channels]

        frames = np.clip(resampled.T * 32768.0, -32768, 32767).astype(np.int16)
        return np.ascontiguousarray(frames)

    def _make_sound(self, frames):
        # In-memory WAV; pygame converts it to the mixer's sample format
        wav_buffer = io.BytesIO()
        with wave.open(wav_buffer, 'wb') as wf:
            wf.setnchannels(frames.shape[1])
            wf.setsampwidth(2)
            wf.setframerate(self._mixer_frequency)
            wf.writeframes(frames.tobytes())
        wav_buffer.seek(0)
        return pygame.mixer.Sound(file=wav_buffer)

    def _next_chunk(self):
        """Render the chunk starting at _next_frame and advance past it. None at the end."""
        if self._next_frame >= self.buffer.frame_count:
            return None
        start_time = time.time()
        frames = self._render(self._next_frame / self.buffer.sample_rate,
                              self._render_rate, self._chunk_frames)
        if len(frames) == 0:
            self._next_frame = float(self.buffer.frame_count)
            return None

        logger.debug(f"Rendered {len(frames)} frames from frame {self._next_frame:.0f} "
                     f"at rate {self._render_rate:.3f} in {(time.time() - start_time) * 1000:.0f}ms")
        self._next_frame += len(frames) * self._step(self._render_rate)
        return self._make_sound(frames)

    def _feed(self):
        """Keep one chunk queued behind the one playing."""
        if self._channel is None or self._channel.get_queue() is not None:
            return
        # The previously queued chunk is the one playing now
        if self._queued is not None:
            self._sound, self._queued = self._queued, None
        sound = self._next_chunk()
        if sound is not None:
            self._queued = sound
            self._channel.queue(sound)

    def _start_output(self, position, rate):
        self._render_rate = rate
        self._next_frame = position * self.buffer.sample_rate
        sound = self._next_chunk()
        if sound is None:
            logger.debug("Nothing left to play")
            return

        self._sound = sound
        self._channel = sound.play(fade_ms=int(self.fade_ms))
        if self._channel is None:
            logger.warning("No free mixer channel, playback is silent")
            return
        self._feed()

    def _stop_output(self):
        if self._channel is not None:
            self._channel.stop()
            self._channel = None
        # Halting a channel starts its queued sound; stop that as well
        if self._queued is not None:
            self._queued.stop()
        self._sound = None
        self._queued = None

    def is_finished(self) -> bool:
        if not self.is_running:
            return False
        if super().is_finished():
            return True
        if self._channel is None:
            # Nothing rendered, or no mixer channel
            return True
        if self._channel.get_busy():
            self._feed()
            return False
        if self._next_frame < self.buffer.frame_count:
            # The queue ran dry before the track did; resume at the transport position
            logger.warning(f"Output underrun at {self.position():.3f}s, restarting")
            self._offset = self.position()
            self._restart()
            return self._channel is None
        return True

    def close(self):
        super().close()
        self.buffer = None
