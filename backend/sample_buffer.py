"""
Decoded PCM audio as planar float samples.
"""

import numpy as np


class SampleBuffer:
    """
    Immutable planar PCM buffer.

    Attributes:
        channels: float32 array of shape (channel_count, frame_count), read-only
        sample_rate: Samples per second per channel
    """

    def __init__(self, channels, sample_rate):
        if sample_rate is None or not sample_rate > 0:
            raise ValueError(f"sample_rate must be > 0, got {sample_rate!r}")

        if isinstance(channels, np.ndarray):
            data = channels
        else:
            rows = [np.asarray(ch, dtype=np.float32).ravel() for ch in channels]
            if not rows:
                raise ValueError("SampleBuffer needs at least one channel")
            lengths = {len(row) for row in rows}
            if len(lengths) != 1:
                raise ValueError(f"All channels must have the same length, got {sorted(lengths)}")
            data = np.stack(rows)

        if data.ndim == 1:
            data = data.reshape(1, -1)
        if data.ndim != 2 or data.shape[0] == 0:
            raise ValueError(f"Expected (channels, frames) samples, got shape {data.shape}")

        self._channels = np.array(data, dtype=np.float32, copy=True)
        self._channels.setflags(write=False)
        self._sample_rate = float(sample_rate)

    @classmethod
    def from_interleaved(cls, frames, sample_rate):
        """Build from a (frame_count, channel_count) array, the layout decoders emit."""
        frames = np.asarray(frames)
        if frames.ndim == 1:
            frames = frames.reshape(-1, 1)
        return cls(frames.T, sample_rate)

    @property
    def channels(self) -> np.ndarray:
        return self._channels

    @property
    def frame_count(self) -> int:
        return int(self._channels.shape[1])

    @property
    def channel_count(self) -> int:
        return int(self._channels.shape[0])

    @property
    def sample_rate(self) -> float:
        return self._sample_rate

    @property
    def duration(self) -> float:
        """Length in seconds."""
        return self.frame_count / self._sample_rate

    def __repr__(self):
        return (f"SampleBuffer(channels={self.channel_count}, frames={self.frame_count}, "
                f"sample_rate={self._sample_rate:g})")
