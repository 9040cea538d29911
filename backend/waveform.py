"""
Waveform envelope extraction.

Reduces a SampleBuffer to a fixed number of peak amplitudes for display.
The output length never depends on the track length, so a 1-frame clip and
a 3-hour mix both give exactly `resolution` bars.
"""

import logging
import numpy as np

from config import WAVEFORM_RESOLUTION

logger = logging.getLogger("MultiDeck.Waveform")


def window_bounds(frame_count: int, resolution: int):
    """
    Start/end frame of every window.

    Window i covers [floor(i*N/R), floor((i+1)*N/R)). When N < R some
    windows are empty (start == end).
    """
    edges = (np.arange(resolution + 1, dtype=np.int64) * frame_count) // resolution
    return edges[:-1], edges[1:]


def extract_waveform(buffer, resolution: int = WAVEFORM_RESOLUTION) -> np.ndarray:
    """
    Compute a normalized peak envelope.

    Args:
        buffer: SampleBuffer to analyze
        resolution: Number of output values

    Returns:
        Read-only float64 array of exactly `resolution` values in [0, 1].
        All zeros for silence or an empty buffer.
    """
    resolution = int(resolution)
    if resolution < 1:
        raise ValueError(f"Waveform resolution must be >= 1, got {resolution}")

    peaks = np.zeros(resolution, dtype=np.float64)
    frame_count = buffer.frame_count

    if frame_count > 0:
        # Loudest channel per frame
        frame_peaks = np.abs(buffer.channels).max(axis=0)

        starts, ends = window_bounds(frame_count, resolution)
        # reduceat needs in-range indices; every start is < frame_count here
        peaks = np.maximum.reduceat(frame_peaks, starts).astype(np.float64)
        peaks[starts == ends] = 0.0

    max_val = peaks.max()
    if max_val > 0:
        peaks = peaks / max_val

    # Guard against float32 -> float64 rounding nudging a value past 1.0
    np.clip(peaks, 0.0, 1.0, out=peaks)
    peaks.setflags(write=False)

    logger.debug(f"Waveform extracted: {frame_count} frames -> {resolution} bars")
    return peaks
