"""
Tempo estimation via autocorrelation of the energy signal.

1. Energy: per-frame mean over channels of the squared sample.
2. Autocorrelate the energy for lags up to TEMPO_MAX_LAG_SECONDS.
3. Local maxima of the autocorrelation are beat-period candidates.
4. Intervals between consecutive peaks that fall inside the accepted band
   are averaged and turned into BPM.

A result of 0.0 means "no confident estimate" and is not an error.
"""

import logging
import numpy as np

from config import (
    TEMPO_MAX_LAG_SECONDS,
    TEMPO_MIN_INTERVAL_SECONDS, TEMPO_MAX_INTERVAL_SECONDS,
    AUTOCORRELATION_METHOD, DIRECT_AUTOCORRELATION_MAX_WORK,
)

logger = logging.getLogger("MultiDeck.Tempo")

AUTOCORRELATION_METHODS = ("auto", "direct", "fft")


def _fft_noise_floor(n, zero_lag):
    # Rounding error of an FFT correlation grows with the length and the signal energy
    return n * np.finfo(np.float64).eps * abs(zero_lag)


def energy_signal(buffer) -> np.ndarray:
    """Mono energy: e[i] = mean over channels of sample[c][i]**2."""
    samples = buffer.channels.astype(np.float64)
    return np.mean(samples * samples, axis=0)


def autocorrelate_direct(signal: np.ndarray, max_lag: int) -> np.ndarray:
    """ac[lag] = sum(signal[i] * signal[i + lag]) for lag in [0, max_lag)."""
    n = len(signal)
    ac = np.zeros(max_lag, dtype=np.float64)
    for lag in range(max_lag):
        ac[lag] = np.dot(signal[:n - lag], signal[lag:])
    return ac


def autocorrelate_fft(signal: np.ndarray, max_lag: int) -> np.ndarray:
    """
    Same values as autocorrelate_direct, computed from the power spectrum.

    The signal is zero padded to at least len + max_lag so the circular
    correlation does not wrap. Values within machine-precision rounding of
    zero (n * eps * ac[0]) are cleared so flat stretches compare equal, like
    they do in the direct sum.
    """
    n = len(signal)
    if n == 0 or max_lag <= 0:
        return np.zeros(max(max_lag, 0), dtype=np.float64)

    size = 1
    while size < n + max_lag:
        size *= 2

    spectrum = np.fft.rfft(signal, size)
    ac = np.fft.irfft(spectrum * np.conj(spectrum), size)[:max_lag]

    floor = _fft_noise_floor(n, ac[0])
    ac[np.abs(ac) <= floor] = 0.0
    return ac


def find_peaks(ac: np.ndarray) -> np.ndarray:
    """Indices i with 2 <= i < len-1 that are strictly above both neighbors."""
    if len(ac) < 4:
        return np.zeros(0, dtype=np.int64)
    middle = ac[2:-1]
    is_peak = (middle > ac[1:-2]) & (middle > ac[3:])
    return np.nonzero(is_peak)[0] + 2


class TempoEstimator:
    """
    Estimates BPM from a SampleBuffer.

    Usage:
        estimator = TempoEstimator()
        bpm = estimator.estimate(buffer)   # 0.0 when undetected
    """

    def __init__(self, max_lag_seconds=TEMPO_MAX_LAG_SECONDS,
                 min_interval_seconds=TEMPO_MIN_INTERVAL_SECONDS,
                 max_interval_seconds=TEMPO_MAX_INTERVAL_SECONDS,
                 method=AUTOCORRELATION_METHOD,
                 direct_max_work=DIRECT_AUTOCORRELATION_MAX_WORK):
        if method not in AUTOCORRELATION_METHODS:
            raise ValueError(f"Unknown autocorrelation method '{method}', "
                             f"expected one of {AUTOCORRELATION_METHODS}")
        if min_interval_seconds > max_interval_seconds:
            raise ValueError("min_interval_seconds must not exceed max_interval_seconds")

        self.max_lag_seconds = float(max_lag_seconds)
        self.min_interval_seconds = float(min_interval_seconds)
        self.max_interval_seconds = float(max_interval_seconds)
        self.method = method
        self.direct_max_work = int(direct_max_work)

    @classmethod
    def from_settings(cls, settings):
        """Build from a config.load_analysis_settings() dict."""
        return cls(
            max_lag_seconds=settings["max_lag_seconds"],
            min_interval_seconds=settings["min_interval_seconds"],
            max_interval_seconds=settings["max_interval_seconds"],
            method=settings["autocorrelation_method"],
            direct_max_work=settings["direct_max_work"],
        )

    def max_lag(self, buffer) -> int:
        return min(buffer.frame_count, int(round(buffer.sample_rate * self.max_lag_seconds)))

    def interval_band(self, sample_rate):
        """Accepted peak-to-peak interval range in samples (inclusive)."""
        return (int(round(sample_rate * self.min_interval_seconds)),
                int(round(sample_rate * self.max_interval_seconds)))

    def autocorrelation(self, buffer) -> np.ndarray:
        energy = energy_signal(buffer)
        max_lag = self.max_lag(buffer)

        method = self.method
        if method == "auto":
            method = "direct" if len(energy) * max_lag <= self.direct_max_work else "fft"

        logger.debug(f"Autocorrelation: {len(energy)} frames, max_lag={max_lag}, method={method}")
        if method == "direct":
            return autocorrelate_direct(energy, max_lag)
        return autocorrelate_fft(energy, max_lag)

    def estimate(self, buffer) -> float:
        """
        Estimate tempo in BPM.

        Returns:
            BPM, or 0.0 when no interval survives the filtering
        """
        if buffer.frame_count == 0:
            return 0.0

        ac = self.autocorrelation(buffer)
        peaks = find_peaks(ac)
        intervals = np.diff(peaks)

        low, high = self.interval_band(buffer.sample_rate)
        kept = intervals[(intervals >= low) & (intervals <= high)]

        if len(kept) == 0:
            logger.debug(f"No valid intervals found ({len(peaks)} peaks)")
            return 0.0

        average_interval = float(np.mean(kept))
        bpm = 60.0 * buffer.sample_rate / average_interval
        logger.debug(f"Average interval: {average_interval:.1f} samples -> {bpm:.2f} BPM")
        return bpm


def estimate_bpm(buffer, **kwargs) -> float:
    """Convenience wrapper: TempoEstimator(**kwargs).estimate(buffer)."""
    return TempoEstimator(**kwargs).estimate(buffer)
