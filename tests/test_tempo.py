"""
Tests for backend/tempo: energy autocorrelation, peak picking, interval band.
Run from project root: python -m pytest tests/test_tempo.py -v
"""
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import numpy as np
import pytest

from backend.sample_buffer import SampleBuffer
from backend.tempo import (
    TempoEstimator, estimate_bpm, energy_signal, find_peaks,
    autocorrelate_direct, autocorrelate_fft,
)
from tests.fakes import pulse_buffer


# -----------------------------------------------------------------------------
# Building blocks
# -----------------------------------------------------------------------------

def test_energy_is_mean_square_over_channels():
    buf = SampleBuffer([[1.0, 0.0], [-1.0, 0.5]], 100)
    np.testing.assert_allclose(energy_signal(buf), [1.0, 0.125])


def test_find_peaks_strict_local_maxima_from_index_two():
    ac = np.array([5.0, 0.0, 3.0, 1.0, 4.0, 2.0])
    np.testing.assert_array_equal(find_peaks(ac), [2, 4])


def test_find_peaks_ignores_lag_one_and_plateaus():
    assert len(find_peaks(np.array([0.0, 5.0, 0.0, 0.0]))) == 0
    assert len(find_peaks(np.array([0.0, 0.0, 2.0, 2.0, 0.0]))) == 0


def test_find_peaks_short_input():
    assert len(find_peaks(np.array([1.0, 2.0, 1.0]))) == 0


def test_direct_and_fft_autocorrelation_agree():
    rng = np.random.default_rng(7)
    signal = rng.uniform(0.5, 1.0, 2000)
    direct = autocorrelate_direct(signal, 300)
    fft = autocorrelate_fft(signal, 300)
    np.testing.assert_allclose(direct, fft, rtol=1e-9)


def test_fft_autocorrelation_keeps_exact_zeros():
    signal = np.zeros(1000)
    signal[::100] = 1.0
    ac = autocorrelate_fft(signal, 400)
    assert np.count_nonzero(ac) == 4
    np.testing.assert_allclose(ac[[0, 100, 200, 300]], [10, 9, 8, 7])


def test_fft_autocorrelation_keeps_faint_correlations():
    """A lag far below the loud zero-lag energy is still reported, not cleared."""
    signal = np.zeros(1000)
    signal[0] = 1.0
    signal[50] = 1e-11
    direct = autocorrelate_direct(signal, 100)
    fft = autocorrelate_fft(signal, 100)
    assert fft[50] == pytest.approx(1e-11, rel=1e-3)
    np.testing.assert_allclose(fft, direct, rtol=1e-3, atol=0)


# -----------------------------------------------------------------------------
# Estimation
# -----------------------------------------------------------------------------

def test_impulses_at_120_bpm():
    """Impulses every 0.5 s at 44.1 kHz over 10 s."""
    buf = pulse_buffer(22050, 10.0, 44100)
    assert estimate_bpm(buf) == pytest.approx(120.0, abs=2.0)


def test_impulses_at_100_bpm_direct_method():
    buf = pulse_buffer(600, 10.0, 1000)
    estimator = TempoEstimator(method="direct")
    assert estimator.estimate(buf) == pytest.approx(100.0)


def test_methods_give_same_tempo():
    buf = pulse_buffer(500, 8.0, 1000, channels=2)
    direct = TempoEstimator(method="direct").estimate(buf)
    fft = TempoEstimator(method="fft").estimate(buf)
    assert direct == pytest.approx(120.0)
    assert fft == pytest.approx(direct)


def test_silence_is_unknown_tempo():
    buf = SampleBuffer(np.zeros((2, 44100), dtype=np.float32), 44100)
    assert estimate_bpm(buf) == 0.0


def test_empty_buffer_is_unknown_tempo():
    assert estimate_bpm(SampleBuffer([[]], 44100)) == 0.0


def test_very_short_buffer_is_unknown_tempo():
    assert estimate_bpm(SampleBuffer([[1.0, 0.0, 1.0]], 44100)) == 0.0


def test_too_fast_pulse_rejected():
    """0.2 s between beats is below the 0.3 s lower bound."""
    buf = pulse_buffer(200, 10.0, 1000)
    assert TempoEstimator().estimate(buf) == 0.0


def test_interval_band_is_inclusive():
    # Exactly the lower bound: 0.3 s -> 200 BPM
    assert TempoEstimator().estimate(pulse_buffer(300, 10.0, 1000)) == pytest.approx(200.0)

    # Exactly the upper bound: 1.5 s -> 40 BPM (needs a longer lag window)
    wide = TempoEstimator(max_lag_seconds=4.0)
    assert wide.estimate(pulse_buffer(1500, 20.0, 1000)) == pytest.approx(40.0)
    assert wide.estimate(pulse_buffer(1501, 20.0, 1000)) == 0.0


def test_interval_band_in_samples():
    assert TempoEstimator().interval_band(44100) == (13230, 66150)


def test_max_lag_capped_by_buffer_length():
    estimator = TempoEstimator()
    assert estimator.max_lag(SampleBuffer(np.zeros((1, 50)), 100)) == 50
    assert estimator.max_lag(SampleBuffer(np.zeros((1, 1000)), 100)) == 200


def test_single_peak_is_unknown_tempo():
    """Only one beat period fits in the lag window, so there is no interval."""
    buf = pulse_buffer(1200, 10.0, 1000)
    assert TempoEstimator().estimate(buf) == 0.0


def test_invalid_configuration():
    with pytest.raises(ValueError):
        TempoEstimator(method="wavelet")
    with pytest.raises(ValueError):
        TempoEstimator(min_interval_seconds=2.0, max_interval_seconds=1.0)


def test_from_settings():
    estimator = TempoEstimator.from_settings({
        "max_lag_seconds": 3.0,
        "min_interval_seconds": 0.25,
        "max_interval_seconds": 2.0,
        "autocorrelation_method": "fft",
        "direct_max_work": 10,
    })
    assert estimator.method == "fft"
    assert estimator.interval_band(1000) == (250, 2000)


def test_estimate_does_not_modify_buffer():
    buf = pulse_buffer(600, 10.0, 1000)
    before = buf.channels.copy()
    first = estimate_bpm(buf)
    second = estimate_bpm(buf)
    assert first == second
    np.testing.assert_array_equal(buf.channels, before)
