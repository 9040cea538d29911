"""
Configuration constants for MultiDeck.

All tunable parameters in one place for easy adjustment and debugging.
Modify these values to fine-tune analysis, decoding and playback behavior.
"""

import sys
import os
import logging

from utils.preferences import get_analysis_preferences

logger = logging.getLogger("MultiDeck.Config")

# =============================================================================
# PATHS
# =============================================================================

# HELPER: Detect if we are running as a compiled exe or a script
def get_base_path():
    if getattr(sys, 'frozen', False):
        # We are running as an exe - use the folder the exe is sitting in
        return os.path.dirname(sys.executable)
    else:
        # We are running as a script - use the script's folder
        return os.path.dirname(os.path.abspath(__file__))

# ROOT DIR
BASE_DIR = get_base_path()

# Log files are written here by main.setup_logging()
LOG_DIR = os.path.join(BASE_DIR, "logs")

# =============================================================================
# DECODER SETTINGS
# =============================================================================

# Fallback sample rate (Hz) when ffprobe cannot report the native one
SAMPLE_RATE = 44100

# Fallback channel count when ffprobe cannot report the native one
CHANNELS = 2

# Seconds before an ffmpeg decode is abandoned
DECODE_TIMEOUT = 120

# Seconds before an ffprobe stream probe is abandoned
PROBE_TIMEOUT = 10

# Supported audio formats
SUPPORTED_FORMATS = ('.mp3', '.wav', '.ogg', '.flac', '.m4a', '.aac')

# =============================================================================
# WAVEFORM SETTINGS
# =============================================================================

# Number of amplitude bars in every waveform, whatever the track length
WAVEFORM_RESOLUTION = 200

# =============================================================================
# TEMPO DETECTION SETTINGS
# =============================================================================

# Autocorrelation never looks further back than this (seconds)
TEMPO_MAX_LAG_SECONDS = 2.0

# Peak-to-peak intervals outside this band are ignored (seconds).
# 0.3s - 1.5s corresponds to 200 - 40 BPM.
# TUNABLE: this band is a heuristic, widen it for very slow or very fast material
TEMPO_MIN_INTERVAL_SECONDS = 0.3
TEMPO_MAX_INTERVAL_SECONDS = 1.5

# "direct", "fft" or "auto"
AUTOCORRELATION_METHOD = "auto"

# In "auto" mode, the direct method is used while frames * lags stays below this
DIRECT_AUTOCORRELATION_MAX_WORK = 20_000_000

# =============================================================================
# PLAYBACK SETTINGS
# =============================================================================

# Pygame mixer buffer size (lower = less latency, but more CPU)
# 512 is good for low latency, 1024 is safer for older machines
MIXER_BUFFER_SIZE = 1024

# Semitones per pitch up/down step
PITCH_STEP_SEMITONES = 1.0

# Pitch offset limits (semitones). +-12 keeps the rate within 0.5x - 2.0x
PITCH_MIN_SEMITONES = -12.0
PITCH_MAX_SEMITONES = 12.0

# Seconds of mixer output rendered per Sound; the rest is queued chunk by chunk
RENDER_CHUNK_SECONDS = 5.0

# =============================================================================
# POLLING / MONITOR SETTINGS
# =============================================================================

# How often the caller refreshes session snapshots (seconds)
POLL_INTERVAL = 0.1

# Default port for the read-only HTTP monitor
MONITOR_PORT = 8080

# =============================================================================
# ANALYSIS SETTINGS (DYNAMIC LOADING)
# =============================================================================

DEFAULT_ANALYSIS_SETTINGS = {
    "waveform_resolution": WAVEFORM_RESOLUTION,
    "max_lag_seconds": TEMPO_MAX_LAG_SECONDS,
    "min_interval_seconds": TEMPO_MIN_INTERVAL_SECONDS,
    "max_interval_seconds": TEMPO_MAX_INTERVAL_SECONDS,
    "autocorrelation_method": AUTOCORRELATION_METHOD,
    "direct_max_work": DIRECT_AUTOCORRELATION_MAX_WORK,
}


def load_analysis_settings(overrides=None):
    """
    Build the analysis settings dict.

    Defaults come from this module, the user's saved preferences are applied
    on top, then any explicit overrides (e.g. from the command line).
    """
    settings = dict(DEFAULT_ANALYSIS_SETTINGS)

    for source in (get_analysis_preferences(), overrides or {}):
        for key, value in source.items():
            if key not in settings:
                logger.warning(f"Unknown analysis setting '{key}' ignored")
                continue
            if value is not None:
                settings[key] = value

    return settings
