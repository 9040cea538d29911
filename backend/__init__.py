"""
Backend module for MultiDeck.

Contains decoding, analysis (waveform + tempo), playback sessions and the
session registry. These modules are UI-agnostic and can be used
independently for testing.
"""

from .audio_engine import ClockSink, PygameSink
from .decoder import FfmpegDecoder
from .errors import EngineError, DecodeError, BufferReadError
from .sample_buffer import SampleBuffer
from .session import PlaybackSession, SessionSnapshot, SessionState
from .state_manager import SessionRegistry
from .tempo import TempoEstimator, estimate_bpm
from .waveform import extract_waveform

__all__ = [
    'ClockSink',
    'PygameSink',
    'FfmpegDecoder',
    'EngineError',
    'DecodeError',
    'BufferReadError',
    'SampleBuffer',
    'PlaybackSession',
    'SessionSnapshot',
    'SessionState',
    'SessionRegistry',
    'TempoEstimator',
    'estimate_bpm',
    'extract_waveform',
]
