"""
Background load pipeline: decode -> waveform -> tempo.

Runs on a worker thread. It never touches a PlaybackSession; the outcome
is packed into a LoadResult and handed back through the registry's queue.
"""

import time
import logging

from .errors import EngineError, LoadCancelled
from .tempo import TempoEstimator
from .waveform import extract_waveform

logger = logging.getLogger("MultiDeck.Loader")


class TrackAnalysis:
    """Everything a successful load produces."""
    def __init__(self, buffer, waveform, bpm):
        self.buffer = buffer
        self.waveform = waveform
        self.bpm = bpm


class LoadResult:
    """
    Message posted by a load worker.

    Exactly one of `analysis` / `error_kind` is set.
    """
    def __init__(self, handle, token, analysis=None, error_kind=None, error_message=""):
        self.handle = handle
        self.token = token
        self.analysis = analysis
        self.error_kind = error_kind
        self.error_message = error_message

    @property
    def ok(self) -> bool:
        return self.analysis is not None


def _check_cancelled(cancel_event, stage):
    if cancel_event is not None and cancel_event.is_set():
        raise LoadCancelled(f"Load cancelled before {stage}")


def analyze_source(source, decoder, settings, cancel_event=None) -> TrackAnalysis:
    """
    Decode and analyze one source.

    Args:
        source: Path handed to the decoder
        decoder: Object with decode(source) -> SampleBuffer
        settings: Dict from config.load_analysis_settings()
        cancel_event: Optional threading.Event checked between stages

    Raises:
        DecodeError, BufferReadError, LoadCancelled
    """
    start_time = time.time()

    _check_cancelled(cancel_event, "decode")
    buffer = decoder.decode(source)

    _check_cancelled(cancel_event, "waveform")
    waveform = extract_waveform(buffer, settings["waveform_resolution"])

    _check_cancelled(cancel_event, "tempo")
    bpm = TempoEstimator.from_settings(settings).estimate(buffer)

    elapsed = time.time() - start_time
    tempo_str = f"{bpm:.1f} BPM" if bpm > 0 else "tempo unknown"
    logger.info(f"Analysis done in {elapsed:.2f}s: {buffer.duration:.2f}s of audio, {tempo_str}")
    return TrackAnalysis(buffer, waveform, bpm)


def run_load_job(handle, token, source, decoder, settings, cancel_event, results):
    """
    Worker thread body. Always posts exactly one LoadResult to `results`.
    """
    logger.info(f">>> LOADING (handle={handle}, token={token}) <<<")
    try:
        analysis = analyze_source(source, decoder, settings, cancel_event)
        result = LoadResult(handle, token, analysis=analysis)
    except EngineError as e:
        if isinstance(e, LoadCancelled):
            logger.debug(f"Load {handle} cancelled: {e}")
        else:
            logger.error(f"Load {handle} failed: {e.kind}: {e}")
        result = LoadResult(handle, token, error_kind=e.kind, error_message=str(e))
    except Exception as e:
        # Anything else is a bug in analysis; it must still only fail this session
        logger.exception(f"Unexpected error loading {handle}: {e}")
        result = LoadResult(handle, token, error_kind=type(e).__name__, error_message=str(e))

    results.put(result)
