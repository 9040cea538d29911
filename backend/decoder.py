"""
FFmpeg-based decoder.

Turns a file path into a SampleBuffer. ffprobe reports the native sample
rate and channel count, then ffmpeg streams signed 16-bit PCM to stdout.

This module has NO playback dependencies and can be tested independently.
"""

import os
import logging
import subprocess
import numpy as np

from config import (
    SAMPLE_RATE, CHANNELS, DECODE_TIMEOUT, PROBE_TIMEOUT, SUPPORTED_FORMATS,
)
from .errors import DecodeError, BufferReadError
from .sample_buffer import SampleBuffer

# Suppress console window on Windows for subprocess calls
_SUBPROCESS_FLAGS = {}
if os.name == 'nt':
    _SUBPROCESS_FLAGS['creationflags'] = subprocess.CREATE_NO_WINDOW

logger = logging.getLogger("MultiDeck.Decoder")

# 16-bit audio = 2 bytes per sample per channel
_BYTES_PER_SAMPLE = 2


class FfmpegDecoder:
    """
    Decodes audio files with the ffmpeg command line tools.

    Usage:
        decoder = FfmpegDecoder("ffmpeg")
        buffer = decoder.decode("song.mp3")
    """

    def __init__(self, ffmpeg_path="ffmpeg", timeout=DECODE_TIMEOUT):
        """
        Args:
            ffmpeg_path: Path to ffmpeg executable (ffprobe is expected beside it)
            timeout: Seconds before a decode is abandoned
        """
        self.ffmpeg_path = ffmpeg_path
        self.timeout = timeout

    @property
    def ffprobe_path(self):
        # Derive ffprobe path from ffmpeg path
        head, tail = os.path.split(self.ffmpeg_path)
        return os.path.join(head, tail.replace("ffmpeg", "ffprobe"))

    def decode(self, source) -> SampleBuffer:
        """
        Decode a file into a SampleBuffer.

        Raises:
            DecodeError: file missing/unsupported, ffmpeg missing or failing, empty stream
            BufferReadError: ffmpeg output does not form whole frames
        """
        path = os.fspath(source)
        name = os.path.basename(path)

        if not os.path.isfile(path):
            raise DecodeError(f"File not found: {path}")

        ext = os.path.splitext(path)[1].lower()
        if ext not in SUPPORTED_FORMATS:
            raise DecodeError(f"Unsupported format '{ext}' ({name})")

        sample_rate, channels = self._probe_stream(path)
        logger.info(f"=== DECODING: {name} ({sample_rate} Hz, {channels} ch) ===")

        cmd = [
            self.ffmpeg_path, '-i', path,
            '-f', 's16le', '-ar', str(sample_rate), '-ac', str(channels),
            '-v', 'quiet', '-'
        ]

        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
                **_SUBPROCESS_FLAGS
            )
        except FileNotFoundError as e:
            raise DecodeError(f"ffmpeg not found at '{self.ffmpeg_path}'") from e
        except subprocess.TimeoutExpired as e:
            raise DecodeError(f"Decoding {name} timed out after {self.timeout}s") from e

        if proc.returncode != 0:
            detail = proc.stderr.decode(errors='replace').strip() if proc.stderr else ""
            raise DecodeError(f"FFmpeg failed to decode {name} (exit {proc.returncode}) {detail}".strip())

        return self._to_buffer(proc.stdout, sample_rate, channels, name)

    def _probe_stream(self, path):
        """
        Get the native sample rate and channel count with ffprobe.

        Returns:
            (sample_rate, channels); config fallbacks when probing fails
        """
        cmd = [
            self.ffprobe_path,
            '-v', 'quiet',
            '-select_streams', 'a:0',
            '-show_entries', 'stream=sample_rate,channels',
            '-of', 'default=noprint_wrappers=1',
            path
        ]
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=PROBE_TIMEOUT,
                **_SUBPROCESS_FLAGS
            )
        except FileNotFoundError:
            logger.warning("ffprobe not found, using default stream format")
            return SAMPLE_RATE, CHANNELS
        except subprocess.TimeoutExpired:
            logger.warning("ffprobe timed out, using default stream format")
            return SAMPLE_RATE, CHANNELS

        if proc.returncode != 0:
            logger.warning("ffprobe returned non-zero, using default stream format")
            return SAMPLE_RATE, CHANNELS

        fields = {}
        for line in proc.stdout.decode(errors='replace').splitlines():
            key, sep, value = line.partition('=')
            if sep:
                fields[key.strip()] = value.strip()

        try:
            sample_rate = int(fields['sample_rate'])
            channels = int(fields['channels'])
        except (KeyError, ValueError):
            logger.warning(f"ffprobe output incomplete ({fields}), using default stream format")
            return SAMPLE_RATE, CHANNELS

        if sample_rate <= 0 or channels <= 0:
            return SAMPLE_RATE, CHANNELS

        logger.debug(f"ffprobe stream: {sample_rate} Hz, {channels} ch")
        return sample_rate, channels

    @staticmethod
    def _to_buffer(raw, sample_rate, channels, name="") -> SampleBuffer:
        """Convert raw s16le bytes into a float SampleBuffer in [-1, 1)."""
        if not raw:
            raise DecodeError(f"Decoded audio is empty ({name})")

        frame_bytes = _BYTES_PER_SAMPLE * channels
        if len(raw) % frame_bytes != 0:
            raise BufferReadError(
                f"Decoded stream of {len(raw)} bytes is not a whole number of "
                f"{channels}-channel frames ({name})"
            )

        try:
            samples = np.frombuffer(raw, dtype='<i2').reshape(-1, channels)
            floats = samples.astype(np.float32) / 32768.0
            buffer = SampleBuffer.from_interleaved(floats, sample_rate)
        except ValueError as e:
            raise BufferReadError(f"Could not read samples from {name}: {e}") from e

        logger.info(f"Decoded {buffer.frame_count} frames ({buffer.duration:.2f}s) from {name}")
        return buffer
