#!/usr/bin/env python3
"""
MultiDeck - Multi-Track Player with Waveform and Tempo Analysis

Loads one or more audio files in the background, shows their waveform
envelope and estimated BPM, and optionally plays them with a pitch offset.

Usage:
    python main.py song.mp3 other.wav [--play] [--pitch 2] [--start 1:30] [--monitor]
"""

import os
import sys

# Must be done BEFORE importing pygame (which happens in backend imports)
os.environ['PYGAME_HIDE_SUPPORT_PROMPT'] = "1"

import logging
import argparse
import time
import shutil
from datetime import datetime

from config import LOG_DIR, POLL_INTERVAL, MONITOR_PORT, load_analysis_settings
from utils.formatting import format_snapshot, parse_time

logger = logging.getLogger("MultiDeck")

# =============================================================================
# HELPER: DETECT BASE PATH
# =============================================================================
def get_base_path():
    """Returns the directory where the executable or script is running."""
    if getattr(sys, 'frozen', False):
        # Running as compiled app/exe
        return os.path.dirname(sys.executable)
    else:
        # Running as script
        return os.path.dirname(os.path.abspath(__file__))

# =============================================================================
# UTILS
# =============================================================================

def setup_logging(debug: bool = False, log_dir: str = LOG_DIR) -> logging.Logger:
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(log_dir, f"multideck_{timestamp}.log")

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout), logging.FileHandler(log_file)]
    )
    return logging.getLogger("MultiDeck")

def find_ffmpeg() -> str:
    """
    Robustly find FFmpeg.
    PRIORITY 1: Check sys._MEIPASS (PyInstaller bundles --add-binary files here).
    PRIORITY 2: Check the local folder (next to the .exe or script).
    PRIORITY 3: Check global system PATH.
    """
    binary_name = "ffmpeg.exe" if os.name == 'nt' else "ffmpeg"

    candidates = []
    if getattr(sys, '_MEIPASS', None):
        candidates.append(os.path.join(sys._MEIPASS, binary_name))
    candidates.append(os.path.join(get_base_path(), binary_name))

    for candidate in candidates:
        if os.path.isfile(candidate):
            if os.name != 'nt':
                try:
                    os.chmod(candidate, 0o755)
                except OSError as e:
                    logger.debug(f"Could not mark {candidate} executable: {e}")
            return candidate

    # Global PATH, or the bare name as a last resort (decode will report it missing)
    return shutil.which("ffmpeg") or "ffmpeg"

def _position_arg(text):
    seconds = parse_time(text)
    if seconds is None or seconds < 0:
        raise argparse.ArgumentTypeError(f"not a position: '{text}' (use 90, 1:30 or 1:30.5)")
    return seconds

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="multideck",
        description="Analyze and play audio tracks (waveform, BPM, pitch)."
    )
    parser.add_argument("files", nargs="+", help="Audio files to load")
    parser.add_argument("--play", action="store_true", help="Play every loaded track")
    parser.add_argument("--pitch", type=float, default=0.0, help="Pitch offset in semitones (-12 to 12)")
    parser.add_argument("--start", type=_position_arg, default=0.0,
                        help="Start position for every track (seconds or m:ss)")
    parser.add_argument("--resolution", type=int, default=None, help="Waveform bars per track")
    parser.add_argument("--no-audio", action="store_true", help="Track playback time without sound output")
    parser.add_argument("--monitor", action="store_true", help="Serve the read-only HTTP monitor")
    parser.add_argument("--port", type=int, default=MONITOR_PORT)
    parser.add_argument("--ffmpeg", default=None)
    parser.add_argument("--debug", action="store_true")
    return parser


def run(registry, files, play=False, pitch=0.0, start=0.0, shared_state=None,
        poll_interval=POLL_INTERVAL, printer=print):
    """
    The caller loop: add files, then pump and poll on a fixed cadence.

    Each track is moved to `start` and shifted by `pitch` as soon as it has
    loaded. Without `play` the loop returns once every load has finished;
    with `play` it also starts the tracks and runs until all have ended.

    Returns:
        Process exit code (1 if any track failed to load)
    """
    for path in files:
        registry.add(path)

    prepared = set()
    last_lines = {}
    while True:
        registry.pump()

        for handle in registry.handles():
            session = registry.get(handle)
            if handle in prepared or not session.is_loaded:
                continue
            prepared.add(handle)
            if start:
                session.seek(start)
            if pitch:
                session.change_pitch(pitch)
            if play:
                session.play()

        snapshots = registry.poll()
        if shared_state is not None:
            shared_state.update_from_snapshots(snapshots)

        for snap in snapshots:
            line = format_snapshot(snap)
            # Only print when a deck's line changes (positions tick every poll)
            key = (snap.state, snap.bpm) if not play else line
            if last_lines.get(snap.handle) != key:
                last_lines[snap.handle] = key
                printer(line)

        loading = any(s.state.name in ('UNLOADED', 'LOADING') for s in snapshots)
        playing = any(s.state.name == 'PLAYING' for s in snapshots)
        if not loading and not playing:
            break
        time.sleep(poll_interval)

    return 1 if any(s.state.name == 'FAILED' for s in registry.poll()) else 0


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None):
    args = build_parser().parse_args(argv)

    # 1. SETUP & LOGGING (Must happen first!)
    setup_logging(debug=args.debug)
    logger.info("MultiDeck Starting")

    ffmpeg_path = args.ffmpeg or find_ffmpeg()
    logger.info(f"Using ffmpeg: {ffmpeg_path}")

    # Late imports so pygame only loads after the environment is prepared
    from backend import SessionRegistry, FfmpegDecoder, ClockSink, PygameSink

    settings = load_analysis_settings({"waveform_resolution": args.resolution})

    if args.no_audio or not args.play:
        sink_factory = lambda buffer: ClockSink(buffer.duration)
    else:
        sink_factory = PygameSink

    registry = SessionRegistry(
        decoder=FfmpegDecoder(ffmpeg_path),
        sink_factory=sink_factory,
        settings=settings,
    )

    server = None
    shared_state = None
    if args.monitor:
        from backend.web_server import DeckWebServer, SharedSessionState
        shared_state = SharedSessionState()
        server = DeckWebServer(shared_state, port=args.port)
        print(f"Monitor: {server.start()}")

    exit_code = 0
    try:
        exit_code = run(registry, args.files, play=args.play, pitch=args.pitch, start=args.start,
                        shared_state=shared_state)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        registry.shutdown()
        if server is not None:
            server.stop()
        logger.info("MultiDeck Exiting")

    return exit_code

if __name__ == "__main__":
    sys.exit(main())
