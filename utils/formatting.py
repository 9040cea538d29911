"""
Formatting utilities for MultiDeck.
"""

from typing import Optional


def format_time(seconds: float, include_ms: bool = True) -> str:
    """
    Render a position or length for status lines.

    Returns:
        "m:ss.cc" with include_ms, otherwise "m:ss". Negative input shows as zero.
    """
    minutes, rest = divmod(max(0.0, float(seconds)), 60)
    if include_ms:
        return f"{int(minutes)}:{rest:05.2f}"
    return f"{int(minutes)}:{int(rest):02d}"


def parse_time(text: str) -> Optional[float]:
    """
    Seconds from "83.5", "1:23.5" or "1:01:23.5". None when unreadable.
    """
    fields = text.strip().split(':')
    if len(fields) > 3:
        return None
    try:
        # Every field but the last is a whole number of minutes/hours
        total = 0.0
        for field in fields[:-1]:
            total = total * 60 + int(field)
        return total * 60 + float(fields[-1])
    except ValueError:
        return None


def format_bpm(bpm: float, known: bool = True) -> str:
    """BPM for display; "--" when the tempo could not be detected."""
    if not known or bpm <= 0:
        return "--"
    return f"{bpm:.0f}"


def format_snapshot(snapshot) -> str:
    """
    One status line per deck.

    Returns:
        e.g. "song.mp3 [PLAYING] BPM: 120 | Length: 3:00 | Remaining: 2:15 | Pitch: +1.0"
    """
    state = snapshot.state.name
    if state == 'FAILED':
        return f"{snapshot.name} [FAILED] {snapshot.error_kind}: {snapshot.error_message}"
    if state in ('UNLOADED', 'LOADING') and snapshot.duration_seconds <= 0:
        return f"{snapshot.name} [{state}] Loading..."

    return (f"{snapshot.name} [{state}] "
            f"BPM: {format_bpm(snapshot.bpm, snapshot.tempo_known)} | "
            f"Length: {format_time(snapshot.duration_seconds, include_ms=False)} | "
            f"Remaining: {format_time(snapshot.remaining_seconds, include_ms=False)} | "
            f"Pitch: {snapshot.pitch_semitones:+.1f}")
