"""
Utility functions for MultiDeck.
"""

from .formatting import format_time, parse_time, format_bpm, format_snapshot

__all__ = ['format_time', 'parse_time', 'format_bpm', 'format_snapshot']
