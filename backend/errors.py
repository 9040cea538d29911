"""
Error types raised while loading a track.

Every load error is caught at the session boundary and turned into a
FAILED session; `kind` is what snapshots and the monitor show.
"""


class EngineError(Exception):
    """Base class for load pipeline errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class DecodeError(EngineError):
    """The source could not be read or decoded (missing, unsupported, corrupt, empty)."""


class BufferReadError(EngineError):
    """Decoding ran but the sample data could not be turned into a buffer."""


class LoadCancelled(EngineError):
    """The load was abandoned because its session was removed."""
