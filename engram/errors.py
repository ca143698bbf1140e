"""Shared error types for engram.

Goal: don't silently turn infrastructure failures into empty results.
Index/state failures should be explicit and handled at the right layer.
"""


class EngramError(Exception):
    """Base error for engram."""


class ConfigurationError(EngramError):
    """Stored ranking/scope/decay parameters are malformed or out of range."""


class IndexUnavailable(EngramError):
    """The index primitive failed while scoring candidates."""


class EmbeddingUnavailable(EngramError):
    """No embedding could be produced (provider disabled, missing or failing)."""


class InvariantViolation(EngramError):
    """A derived value broke its contract (e.g. strength outside [0, importance])."""


class StaleStateError(EngramError):
    """Evolution state changed between read and commit (compare-and-swap lost)."""


class MemoryNotFoundError(EngramError):
    """Memory id does not exist."""
