"""
Error taxonomy for the KR1 memory runtime.

Read misses never raise; they come back as empty results.
"""


class MemoryLayerError(Exception):
    """Base class for all memory runtime errors."""

    pass


class InitializationError(MemoryLayerError):
    """Store or service cannot be used (e.g. wrong key for an existing database)."""

    pass


class TransientIOError(MemoryLayerError):
    """Disk or network failure surfaced to the caller, never retried here."""

    pass


class NotFoundError(MemoryLayerError):
    """Requested entity does not exist."""

    pass


class ValidationError(MemoryLayerError):
    """Malformed input such as an unknown file type or role."""

    pass


class NotInitializedError(MemoryLayerError):
    """Operation issued before the owning service finished initializing."""

    pass


class VectorMemoryError(MemoryLayerError):
    """Neither the primary nor the fallback vector backend is usable."""

    pass


class ModelCallError(MemoryLayerError):
    """The external model call failed for a turn."""

    pass


class TurnCancelledError(MemoryLayerError):
    """The turn was cancelled through its cancellation token."""

    pass
