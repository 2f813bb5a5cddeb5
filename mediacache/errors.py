"""
Exception classes for the media range cache.

    CacheError (base)
        ResourceUnavailable - nothing cached and the upstream cannot be reached
        FetchFailed - an upstream fetch for one gap failed or timed out
        CachePersistenceError - the span index could not be written
        CorruptIndexEntry - a persisted span has missing or short payload data
        HandleClosed - a read was attempted on a closed handle

Fetch and storage errors belong to the read call that triggered them; none of
these leave the in-memory index in an inconsistent state.
"""


class CacheError(Exception):
    """
    Base exception for all cache errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with context (resource, byte range, cause).
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ResourceUnavailable(CacheError):
    """Raised by open() when no cached byte covers the range and the upstream is unreachable."""


class FetchFailed(CacheError):
    """
    Raised by read() when the upstream fetch for a gap fails or times out.

    Every reader waiting on the same in-flight fetch receives this error.
    Partial bytes of the failed fetch are discarded, so retrying the read
    issues a new fetch for the same gap.
    """


class CachePersistenceError(CacheError):
    """Raised when the span index cannot be persisted after one retry."""


class CorruptIndexEntry(CacheError):
    """A persisted span whose payload file is missing or shorter than declared."""


class HandleClosed(CacheError):
    """Raised when reading from a handle that has already been closed."""
