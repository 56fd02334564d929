"""
Cache error types.

Only CacheEntryCorruptError (and producer errors, which pass through
untouched) escape to normal callers of the store.
"""


class CacheError(Exception):
    """Base class for cache failures."""
    pass


class CacheEntryCorruptError(CacheError):
    """Raised when a stored entry cannot be decoded."""

    def __init__(self, key: str, reason: str = ""):
        self.key = key
        self.reason = reason
        message = f"Cache entry for {key} is corrupt"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class CacheSerializationError(CacheError):
    """Raised when a value cannot be serialized for storage."""
    pass
