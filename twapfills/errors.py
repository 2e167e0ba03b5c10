"""
Exception types for the ingestion pipeline.

Failures are recovered at the smallest enclosing unit (line, file, day).
Only the "unavailable" errors are meant to escape to the top level.
"""


class TwapFillsError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigError(TwapFillsError):
    """Raised when a configuration value cannot be parsed."""
    pass


class ObjectStoreError(TwapFillsError):
    """Raised when listing or fetching a remote object fails."""
    pass


class ObjectStoreUnavailable(ObjectStoreError):
    """Raised when the object store cannot be reached at all."""
    pass


class ArchiveError(TwapFillsError):
    """Raised when a compressed file cannot be expanded."""
    pass


class PersistenceError(TwapFillsError):
    """Raised when a batch of fills cannot be written."""

    def __init__(self, message: str, source_key: str = "", rows_inserted: int = 0):
        super().__init__(message)
        self.source_key = source_key
        self.rows_inserted = rows_inserted


class StoreUnavailable(TwapFillsError):
    """Raised when the persistent store cannot be reached at all."""
    pass
