"""
Exceptions raised by the ingestion pipeline.
"""


class IngestError(Exception):
    """Base exception for ingestion errors."""

    pass


class ConfigError(IngestError):
    """Configuration could not be loaded or failed validation."""

    pass


class NetworkError(IngestError):
    """Error talking to the remote archive.

    ``retryable`` is True for timeouts, connection failures and HTTP 5xx.
    """

    def __init__(self, message, retryable=False, status_code=None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class InvalidInputError(IngestError):
    """A URL was rejected before any request was made."""

    pass


class ParseError(IngestError):
    """A line or a whole file could not be parsed.

    File-level rejections carry the ``ParseStats`` collected so far.
    """

    def __init__(self, message, stats=None):
        super().__init__(message)
        self.stats = stats


class StorageError(IngestError):
    """A database operation failed and was rolled back."""

    pass
