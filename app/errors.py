"""Exception types shared across the tracker services."""

from __future__ import annotations


class CatalogError(Exception):
    """Base class for failures talking to the upstream content catalog."""


class NetworkError(CatalogError):
    """A catalog call failed in transport or returned an HTTP error."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimited(NetworkError):
    """The catalog refused the call because of its rate limit."""

    def __init__(self, message: str, *, retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class InvalidImportFormat(ValueError):
    """An import payload could not be parsed or validated."""


class SyncError(Exception):
    """A bulk sync job finished with failed items."""

    def __init__(self, succeeded: int, failed: int, total: int):
        super().__init__(
            f"{failed} of {total} items failed ({succeeded} succeeded)"
        )
        self.succeeded = succeeded
        self.failed = failed
        self.total = total
