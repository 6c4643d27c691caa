#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Any, Dict, Optional


class FeedKeeperError(Exception):
    """Base class for errors raised by the feed keeper core."""


class FetchError(FeedKeeperError):
    """Raised when a feed cannot be retrieved or parsed.

    Attributes:
        url: The feed URL that failed.
        status: HTTP status code when the failure was an HTTP response, else None.
    """

    def __init__(self, message: str, url: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class FeedNotFoundError(FeedKeeperError):
    """Raised when an operation references a feed id that does not exist."""


class FeedExistsError(FeedKeeperError):
    """Raised when subscribing to a URL that is already subscribed."""


class BackupError(FeedKeeperError):
    """Raised when a snapshot cannot be written or the backup directory is unusable.

    Attributes:
        details: Optional context (paths, counts) for diagnostics.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class RestoreError(FeedKeeperError):
    """Raised when a snapshot fails validation or cannot be installed."""


__all__ = [
    "FeedKeeperError",
    "FetchError",
    "FeedNotFoundError",
    "FeedExistsError",
    "BackupError",
    "RestoreError",
]
