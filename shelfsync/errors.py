"""
Error types shared by the acquisition pipeline.

Cache misses are not errors: lookups return None.
"""

from typing import Optional


class ShelfSyncError(Exception):
    """Base class for all shelfsync errors."""


class ValidationError(ShelfSyncError):
    """A URL is malformed or points somewhere we refuse to request."""


class TransientFetchError(ShelfSyncError):
    """Timeout, connection failure or retryable HTTP status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PermanentFetchError(ShelfSyncError):
    """The origin answered with a status that retrying will not change."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class PermanentExtractionError(ShelfSyncError):
    """No recognizable structure on a page."""


class UnsupportedContentType(ShelfSyncError):
    """Downloaded bytes are not an accepted image format."""


class ImageDownloadError(ShelfSyncError):
    """An image could not be downloaded after all attempts."""

    def __init__(self, url: str, attempts: int, reason: str):
        super().__init__(f"Failed to download image after {attempts} attempts: {reason}")
        self.url = url
        self.attempts = attempts
        self.reason = reason
