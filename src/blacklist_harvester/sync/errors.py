"""Errors raised by the sync pipeline."""


class SyncError(Exception):
    """Base exception for sync failures."""


class MalformedEventError(SyncError):
    """Raised when a raw event cannot be interpreted with its contract layout."""


class WindowShrinkExhaustedError(SyncError):
    """Raised when a window still exceeds provider limits at the minimum size."""


class PaginationStallError(SyncError):
    """Raised when an indexer keeps returning the same continuation token."""
