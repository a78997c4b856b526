"""Exception hierarchy surfaced by the change-feed processor."""

from __future__ import annotations


class ChangeFeedError(RuntimeError):
    """Base class for caller-visible change-feed failures."""


class StorageError(ChangeFeedError):
    """Raised when the checkpoint or heartbeat backend cannot be reached."""


class CheckpointWriteError(StorageError):
    """Raised when a resume position could not be persisted."""


class FeedError(ChangeFeedError):
    """Raised when the underlying change feed cursor fails."""


class ProcessorStateError(ChangeFeedError):
    """Raised when an operation is not allowed in the current processor state."""


__all__ = [
    "ChangeFeedError",
    "CheckpointWriteError",
    "FeedError",
    "ProcessorStateError",
    "StorageError",
]
