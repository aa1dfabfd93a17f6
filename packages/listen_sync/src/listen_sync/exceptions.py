"""Exceptions raised by directory and channel adapters."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base error of the sync engine."""

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause


class DirectoryError(SyncError):
    """Session directory read or write failed."""


class DuplicateSyncKeyError(DirectoryError):
    """Sync key is already used by another active session."""


class CapacityExceededError(DirectoryError):
    """Session already holds the maximum number of participants."""


class RecordNotFoundError(DirectoryError):
    """Record addressed by id does not exist."""


class ChannelError(SyncError):
    """Event channel failure."""


class PublishError(ChannelError):
    """Event could not be handed to the channel."""
