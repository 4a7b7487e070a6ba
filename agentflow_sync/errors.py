"""Exception taxonomy for the storage and sync engine."""

from __future__ import annotations


class SyncStorageError(RuntimeError):
    """Base class for errors raised by the storage engine."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class AuthError(SyncStorageError):
    """Raised when no valid access token is available or the provider rejects it."""

    def __init__(self, message: str = "not authenticated", *, reason: str | None = "not_authenticated") -> None:
        super().__init__(message, reason=reason)


class NetworkError(SyncStorageError):
    """Raised when a remote call fails; always recoverable by a later retry."""

    def __init__(self, message: str, *, status: int | None = None, reason: str | None = "network") -> None:
        super().__init__(message, reason=reason)
        self.status = status


class NotFoundError(NetworkError):
    """Raised when a remote document does not exist."""

    def __init__(self, message: str, *, status: int | None = 404) -> None:
        super().__init__(message, status=status, reason="not_found")


class CorruptRecordError(SyncStorageError):
    """Raised when a remote document cannot be parsed into a conversation."""

    def __init__(self, message: str) -> None:
        super().__init__(message, reason="corrupt_record")


class LocalStoreError(SyncStorageError):
    """Raised when the local cache fails; fatal to the calling operation."""

    def __init__(self, message: str) -> None:
        super().__init__(message, reason="local_store")


class InvalidTransitionError(SyncStorageError):
    """Raised when a state machine is asked for a transition it does not allow."""

    def __init__(self, state: str, event: str) -> None:
        super().__init__(f"invalid transition {event!r} from state {state!r}", reason="invalid_transition")
        self.state = state
        self.event = event


__all__ = [
    "AuthError",
    "CorruptRecordError",
    "InvalidTransitionError",
    "LocalStoreError",
    "NetworkError",
    "NotFoundError",
    "SyncStorageError",
]
