"""Typed lifecycle events published by :class:`StorageManager`."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .models import Conversation
    from .state import SyncMode

_LOGGER = logging.getLogger(__name__)


class SyncEventType(StrEnum):
    AUTH_SUCCESS = "auth-success"
    SYNC_MODE_CHANGED = "sync-mode-changed"
    SYNC_STARTED = "sync-started"
    SYNC_COMPLETED = "sync-completed"
    FULL_SYNC_STARTED = "full-sync-started"
    FULL_SYNC_COMPLETED = "full-sync-completed"
    SYNC_ERROR = "sync-error"
    ARTIFACT_TEMPORARY = "artifact-temporary"


@dataclass(frozen=True, slots=True)
class AuthSuccess:
    type: ClassVar[SyncEventType] = SyncEventType.AUTH_SUCCESS


@dataclass(frozen=True, slots=True)
class SyncModeChanged:
    type: ClassVar[SyncEventType] = SyncEventType.SYNC_MODE_CHANGED

    mode: SyncMode


@dataclass(frozen=True, slots=True)
class SyncStarted:
    type: ClassVar[SyncEventType] = SyncEventType.SYNC_STARTED

    pending: int = 0


@dataclass(frozen=True, slots=True)
class SyncCompleted:
    type: ClassVar[SyncEventType] = SyncEventType.SYNC_COMPLETED

    applied: int = 0
    failed: int = 0


@dataclass(frozen=True, slots=True)
class FullSyncStarted:
    type: ClassVar[SyncEventType] = SyncEventType.FULL_SYNC_STARTED


@dataclass(frozen=True, slots=True)
class FullSyncCompleted:
    type: ClassVar[SyncEventType] = SyncEventType.FULL_SYNC_COMPLETED

    conversations: dict[str, Conversation] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SyncError:
    type: ClassVar[SyncEventType] = SyncEventType.SYNC_ERROR

    error: BaseException
    operation: str = "sync"


@dataclass(frozen=True, slots=True)
class ArtifactTemporary:
    """An artifact could not be uploaded and will not survive a reload."""

    type: ClassVar[SyncEventType] = SyncEventType.ARTIFACT_TEMPORARY

    name: str
    error: BaseException | None = None


SyncEvent = (
    AuthSuccess
    | SyncModeChanged
    | SyncStarted
    | SyncCompleted
    | FullSyncStarted
    | FullSyncCompleted
    | SyncError
    | ArtifactTemporary
)

EventHandler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """Deliver each emitted event to every handler subscribed at emit time."""

    def __init__(self) -> None:
        self._handlers: dict[SyncEventType, list[EventHandler]] = {}

    def subscribe(self, event_type: SyncEventType | str, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` and return a callable that unsubscribes it."""

        key = SyncEventType(event_type)
        handlers = self._handlers.setdefault(key, [])
        if handler not in handlers:
            handlers.append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(key, handler)

        return _unsubscribe

    def unsubscribe(self, event_type: SyncEventType | str, handler: EventHandler) -> bool:
        handlers = self._handlers.get(SyncEventType(event_type), [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def subscribers(self, event_type: SyncEventType | str) -> int:
        return len(self._handlers.get(SyncEventType(event_type), []))

    async def emit(self, event: SyncEvent) -> None:
        for handler in list(self._handlers.get(event.type, [])):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as err:  # pragma: no cover - defensive log
                _LOGGER.debug("Event handler for %s raised error: %s", event.type, err, exc_info=True)


__all__ = [
    "ArtifactTemporary",
    "AuthSuccess",
    "EventBus",
    "EventHandler",
    "FullSyncCompleted",
    "FullSyncStarted",
    "SyncCompleted",
    "SyncError",
    "SyncEvent",
    "SyncEventType",
    "SyncModeChanged",
    "SyncStarted",
]
