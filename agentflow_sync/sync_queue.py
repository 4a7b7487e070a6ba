"""Durable, de-duplicated list of pending remote operations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from .const import QUEUE_CONVERSATION, QUEUE_DELETE_CONVERSATION
from .errors import AuthError, CorruptRecordError, NetworkError
from .local_cache import LocalCache
from .models import Conversation, SyncQueueEntry
from .utils.logging import warn_once

_LOGGER = logging.getLogger(__name__)

QUEUE_TYPES = (QUEUE_CONVERSATION, QUEUE_DELETE_CONVERSATION)


class ConversationRemote(Protocol):
    async def save_conversation(self, conversation: Conversation) -> Any: ...

    async def delete_conversation(self, conversation_id: str) -> bool: ...


@dataclass(slots=True)
class DrainResult:
    applied: int = 0
    failed: int = 0
    dropped: int = 0
    skipped: bool = False
    errors: list[Exception] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class SyncQueue:
    """Queue entries live in the local cache so they survive restarts."""

    def __init__(self, cache: LocalCache, remote: ConversationRemote) -> None:
        self.cache = cache
        self.remote = remote
        self._draining = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._in_flight: tuple[str, str] | None = None
        self._requeued: set[tuple[str, str]] = set()

    @property
    def draining(self) -> bool:
        return self._draining

    async def wait_idle(self) -> None:
        """Wait until no drain is running."""

        await self._idle.wait()

    def enqueue(self, entry_type: str, item_id: str) -> SyncQueueEntry:
        """Add ``(entry_type, item_id)`` unless an identical entry is already pending."""

        if entry_type not in QUEUE_TYPES:
            raise ValueError(f"unknown sync queue type: {entry_type}")
        for entry in self.cache.queue_entries(entry_type):
            if entry.item_id == item_id:
                if self._in_flight == entry.key:
                    # The running apply may carry stale data; keep the entry for another pass
                    self._requeued.add(entry.key)
                _LOGGER.debug("Sync entry %s:%s already queued", entry_type, item_id)
                return entry
        entry = self.cache.add_queue_entry(entry_type, item_id)
        _LOGGER.debug("Queued %s:%s", entry_type, item_id)
        return entry

    def pending(self) -> list[SyncQueueEntry]:
        return self.cache.queue_entries()

    def size(self) -> int:
        return len(self.pending())

    def pending_ids(self, entry_type: str) -> set[str]:
        return {entry.item_id for entry in self.cache.queue_entries(entry_type)}

    async def drain(self) -> DrainResult:
        """Apply every pending entry; failures stay queued for the next drain."""

        if self._draining:
            _LOGGER.debug("Drain already in progress, skipping")
            return DrainResult(skipped=True)
        self._draining = True
        self._idle.clear()
        result = DrainResult()
        try:
            pending = self.cache.queue_entries()
            while pending:
                retry: list[SyncQueueEntry] = []
                for entry in pending:
                    self._in_flight = entry.key
                    try:
                        applied = await self._apply(entry)
                    except AuthError as err:
                        # Every remaining entry needs the same credential
                        result.failed += 1
                        result.errors.append(err)
                        _LOGGER.warning("Sync drain stopped: %s", err)
                        retry = []
                        break
                    except NetworkError as err:
                        result.failed += 1
                        result.errors.append(err)
                        warn_once(
                            _LOGGER, f"drain:{entry.type}", f"Failed to sync {entry.type} {entry.item_id}: {err}"
                        )
                        continue
                    finally:
                        self._in_flight = None
                        requeued = entry.key in self._requeued
                        self._requeued.discard(entry.key)
                    if applied:
                        result.applied += 1
                    else:
                        result.dropped += 1
                    if requeued:
                        _LOGGER.debug("Sync entry %s:%s changed while syncing, applying again", *entry.key)
                        retry.append(entry)
                    else:
                        self.cache.remove_queue_entry(entry.id)
                pending = retry
        finally:
            self._in_flight = None
            self._requeued.clear()
            self._draining = False
            self._idle.set()
        if result.applied or result.failed:
            _LOGGER.debug(
                "Drain finished: %d applied, %d failed, %d dropped", result.applied, result.failed, result.dropped
            )
        return result

    async def _apply(self, entry: SyncQueueEntry) -> bool:
        if entry.type == QUEUE_DELETE_CONVERSATION:
            await self.remote.delete_conversation(entry.item_id)
            return True
        if entry.type == QUEUE_CONVERSATION:
            try:
                conversation = self.cache.get_conversation(entry.item_id)
            except CorruptRecordError as err:
                _LOGGER.warning("Dropping sync entry for unreadable conversation %s: %s", entry.item_id, err)
                return False
            if conversation is None:
                _LOGGER.debug("Conversation %s no longer exists locally, dropping entry", entry.item_id)
                return False
            await self.remote.save_conversation(conversation)
            return True
        _LOGGER.warning("Dropping sync entry with unknown type %s", entry.type)
        return False


__all__ = ["DrainResult", "QUEUE_TYPES", "SyncQueue"]
