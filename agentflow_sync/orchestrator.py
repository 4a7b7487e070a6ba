"""Hybrid local/remote storage manager driving the sync mode state machine."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from aiohttp import ClientSession

from .artifacts import AttachedArtifact, prepare_for_storage, to_data_url
from .auth import AuthTokenManager, GoogleOAuthClient, IdentityProvider
from .config import SyncConfig
from .const import QUEUE_CONVERSATION, QUEUE_DELETE_CONVERSATION
from .errors import AuthError, NetworkError, SyncStorageError
from .events import (
    ArtifactTemporary,
    AuthSuccess,
    EventBus,
    EventHandler,
    FullSyncCompleted,
    FullSyncStarted,
    SyncCompleted,
    SyncError,
    SyncEventType,
    SyncModeChanged,
    SyncStarted,
)
from .local_cache import LocalCache
from .models import ArtifactReference, Conversation, merge_conversations, now_ms
from .remote_store import DriveRemoteStore
from .scheduler import DeferredTask, PeriodicTask
from .state import ModeEvent, SyncMode, next_mode
from .sync_queue import DrainResult, SyncQueue
from .token_store import TokenStore

_LOGGER = logging.getLogger(__name__)

META_LAST_SYNC = "lastSyncTime"

# Modes in which local mutations are queued for the remote store
_QUEUEING_MODES = frozenset({SyncMode.CONNECTING, SyncMode.ONLINE, SyncMode.SYNCING, SyncMode.ERROR})


class StorageManager:
    """Local-first conversation and artifact storage with Google Drive sync.

    Writes always land in the local cache first. While connected, every
    mutation is queued and drained to Drive shortly afterwards and on a fixed
    interval. Remote failures never escape the background work; they surface
    as :class:`SyncError` events and the ``error`` mode.
    """

    def __init__(
        self,
        cache: LocalCache,
        auth: AuthTokenManager,
        remote: DriveRemoteStore,
        *,
        config: SyncConfig | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.cache = cache
        self.auth = auth
        self.remote = remote
        self.queue = SyncQueue(cache, remote)
        self.events = EventBus()
        self._mode = SyncMode.OFFLINE
        self._periodic_drain = PeriodicTask("sync-queue-drain", self.config.drain_interval, self.process_sync_queue)
        self._deferred_drain = DeferredTask("sync-queue-debounce", self.config.drain_delay, self.process_sync_queue)
        self._known_references: dict[str, ArtifactReference] = {}
        self.last_sync_time: int | None = cache.get_metadata(META_LAST_SYNC)

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        *,
        provider: IdentityProvider | None = None,
        session: ClientSession | None = None,
    ) -> StorageManager:
        """Wire the default SQLite cache, token file, OAuth client and Drive store."""

        provider = provider or GoogleOAuthClient(
            config.client_id,
            client_secret=config.client_secret,
            refresh_token=config.refresh_token,
            token_url=config.token_url,
            revoke_url=config.revoke_url,
            session=session,
        )
        auth = AuthTokenManager(
            TokenStore(config.token_path),
            provider,
            refresh_timeout=config.refresh_timeout,
            check_interval=config.token_check_interval,
        )
        remote = DriveRemoteStore(
            auth,
            session,
            app_folder=config.app_folder,
            base_url=config.drive_base_url,
            upload_url=config.drive_upload_url,
        )
        return cls(LocalCache(config.database_path), auth, remote, config=config)

    # ------------------------------------------------------------------
    @property
    def mode(self) -> SyncMode:
        return self._mode

    @property
    def online(self) -> bool:
        return self._mode in (SyncMode.ONLINE, SyncMode.SYNCING, SyncMode.ERROR)

    def on(self, event_type: SyncEventType | str, handler: EventHandler):
        """Subscribe ``handler``; returns a callable that unsubscribes it."""

        return self.events.subscribe(event_type, handler)

    def off(self, event_type: SyncEventType | str, handler: EventHandler) -> bool:
        return self.events.unsubscribe(event_type, handler)

    async def _transition(self, event: ModeEvent) -> SyncMode:
        previous = self._mode
        self._mode = next_mode(previous, event)
        if self._mode is not previous:
            _LOGGER.info("Sync mode changed: %s -> %s", previous, self._mode)
            await self.events.emit(SyncModeChanged(mode=self._mode))
        return self._mode

    async def _begin_sync(self) -> bool:
        # Syncs run while connecting leave the mode alone
        if self._mode in (SyncMode.ONLINE, SyncMode.ERROR):
            await self._transition(ModeEvent.SYNC_START)
            return True
        return False

    async def _end_sync(self, began: bool, ok: bool) -> None:
        if began and self._mode is SyncMode.SYNCING:
            await self._transition(ModeEvent.SYNC_DONE if ok else ModeEvent.FAIL)

    # ------------------------------------------------------------------
    async def init(self) -> bool:
        """Go online straight away when a still-valid token was stored."""

        if self.auth.is_authenticated():
            self.auth.start_background_refresh()
            await self._switch_to_online()
        return True

    async def connect_google_drive(self) -> bool:
        """Run the interactive login, then switch to online mode."""

        try:
            await self.auth.login()
        except (AuthError, NetworkError) as err:
            _LOGGER.warning("Google Drive login failed: %s", err)
            await self.events.emit(SyncError(error=err, operation="connect"))
            return False
        await self.events.emit(AuthSuccess())
        return await self._switch_to_online()

    async def disconnect_google_drive(self) -> None:
        await self.auth.logout()
        await self._stop_timers()
        self.remote.reset()
        await self._transition(ModeEvent.DISCONNECT)

    async def _switch_to_online(self) -> bool:
        if self._mode in (SyncMode.ONLINE, SyncMode.SYNCING, SyncMode.CONNECTING):
            return self._mode is not SyncMode.CONNECTING
        await self._transition(ModeEvent.CONNECT)
        try:
            await self.remote.init()
        except SyncStorageError as err:
            _LOGGER.warning("Failed to switch to online mode: %s", err)
            await self._abort_connect()
            await self.events.emit(SyncError(error=err, operation="connect"))
            return False
        except BaseException:
            await self._abort_connect()
            raise
        try:
            await self.full_sync()
        except SyncStorageError as err:
            # full_sync has already reported the error
            _LOGGER.warning("Initial sync failed, staying offline: %s", err)
            await self._abort_connect()
            return False
        except BaseException:
            await self._abort_connect()
            raise
        await self._transition(ModeEvent.CONNECTED)
        self._periodic_drain.start()
        return True

    async def _abort_connect(self) -> None:
        if self._mode is SyncMode.CONNECTING:
            await self._transition(ModeEvent.FAIL)

    async def _stop_timers(self) -> None:
        await self._periodic_drain.stop()
        await self._deferred_drain.cancel()

    async def close(self) -> None:
        await self._stop_timers()
        await self.auth.stop_background_refresh()
        await self.remote.async_close()
        self.cache.close()

    # ------------------------------------------------------------------
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        """Persist ``conversation`` locally and queue it when connected.

        Returns the stored copy, with inline artifact payloads rewritten.
        """

        cleaned = prepare_for_storage(
            conversation, self._known_references, inline_threshold=self.config.inline_threshold
        )
        self.cache.put_conversation(cleaned)
        if self._mode in _QUEUEING_MODES:
            self.queue.enqueue(QUEUE_CONVERSATION, cleaned.id)
            self._deferred_drain.schedule()
        return cleaned

    async def load_conversations(self) -> dict[str, Conversation]:
        return self.cache.all_conversations()

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete locally; the remote delete is queued even while offline."""

        self.cache.delete_conversation(conversation_id)
        self.queue.enqueue(QUEUE_DELETE_CONVERSATION, conversation_id)
        if self._mode in _QUEUEING_MODES:
            self._deferred_drain.schedule()

    # ------------------------------------------------------------------
    async def upload_artifact(
        self,
        data: bytes,
        name: str,
        mime_type: str = "application/octet-stream",
    ) -> ArtifactReference:
        if not self.online:
            raise AuthError("Google Drive not connected", reason="offline")
        reference = await self.remote.upload_artifact(data, name, mime_type)
        self._known_references[name] = reference
        self.cache.put_artifact(reference.remote_id, data, mime_type=mime_type, name=name)
        return reference

    async def attach_artifact(
        self,
        data: bytes,
        name: str,
        mime_type: str = "application/octet-stream",
    ) -> AttachedArtifact:
        """Upload ``data`` if possible; otherwise hand back a temporary inline copy."""

        data_url = to_data_url(data, mime_type)
        try:
            reference = await self.upload_artifact(data, name, mime_type)
        except (AuthError, NetworkError) as err:
            _LOGGER.warning("Artifact %s kept as temporary: %s", name, err)
            await self.events.emit(ArtifactTemporary(name=name, error=err))
            return AttachedArtifact(name=name, mime_type=mime_type, data_url=data_url, temporary=True)
        return AttachedArtifact(name=name, mime_type=mime_type, reference=reference, data_url=data_url)

    async def download_artifact(self, reference: ArtifactReference | str) -> bytes:
        """Return artifact bytes, served from the local cache when available."""

        if isinstance(reference, str):
            reference = ArtifactReference.parse(reference)
        cached = self.cache.get_artifact(reference.remote_id)
        if cached is not None:
            return cached["data"]
        data = await self.remote.download_artifact(reference)
        self.cache.put_artifact(reference.remote_id, data)
        return data

    async def download_artifact_data_url(
        self,
        reference: ArtifactReference | str,
        mime_type: str | None = None,
    ) -> str:
        if isinstance(reference, str):
            reference = ArtifactReference.parse(reference)
        data = await self.download_artifact(reference)
        if mime_type is None:
            cached = self.cache.get_artifact(reference.remote_id) or {}
            mime_type = cached.get("mime_type") or "application/octet-stream"
        return to_data_url(data, mime_type)

    # ------------------------------------------------------------------
    async def process_sync_queue(self) -> DrainResult:
        """Drain the queue once; a drain already running makes this a no-op."""

        if self._mode not in _QUEUEING_MODES or self.queue.draining:
            return DrainResult(skipped=True)
        began = await self._begin_sync()
        await self.events.emit(SyncStarted(pending=self.queue.size()))
        try:
            result = await self.queue.drain()
        except BaseException:
            await self._end_sync(began, False)
            raise
        if result.skipped:
            await self._end_sync(began, True)
            return result
        await self._report_drain(result)
        await self._end_sync(began, result.ok)
        if any(isinstance(err, AuthError) for err in result.errors):
            _LOGGER.info("Access token unavailable, switching to offline mode")
            await self._transition(ModeEvent.DISCONNECT)
            await self._stop_timers()
        return result

    async def _report_drain(self, result: DrainResult) -> None:
        if result.errors:
            await self.events.emit(SyncError(error=result.errors[0], operation="drain"))
        await self.events.emit(SyncCompleted(applied=result.applied, failed=result.failed))

    async def _drain_for_full_sync(self) -> DrainResult:
        while True:
            await self.queue.wait_idle()
            await self.events.emit(SyncStarted(pending=self.queue.size()))
            result = await self.queue.drain()
            if not result.skipped:
                await self._report_drain(result)
                return result

    async def full_sync(self) -> dict[str, Conversation]:
        """Merge local and remote conversations, write the result to both sides."""

        if self._mode is SyncMode.OFFLINE:
            raise SyncStorageError("not in online mode", reason="offline")
        began = await self._begin_sync()
        await self.events.emit(FullSyncStarted())
        try:
            local = self.cache.all_conversations()
            deleted = self.queue.pending_ids(QUEUE_DELETE_CONVERSATION)
            remote = {
                conv_id: conv
                for conv_id, conv in (await self.remote.list_conversations()).items()
                if conv_id not in deleted
            }
            merged = merge_conversations(local, remote)
            _LOGGER.info(
                "Full sync: %d local, %d remote, %d merged conversations", len(local), len(remote), len(merged)
            )
            for conversation in merged.values():
                self.cache.put_conversation(conversation)
            for conversation_id in merged:
                self.queue.enqueue(QUEUE_CONVERSATION, conversation_id)
            result = await self._drain_for_full_sync()
        except SyncStorageError as err:
            await self._end_sync(began, False)
            await self.events.emit(SyncError(error=err, operation="full_sync"))
            raise
        except BaseException:
            await self._end_sync(began, False)
            raise
        self.last_sync_time = now_ms()
        self.cache.set_metadata(META_LAST_SYNC, self.last_sync_time)
        await self._end_sync(began, result.ok)
        await self.events.emit(FullSyncCompleted(conversations=merged))
        return merged

    @staticmethod
    def merge_conversations(
        local: Mapping[str, Conversation],
        remote: Mapping[str, Conversation],
    ) -> dict[str, Conversation]:
        return merge_conversations(local, remote)

    # ------------------------------------------------------------------
    def record_activity(self, signal: str = "click") -> bool:
        return self.auth.record_activity(signal)

    def get_sync_status(self) -> dict[str, Any]:
        return {
            "mode": self._mode.value,
            "authenticated": self.auth.is_authenticated(),
            "syncing": self.queue.draining or self._mode is SyncMode.SYNCING,
            "lastSyncTime": self.last_sync_time,
        }

    async def get_storage_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "local": {
                "conversations": len(self.cache.all_conversations()),
                "artifacts": self.cache.count("artifacts"),
                "pending": self.queue.size(),
            }
        }
        if self.online:
            quota = await self.remote.get_storage_info()
            if quota is not None:
                stats["remote"] = quota
        return stats

    async def export_document(self, markdown: str, title: str) -> dict[str, str]:
        if not self.online:
            raise AuthError("Google Drive not connected", reason="offline")
        return await self.remote.export_document(markdown, title)


__all__ = ["StorageManager"]
