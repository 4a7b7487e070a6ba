"""SQLite-backed offline cache with four logical stores.

``conversations``, ``artifacts``, ``syncQueue`` and ``metadata`` mirror the
object stores the browser client keeps in IndexedDB. Every write is committed
before the call returns; SQLite failures surface as :class:`LocalStoreError`.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .const import STORE_ARTIFACTS, STORE_CONVERSATIONS, STORE_METADATA, STORE_SYNC_QUEUE, STORES
from .errors import CorruptRecordError, LocalStoreError
from .models import Conversation, SyncQueueEntry, now_ms

_LOGGER = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    last_modified INTEGER NOT NULL DEFAULT 0,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conversations_last_modified
    ON conversations(last_modified);

CREATE TABLE IF NOT EXISTS artifacts (
    id TEXT PRIMARY KEY,
    data BLOB NOT NULL,
    mime_type TEXT,
    name TEXT,
    cached_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    item_id TEXT NOT NULL,
    timestamp INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_timestamp ON sync_queue(timestamp);
CREATE INDEX IF NOT EXISTS idx_sync_queue_type ON sync_queue(type);
CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_queue_pending ON sync_queue(type, item_id);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""


class LocalCache:
    """Keyed record store over SQLite; ``":memory:"`` keeps a single shared connection."""

    def __init__(self, path: str | Path = ":memory:") -> None:
        self._is_memory = str(path) == ":memory:"
        self.path = Path(path)
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            if self._is_memory:
                if self._shared_conn is None:
                    self._shared_conn = sqlite3.connect(":memory:")
                    self._shared_conn.row_factory = sqlite3.Row
                yield self._shared_conn
            else:
                conn = sqlite3.connect(self.path)
                conn.row_factory = sqlite3.Row
                try:
                    yield conn
                finally:
                    conn.close()
        except sqlite3.Error as err:
            raise LocalStoreError(f"local cache failure: {err}") from err

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    # ------------------------------------------------------------------
    # Generic record API
    def put(self, store: str, record: Mapping[str, Any]) -> str | int:
        """Insert or replace ``record`` and return its key."""

        if store == STORE_CONVERSATIONS:
            conv = Conversation.from_dict(record)
            self.put_conversation(conv)
            return conv.id
        if store == STORE_ARTIFACTS:
            artifact_id = str(record["id"])
            self.put_artifact(artifact_id, record["data"], mime_type=record.get("mime_type"), name=record.get("name"))
            return artifact_id
        if store == STORE_SYNC_QUEUE:
            entry = SyncQueueEntry(
                type=str(record["type"]),
                item_id=str(record.get("itemId") or record.get("item_id")),
                timestamp=int(record.get("timestamp") or now_ms()),
                id=record.get("id"),
            )
            return self._put_queue_entry(entry)
        if store == STORE_METADATA:
            key = str(record["key"])
            self.set_metadata(key, record.get("value"))
            return key
        raise KeyError(f"unknown store: {store}")

    def get(self, store: str, record_id: str | int) -> dict[str, Any] | None:
        return self.get_all(store, record_id=record_id).get(record_id if store == STORE_SYNC_QUEUE else str(record_id))

    def get_all(self, store: str, *, record_id: str | int | None = None) -> dict[str | int, dict[str, Any]]:
        """Return every record in ``store`` keyed by id; ordering is not meaningful."""

        if store not in STORES:
            raise KeyError(f"unknown store: {store}")
        result: dict[str | int, dict[str, Any]] = {}
        if store == STORE_CONVERSATIONS:
            convs = self.all_conversations() if record_id is None else {}
            if record_id is not None:
                conv = self.get_conversation(str(record_id))
                if conv is not None:
                    convs[conv.id] = conv
            return {conv_id: conv.to_dict() for conv_id, conv in convs.items()}
        query, params = {
            STORE_ARTIFACTS: ("SELECT id, data, mime_type, name, cached_at FROM artifacts", ()),
            STORE_SYNC_QUEUE: ("SELECT id, type, item_id, timestamp FROM sync_queue", ()),
            STORE_METADATA: ("SELECT key, value FROM metadata", ()),
        }[store]
        if record_id is not None:
            query += " WHERE key = ?" if store == STORE_METADATA else " WHERE id = ?"
            params = (record_id,)
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        for row in rows:
            if store == STORE_ARTIFACTS:
                result[row["id"]] = {
                    "id": row["id"],
                    "data": bytes(row["data"]),
                    "mime_type": row["mime_type"],
                    "name": row["name"],
                    "cached_at": row["cached_at"],
                }
            elif store == STORE_SYNC_QUEUE:
                result[row["id"]] = {
                    "id": row["id"],
                    "type": row["type"],
                    "itemId": row["item_id"],
                    "timestamp": row["timestamp"],
                }
            else:
                result[row["key"]] = {"key": row["key"], "value": json.loads(row["value"])}
        return result

    def delete(self, store: str, record_id: str | int) -> None:
        table, column = {
            STORE_CONVERSATIONS: ("conversations", "id"),
            STORE_ARTIFACTS: ("artifacts", "id"),
            STORE_SYNC_QUEUE: ("sync_queue", "id"),
            STORE_METADATA: ("metadata", "key"),
        }[store]
        with self._connection() as conn:
            conn.execute(f"DELETE FROM {table} WHERE {column} = ?", (record_id,))
            conn.commit()

    def count(self, store: str) -> int:
        table = {
            STORE_CONVERSATIONS: "conversations",
            STORE_ARTIFACTS: "artifacts",
            STORE_SYNC_QUEUE: "sync_queue",
            STORE_METADATA: "metadata",
        }[store]
        with self._connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM {table}").fetchone()
        if not row:
            return 0
        total = row["total"]
        return int(total) if total is not None else 0

    # ------------------------------------------------------------------
    # Conversations
    def put_conversation(self, conversation: Conversation) -> None:
        payload = json.dumps(conversation.to_dict(), separators=(",", ":"))
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO conversations(id, last_modified, payload) VALUES(?, ?, ?)",
                (conversation.id, int(conversation.last_modified or 0), payload),
            )
            conn.commit()

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connection() as conn:
            row = conn.execute("SELECT payload FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        if not row:
            return None
        return Conversation.from_dict(json.loads(row["payload"]))

    def all_conversations(self) -> dict[str, Conversation]:
        with self._connection() as conn:
            rows = conn.execute("SELECT id, payload FROM conversations").fetchall()
        result: dict[str, Conversation] = {}
        for row in rows:
            try:
                conv = Conversation.from_dict(json.loads(row["payload"]))
            except (json.JSONDecodeError, CorruptRecordError) as err:
                _LOGGER.warning("Skipping unreadable local conversation %s: %s", row["id"], err)
                continue
            result[conv.id] = conv
        return result

    def delete_conversation(self, conversation_id: str) -> None:
        self.delete(STORE_CONVERSATIONS, conversation_id)

    # ------------------------------------------------------------------
    # Artifacts
    def put_artifact(
        self,
        artifact_id: str,
        data: bytes,
        *,
        mime_type: str | None = None,
        name: str | None = None,
    ) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO artifacts(id, data, mime_type, name, cached_at)
                VALUES(?, ?, ?, ?, ?)
                """,
                (artifact_id, sqlite3.Binary(bytes(data)), mime_type, name, now_ms()),
            )
            conn.commit()

    def get_artifact(self, artifact_id: str) -> dict[str, Any] | None:
        return self.get(STORE_ARTIFACTS, artifact_id)

    # ------------------------------------------------------------------
    # Sync queue
    def _put_queue_entry(self, entry: SyncQueueEntry) -> int:
        with self._connection() as conn:
            if entry.id is not None:
                cur = conn.execute(
                    "INSERT OR REPLACE INTO sync_queue(id, type, item_id, timestamp) VALUES(?, ?, ?, ?)",
                    (entry.id, entry.type, entry.item_id, entry.timestamp),
                )
            else:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO sync_queue(type, item_id, timestamp) VALUES(?, ?, ?)",
                    (entry.type, entry.item_id, entry.timestamp),
                )
                if cur.rowcount == 0:
                    row = conn.execute(
                        "SELECT id FROM sync_queue WHERE type = ? AND item_id = ?",
                        (entry.type, entry.item_id),
                    ).fetchone()
                    conn.commit()
                    return int(row["id"])
            conn.commit()
            return int(entry.id if entry.id is not None else cur.lastrowid)

    def add_queue_entry(self, entry_type: str, item_id: str, *, timestamp: int | None = None) -> SyncQueueEntry:
        entry = SyncQueueEntry(type=entry_type, item_id=item_id, timestamp=timestamp or now_ms())
        entry.id = self._put_queue_entry(entry)
        return entry

    def queue_entries(self, entry_type: str | None = None) -> list[SyncQueueEntry]:
        query = "SELECT id, type, item_id, timestamp FROM sync_queue"
        params: tuple[Any, ...] = ()
        if entry_type is not None:
            query += " WHERE type = ?"
            params = (entry_type,)
        query += " ORDER BY timestamp ASC, id ASC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            SyncQueueEntry(type=row["type"], item_id=row["item_id"], timestamp=row["timestamp"], id=row["id"])
            for row in rows
        ]

    def remove_queue_entry(self, entry_id: int) -> None:
        self.delete(STORE_SYNC_QUEUE, entry_id)

    # ------------------------------------------------------------------
    # Metadata
    def set_metadata(self, key: str, value: Any) -> None:
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO metadata(key, value) VALUES(?, ?)",
                (key, json.dumps(value)),
            )
            conn.commit()

    def get_metadata(self, key: str, default: Any = None) -> Any:
        record = self.get(STORE_METADATA, key)
        return default if record is None else record["value"]


__all__ = ["LocalCache"]
