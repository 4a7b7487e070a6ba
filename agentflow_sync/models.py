"""Data model for conversations, messages and artifact references.

Records are serialised with the camelCase keys the browser client has always
written (``lastModified``, ``systemPrompt`` ...) so documents already stored in
Google Drive keep loading.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from uuid import uuid4

from .const import REFERENCE_SCHEME
from .errors import CorruptRecordError


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class PartKind(StrEnum):
    """Typed message parts; values match the wire ``type`` field."""

    TEXT = "text"
    IMAGE = "image_url"
    AUDIO = "audio"
    FILE = "file"


# Nested object and payload key used by each artifact-bearing part
_PART_FIELDS: dict[PartKind, tuple[str, str]] = {
    PartKind.IMAGE: ("image_url", "url"),
    PartKind.AUDIO: ("audio", "data"),
    PartKind.FILE: ("file", "data"),
}


@dataclass(frozen=True, slots=True)
class ArtifactReference:
    """Handle to a binary object stored in the remote service."""

    remote_id: str
    scheme: str = REFERENCE_SCHEME

    def __post_init__(self) -> None:
        if not self.remote_id:
            raise ValueError("artifact reference requires a remote id")

    def __str__(self) -> str:
        return f"{self.scheme}://{self.remote_id}"

    @staticmethod
    def is_reference(value: Any, *, scheme: str = REFERENCE_SCHEME) -> bool:
        return isinstance(value, str) and value.startswith(f"{scheme}://") and len(value) > len(scheme) + 3

    @classmethod
    def parse(cls, value: str, *, scheme: str = REFERENCE_SCHEME) -> ArtifactReference:
        if not cls.is_reference(value, scheme=scheme):
            raise ValueError(f"not a {scheme} reference: {value!r}")
        return cls(remote_id=value[len(scheme) + 3 :], scheme=scheme)


@dataclass(slots=True)
class ContentPart:
    """One typed element of a multi-part message.

    ``data`` holds the inline representation (a data URL or base64 text) used
    for display. ``reference`` points at the uploaded artifact. When both are
    set only the reference is serialised.
    """

    kind: PartKind
    text: str | None = None
    data: str | None = None
    reference: ArtifactReference | None = None
    name: str | None = None
    mime_type: str | None = None

    @property
    def is_artifact(self) -> bool:
        return self.kind is not PartKind.TEXT

    @property
    def has_inline_data(self) -> bool:
        return bool(self.data) and not ArtifactReference.is_reference(self.data)

    @classmethod
    def text_part(cls, text: str) -> ContentPart:
        return cls(kind=PartKind.TEXT, text=text)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ContentPart:
        try:
            kind = PartKind(payload.get("type"))
        except ValueError as err:
            raise CorruptRecordError(f"unknown content part type: {payload.get('type')!r}") from err
        if kind is PartKind.TEXT:
            return cls(kind=kind, text=str(payload.get("text") or ""))
        container_key, value_key = _PART_FIELDS[kind]
        container = payload.get(container_key)
        if not isinstance(container, Mapping):
            container = {}
        raw = container.get(value_key)
        cached = container.get("_gdriveUrl")
        reference = None
        data = str(raw) if raw is not None else None
        if ArtifactReference.is_reference(cached):
            reference = ArtifactReference.parse(cached)
        elif ArtifactReference.is_reference(data):
            reference = ArtifactReference.parse(data)
            data = None
        name = container.get("name")
        mime_type = container.get("mime_type") or container.get("mimeType")
        return cls(
            kind=kind,
            data=data,
            reference=reference,
            name=str(name) if name else None,
            mime_type=str(mime_type) if mime_type else None,
        )

    def to_dict(self) -> dict[str, Any]:
        if self.kind is PartKind.TEXT:
            return {"type": self.kind.value, "text": self.text or ""}
        container_key, value_key = _PART_FIELDS[self.kind]
        value = str(self.reference) if self.reference is not None else self.data
        container: dict[str, Any] = {value_key: value}
        if self.name:
            container["name"] = self.name
        if self.mime_type:
            container["mime_type"] = self.mime_type
        return {"type": self.kind.value, container_key: container}


@dataclass(slots=True)
class Message:
    role: Role
    content: str | list[ContentPart]
    timestamp: int | None = None

    @property
    def parts(self) -> list[ContentPart]:
        if isinstance(self.content, str):
            return []
        return self.content

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Message:
        try:
            role = Role(payload.get("role"))
        except ValueError as err:
            raise CorruptRecordError(f"unknown message role: {payload.get('role')!r}") from err
        raw = payload.get("content")
        content: str | list[ContentPart]
        if isinstance(raw, list):
            content = [ContentPart.from_dict(item) for item in raw if isinstance(item, Mapping)]
        else:
            content = "" if raw is None else str(raw)
        timestamp = payload.get("timestamp")
        try:
            parsed = int(timestamp) if timestamp is not None else None
        except (TypeError, ValueError) as err:
            raise CorruptRecordError(f"invalid message timestamp: {timestamp!r}") from err
        return cls(role=role, content=content, timestamp=parsed)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role.value}
        if isinstance(self.content, str):
            payload["content"] = self.content
        else:
            payload["content"] = [part.to_dict() for part in self.content]
        if self.timestamp is not None:
            payload["timestamp"] = self.timestamp
        return payload


@dataclass(slots=True)
class Conversation:
    """A conversation record; ``last_modified`` is the sole merge tie-breaker."""

    id: str
    title: str = "New Conversation"
    created_at: int = 0
    last_modified: int = 0
    messages: list[Message] = field(default_factory=list)
    system_prompt: str = ""
    folder_id: str | None = None
    tags: set[str] = field(default_factory=set)
    pinned: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, title: str = "New Conversation", *, system_prompt: str = "", now: int | None = None) -> Conversation:
        ts = now if now is not None else now_ms()
        return cls(
            id=f"conv_{ts}_{uuid4().hex[:6]}",
            title=title,
            created_at=ts,
            last_modified=ts,
            system_prompt=system_prompt,
        )

    # ------------------------------------------------------------------
    def touch(self, now: int | None = None) -> None:
        ts = now if now is not None else now_ms()
        # Wall clocks can step backwards; keep lastModified monotonic
        self.last_modified = max(ts, self.last_modified + 1)

    def append_message(self, message: Message, *, now: int | None = None) -> None:
        self.messages.append(message)
        self.touch(now)

    def edit_message(self, index: int, content: str | list[ContentPart], *, now: int | None = None) -> None:
        self.messages[index].content = content
        self.touch(now)

    def set_tags(self, tags: Iterable[str], *, now: int | None = None) -> None:
        self.tags = {str(tag) for tag in tags if str(tag).strip()}
        self.touch(now)

    def set_pinned(self, pinned: bool, *, now: int | None = None) -> None:
        self.pinned = bool(pinned)
        self.touch(now)

    def move_to_folder(self, folder_id: str | None, *, now: int | None = None) -> None:
        self.folder_id = folder_id
        self.touch(now)

    def rename(self, title: str, *, now: int | None = None) -> None:
        self.title = title
        self.touch(now)

    # ------------------------------------------------------------------
    @classmethod
    def from_dict(cls, payload: Any) -> Conversation:
        if not isinstance(payload, Mapping):
            raise CorruptRecordError("conversation payload is not an object")
        conv_id = str(payload.get("id") or "").strip()
        if not conv_id:
            raise CorruptRecordError("conversation payload missing id")
        messages_raw = payload.get("messages") or []
        if not isinstance(messages_raw, list):
            raise CorruptRecordError(f"conversation {conv_id} has malformed messages")
        try:
            created_at = int(payload.get("createdAt") or 0)
            last_modified = int(payload.get("lastModified") or 0)
        except (TypeError, ValueError) as err:
            raise CorruptRecordError(f"conversation {conv_id} has invalid timestamps") from err
        tags_raw = payload.get("tags") or ()
        if isinstance(tags_raw, str):
            tags_raw = (tags_raw,)
        known = {"id", "title", "createdAt", "lastModified", "messages", "systemPrompt", "folderId", "tags", "pinned"}
        return cls(
            id=conv_id,
            title=str(payload.get("title") or "New Conversation"),
            created_at=created_at,
            last_modified=last_modified,
            messages=[Message.from_dict(item) for item in messages_raw if isinstance(item, Mapping)],
            system_prompt=str(payload.get("systemPrompt") or ""),
            folder_id=str(payload["folderId"]) if payload.get("folderId") else None,
            tags={str(tag) for tag in tags_raw if tag},
            pinned=bool(payload.get("pinned")),
            extra={key: value for key, value in payload.items() if key not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "title": self.title,
                "createdAt": self.created_at,
                "lastModified": self.last_modified,
                "messages": [message.to_dict() for message in self.messages],
                "systemPrompt": self.system_prompt,
            }
        )
        if self.folder_id:
            payload["folderId"] = self.folder_id
        if self.tags:
            payload["tags"] = sorted(self.tags)
        if self.pinned:
            payload["pinned"] = True
        return payload


@dataclass(slots=True)
class SyncQueueEntry:
    """A pending remote operation; at most one per ``(type, item_id)``."""

    type: str
    item_id: str
    timestamp: int
    id: int | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.type, self.item_id)


def merge_pair(local: Conversation, remote: Conversation) -> Conversation:
    """Return the winner for one id; remote wins only when strictly newer."""

    return remote if (remote.last_modified or 0) > (local.last_modified or 0) else local


def merge_conversations(
    local: Mapping[str, Conversation],
    remote: Mapping[str, Conversation],
) -> dict[str, Conversation]:
    """Merge two conversation maps by ``last_modified`` without mutating either."""

    merged = dict(local)
    for conv_id, candidate in remote.items():
        current = merged.get(conv_id)
        merged[conv_id] = candidate if current is None else merge_pair(current, candidate)
    return merged


__all__ = [
    "ArtifactReference",
    "ContentPart",
    "Conversation",
    "Message",
    "PartKind",
    "Role",
    "SyncQueueEntry",
    "merge_conversations",
    "merge_pair",
    "now_ms",
]
