"""Helpers for artifact payloads embedded in conversation messages."""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Mapping
from dataclasses import dataclass

from .const import AUDIO_PLACEHOLDER, DEFAULT_INLINE_THRESHOLD, FILE_PLACEHOLDER, IMAGE_PLACEHOLDER
from .models import ArtifactReference, ContentPart, Conversation, PartKind

_DATA_URL = re.compile(r"^data:(?P<mime>[^;,]*)(?P<b64>;base64)?,(?P<body>.*)$", re.DOTALL)

PLACEHOLDERS: dict[PartKind, str] = {
    PartKind.IMAGE: IMAGE_PLACEHOLDER,
    PartKind.AUDIO: AUDIO_PLACEHOLDER,
    PartKind.FILE: FILE_PLACEHOLDER,
}


@dataclass(slots=True)
class AttachedArtifact:
    """Result of attaching a binary to a message.

    ``temporary`` artifacts were never uploaded. They only live in ``data_url``
    and are lost on reload.
    """

    name: str
    mime_type: str
    reference: ArtifactReference | None = None
    data_url: str | None = None
    temporary: bool = False

    def to_part(self, kind: PartKind) -> ContentPart:
        return ContentPart(
            kind=kind,
            data=self.data_url,
            reference=self.reference,
            name=self.name,
            mime_type=self.mime_type,
        )


def to_data_url(data: bytes, mime_type: str = "application/octet-stream") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(value: str) -> tuple[str, bytes]:
    """Return ``(mime_type, payload)`` for a ``data:`` URL."""

    match = _DATA_URL.match(value or "")
    if not match:
        raise ValueError("not a data URL")
    body = match.group("body")
    try:
        payload = base64.b64decode(body, validate=True) if match.group("b64") else body.encode("utf-8")
    except (binascii.Error, ValueError) as err:
        raise ValueError(f"malformed base64 payload: {err}") from err
    return match.group("mime") or "text/plain", payload


def inline_size(part: ContentPart) -> int:
    return len(part.data or "") if part.has_inline_data else 0


def _rewrite_part(
    part: ContentPart,
    known_references: Mapping[str, ArtifactReference],
    inline_threshold: int,
) -> None:
    if not part.is_artifact:
        return
    if part.reference is not None:
        part.data = None
        return
    if not part.has_inline_data:
        return
    if part.name and part.name in known_references:
        part.reference = known_references[part.name]
        part.data = None
        return
    # Images and audio are never persisted inline; other files only when small
    if part.kind is PartKind.FILE and inline_size(part) <= inline_threshold:
        return
    part.data = PLACEHOLDERS[part.kind]


def prepare_for_storage(
    conversation: Conversation,
    known_references: Mapping[str, ArtifactReference] | None = None,
    *,
    inline_threshold: int = DEFAULT_INLINE_THRESHOLD,
) -> Conversation:
    """Return a copy of ``conversation`` safe to persist.

    Inline payloads are replaced by their artifact reference when one is
    known, otherwise by a placeholder. The input is left untouched.
    """

    known_references = known_references or {}
    cleaned = Conversation.from_dict(conversation.to_dict())
    for message in cleaned.messages:
        for part in message.parts:
            _rewrite_part(part, known_references, inline_threshold)
    return cleaned


__all__ = [
    "AttachedArtifact",
    "PLACEHOLDERS",
    "decode_data_url",
    "inline_size",
    "prepare_for_storage",
    "to_data_url",
]
