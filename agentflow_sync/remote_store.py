"""Google Drive client for conversation documents and binary artifacts.

Layout under the user's Drive root::

    <app folder>/conversations/<conversation id>.json
    <app folder>/artifacts/<generated file name>

Folders and files are looked up by exact name inside their parent, so every
write is a find-or-create and repeating it never duplicates anything.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

from aiohttp import ClientError, ClientSession, MultipartWriter

from .artifacts import to_data_url
from .const import (
    ARTIFACTS_FOLDER,
    CONVERSATIONS_FOLDER,
    DEFAULT_APP_FOLDER,
    DEFAULT_DRIVE_BASE_URL,
    DEFAULT_DRIVE_UPLOAD_URL,
    DOCUMENT_MIME_TYPE,
    FOLDER_MIME_TYPE,
)
from .errors import AuthError, CorruptRecordError, NetworkError, NotFoundError
from .models import ArtifactReference, Conversation

_LOGGER = logging.getLogger(__name__)

FILE_FIELDS = "id,name,modifiedTime"
LIST_PAGE_SIZE = 1000


class TokenSource(Protocol):
    async def get_token(self) -> str | None: ...


def _quote(value: str) -> str:
    """Escape a value for use inside a single-quoted Drive query literal."""

    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveRemoteStore:
    """Read and write conversations and artifacts in Google Drive."""

    def __init__(
        self,
        auth: TokenSource,
        session: ClientSession | None = None,
        *,
        app_folder: str = DEFAULT_APP_FOLDER,
        base_url: str = DEFAULT_DRIVE_BASE_URL,
        upload_url: str = DEFAULT_DRIVE_UPLOAD_URL,
    ) -> None:
        self.auth = auth
        self.app_folder = app_folder
        self._base_url = base_url.rstrip("/")
        self._upload_url = upload_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._init_lock = asyncio.Lock()
        self.app_folder_id: str | None = None
        self.conversations_folder_id: str | None = None
        self.artifacts_folder_id: str | None = None

    @property
    def initialized(self) -> bool:
        return bool(self.app_folder_id and self.conversations_folder_id and self.artifacts_folder_id)

    def reset(self) -> None:
        """Forget cached folder ids, e.g. after the user switches accounts."""

        self.app_folder_id = self.conversations_folder_id = self.artifacts_folder_id = None

    async def async_close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    # ------------------------------------------------------------------
    async def _headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        token = await self.auth.get_token()
        if not token:
            raise AuthError("no access token")
        headers = {"Authorization": f"Bearer {token}"}
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
        data: Any = None,
        headers: Mapping[str, str] | None = None,
        expect: str = "json",
    ) -> Any:
        request_headers = await self._headers(headers)
        session = self._get_session()
        kwargs: dict[str, Any] = {"headers": request_headers}
        if params:
            kwargs["params"] = dict(params)
        if json_body is not None:
            kwargs["json"] = json_body
        if data is not None:
            kwargs["data"] = data
        try:
            async with session.request(method, url, **kwargs) as resp:
                if resp.status in (401, 403):
                    raise AuthError(f"{method} {url} rejected: HTTP {resp.status}", reason="rejected")
                if resp.status == 404:
                    raise NotFoundError(f"{method} {url} not found")
                if resp.status >= 400:
                    text = await resp.text()
                    raise NetworkError(f"{method} {url} failed: HTTP {resp.status} {text}", status=resp.status)
                if expect == "bytes":
                    return await resp.read()
                if expect == "none":
                    return None
                return await resp.json(content_type=None)
        except (ClientError, TimeoutError) as err:
            raise NetworkError(f"{method} {url} failed: {err}") from err

    # ------------------------------------------------------------------
    async def init(self) -> None:
        """Find or create the app, conversations and artifacts folders."""

        if self.initialized:
            return
        async with self._init_lock:
            if self.initialized:
                return
            app_id = await self.get_or_create_folder(self.app_folder, "root")
            conversations_id = await self.get_or_create_folder(CONVERSATIONS_FOLDER, app_id)
            artifacts_id = await self.get_or_create_folder(ARTIFACTS_FOLDER, app_id)
            self.app_folder_id = app_id
            self.conversations_folder_id = conversations_id
            self.artifacts_folder_id = artifacts_id
            _LOGGER.debug("Drive folders ready under %s (%s)", self.app_folder, app_id)

    async def get_or_create_folder(self, name: str, parent_id: str) -> str:
        query = (
            f"name='{_quote(name)}' and '{_quote(parent_id)}' in parents "
            f"and mimeType='{FOLDER_MIME_TYPE}' and trashed=false"
        )
        data = await self._request(
            "GET",
            f"{self._base_url}/files",
            params={"q": query, "fields": "files(id,name)"},
        )
        files = data.get("files") if isinstance(data, Mapping) else None
        if files:
            return str(files[0]["id"])
        folder = await self._request(
            "POST",
            f"{self._base_url}/files",
            json_body={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
        )
        return str(folder["id"])

    async def find_file(self, name: str, parent_id: str) -> dict[str, Any] | None:
        query = f"name='{_quote(name)}' and '{_quote(parent_id)}' in parents and trashed=false"
        data = await self._request(
            "GET",
            f"{self._base_url}/files",
            params={"q": query, "fields": f"files({FILE_FIELDS})"},
        )
        files = data.get("files") if isinstance(data, Mapping) else None
        return dict(files[0]) if files else None

    async def list_files(self, parent_id: str) -> list[dict[str, Any]]:
        query = f"'{_quote(parent_id)}' in parents and trashed=false"
        files: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params = {
                "q": query,
                "fields": f"nextPageToken,files({FILE_FIELDS})",
                "pageSize": str(LIST_PAGE_SIZE),
            }
            if page_token:
                params["pageToken"] = page_token
            data = await self._request("GET", f"{self._base_url}/files", params=params)
            if not isinstance(data, Mapping):
                break
            files.extend(dict(item) for item in data.get("files") or [])
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return files

    # ------------------------------------------------------------------
    def _multipart(self, metadata: Mapping[str, Any], content: bytes | str, mime_type: str) -> MultipartWriter:
        writer = MultipartWriter("related")
        writer.append_json(dict(metadata))
        body = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        writer.append(body, {"Content-Type": mime_type})
        return writer

    async def create_file(
        self,
        name: str,
        content: bytes | str,
        parent_id: str,
        mime_type: str = "application/json",
        *,
        metadata_mime_type: str | None = None,
    ) -> dict[str, Any]:
        metadata = {"name": name, "parents": [parent_id], "mimeType": metadata_mime_type or mime_type}
        return await self._request(
            "POST",
            f"{self._upload_url}/files",
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            data=self._multipart(metadata, content, mime_type),
        )

    async def update_file(self, file_id: str, content: bytes | str, mime_type: str = "application/json") -> dict[str, Any]:
        body = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        return await self._request(
            "PATCH",
            f"{self._upload_url}/files/{file_id}",
            params={"uploadType": "media", "fields": FILE_FIELDS},
            data=body,
            headers={"Content-Type": mime_type},
        )

    async def download_file(self, file_id: str) -> bytes:
        return await self._request(
            "GET",
            f"{self._base_url}/files/{file_id}",
            params={"alt": "media"},
            expect="bytes",
        )

    async def delete_file(self, file_id: str) -> None:
        await self._request("DELETE", f"{self._base_url}/files/{file_id}", expect="none")

    # ------------------------------------------------------------------
    async def save_conversation(self, conversation: Conversation) -> dict[str, Any]:
        """Write ``conversation`` as ``<id>.json``, updating the document if it exists."""

        await self.init()
        file_name = f"{conversation.id}.json"
        content = json.dumps(conversation.to_dict(), indent=2)
        existing = await self.find_file(file_name, self.conversations_folder_id)
        if existing:
            return await self.update_file(existing["id"], content, "application/json")
        return await self.create_file(file_name, content, self.conversations_folder_id, "application/json")

    async def list_conversations(self) -> dict[str, Conversation]:
        """Download every conversation document; unreadable ones are logged and skipped."""

        await self.init()
        conversations: dict[str, Conversation] = {}
        for item in await self.list_files(self.conversations_folder_id):
            name = item.get("name", item.get("id"))
            try:
                raw = await self.download_file(item["id"])
                try:
                    payload = json.loads(raw)
                except (UnicodeDecodeError, json.JSONDecodeError) as err:
                    raise CorruptRecordError(f"{name} is not valid JSON: {err}") from err
                conv = Conversation.from_dict(payload)
            except (CorruptRecordError, NetworkError, KeyError, TypeError, ValueError) as err:
                _LOGGER.warning("Failed to load conversation %s: %s", name, err)
                continue
            conversations[conv.id] = conv
        return conversations

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete ``<id>.json``; a missing document counts as already deleted."""

        await self.init()
        existing = await self.find_file(f"{conversation_id}.json", self.conversations_folder_id)
        if not existing:
            return True
        try:
            await self.delete_file(existing["id"])
        except NotFoundError:
            _LOGGER.debug("Conversation %s vanished before delete", conversation_id)
        return True

    # ------------------------------------------------------------------
    async def upload_artifact(
        self,
        data: bytes,
        name: str,
        mime_type: str = "application/octet-stream",
    ) -> ArtifactReference:
        """Upload ``data`` under ``name``; an existing object with that name is reused."""

        await self.init()
        existing = await self.find_file(name, self.artifacts_folder_id)
        if existing:
            return ArtifactReference(remote_id=str(existing["id"]))
        created = await self.create_file(name, data, self.artifacts_folder_id, mime_type)
        return ArtifactReference(remote_id=str(created["id"]))

    async def download_artifact(self, reference: ArtifactReference | str) -> bytes:
        if isinstance(reference, str):
            reference = ArtifactReference.parse(reference)
        return await self.download_file(reference.remote_id)

    async def download_artifact_data_url(
        self,
        reference: ArtifactReference | str,
        mime_type: str = "application/octet-stream",
    ) -> str:
        return to_data_url(await self.download_artifact(reference), mime_type)

    # ------------------------------------------------------------------
    async def get_storage_info(self) -> dict[str, Any] | None:
        try:
            data = await self._request("GET", f"{self._base_url}/about", params={"fields": "storageQuota"})
        except (AuthError, NetworkError) as err:
            _LOGGER.debug("Storage quota unavailable: %s", err)
            return None
        quota = data.get("storageQuota") if isinstance(data, Mapping) else None
        return dict(quota) if isinstance(quota, Mapping) else None

    async def export_document(self, markdown: str, title: str, *, now: datetime | None = None) -> dict[str, str]:
        """Upload ``markdown`` into the app folder, converted to a Google Doc."""

        await self.init()
        now = now or datetime.now(tz=UTC)
        created = await self.create_file(
            f"{title} - {now.date().isoformat()}",
            markdown,
            self.app_folder_id,
            "text/markdown",
            metadata_mime_type=DOCUMENT_MIME_TYPE,
        )
        file_id = str(created["id"])
        _LOGGER.info("Google Doc created: %s", file_id)
        return {"id": file_id, "url": f"https://docs.google.com/document/d/{file_id}/edit"}


__all__ = ["DriveRemoteStore", "TokenSource"]
