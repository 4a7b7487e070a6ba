from __future__ import annotations

import asyncio
import itertools
import json
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from aiohttp import ClientConnectionError, MultipartWriter

from agentflow_sync.auth import AuthTokenManager, OAuthTokens
from agentflow_sync.config import SyncConfig
from agentflow_sync.const import DEFAULT_DRIVE_BASE_URL, DEFAULT_DRIVE_UPLOAD_URL, FOLDER_MIME_TYPE
from agentflow_sync.local_cache import LocalCache
from agentflow_sync.orchestrator import StorageManager
from agentflow_sync.remote_store import DriveRemoteStore
from agentflow_sync.token_store import TokenStore
from agentflow_sync.utils.logging import reset_warnings


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeIdentityProvider:
    def __init__(self, clock: FakeClock, lifetime: timedelta = timedelta(hours=1)) -> None:
        self.clock = clock
        self.lifetime = lifetime
        self.calls: list[bool] = []
        self.delay = 0.0
        self.error: Exception | None = None
        self.revoked: list[str] = []
        self.revoke_error: Exception | None = None

    async def request_token(self, *, interactive: bool) -> OAuthTokens:
        self.calls.append(interactive)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return OAuthTokens(access_token=f"token-{len(self.calls)}", expires_at=self.clock() + self.lifetime)

    async def revoke(self, token: str) -> None:
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(token)


class StaticTokenSource:
    def __init__(self, token: str | None = "token") -> None:
        self.token = token

    async def get_token(self) -> str | None:
        return self.token


class DummyResp:
    def __init__(self, status: int, data: Any = None, body: bytes | None = None) -> None:
        self.status = status
        self._data = data
        self._body = body

    async def json(self, content_type=None):
        return self._data

    async def text(self):
        if self._body is not None:
            return self._body.decode("utf-8", "replace")
        return json.dumps(self._data) if self._data is not None else ""

    async def read(self):
        if self._body is not None:
            return self._body
        return json.dumps(self._data).encode("utf-8")


class _Collector:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []

    async def write(self, data: bytes) -> None:
        self.chunks.append(bytes(data))


async def parse_multipart(writer: MultipartWriter) -> tuple[dict[str, Any], bytes]:
    collector = _Collector()
    await writer.write(collector)
    body = b"".join(collector.chunks)
    parts: list[bytes] = []
    for segment in body.split(b"--" + writer.boundary.encode("ascii")):
        if not segment or segment.startswith(b"--"):
            continue
        segment = segment.removeprefix(b"\r\n")
        _headers, _sep, content = segment.partition(b"\r\n\r\n")
        parts.append(content.removesuffix(b"\r\n"))
    return json.loads(parts[0]), parts[1]


_NAME = re.compile(r"name='((?:\\.|[^'\\])*)'")
_PARENT = re.compile(r"'((?:\\.|[^'\\])*)' in parents")
_MIME = re.compile(r"mimeType='([^']*)'")


def _unquote(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


class _Call:
    def __init__(self, drive: FakeDrive, method: str, url: str, kwargs: dict[str, Any]) -> None:
        self.drive = drive
        self.method = method
        self.url = url
        self.kwargs = kwargs

    async def __aenter__(self) -> DummyResp:
        return await self.drive.handle(self.method, self.url, **self.kwargs)

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeDrive:
    """In-memory stand-in for the Google Drive v3 REST API behind an aiohttp session."""

    def __init__(self) -> None:
        self.files: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str, dict[str, str]]] = []
        self.offline = False
        self.fail_when: Callable[[str, str, dict[str, str]], bool] | None = None
        self.status_when: Callable[[str, str, dict[str, str]], int | None] | None = None
        self.quota = {"limit": "1000", "usage": "10"}
        self.closed = False
        self._ids = itertools.count(1)

    # helpers ----------------------------------------------------------
    def add_file(self, name: str, parent: str, content: bytes = b"", mime_type: str = "application/json") -> str:
        file_id = f"file-{next(self._ids)}"
        self.files[file_id] = {
            "id": file_id,
            "name": name,
            "parents": [parent],
            "mimeType": mime_type,
            "content": content,
        }
        return file_id

    def children(self, parent: str, name: str | None = None) -> list[dict[str, Any]]:
        return [
            item
            for item in self.files.values()
            if parent in item["parents"] and (name is None or item["name"] == name)
        ]

    def folder_id(self, *path: str) -> str | None:
        parent = "root"
        for name in path:
            matches = [item for item in self.children(parent, name) if item["mimeType"] == FOLDER_MIME_TYPE]
            if not matches:
                return None
            parent = matches[0]["id"]
        return parent

    def conversation_docs(self, app_folder: str = "AgentFlowUI") -> dict[str, dict[str, Any]]:
        folder = self.folder_id(app_folder, "conversations")
        if folder is None:
            return {}
        docs = {}
        for item in self.children(folder):
            payload = json.loads(item["content"])
            docs[payload["id"]] = payload
        return docs

    def count(self, method: str, fragment: str = "") -> int:
        return sum(1 for m, url, _ in self.calls if m == method and fragment in url)

    @property
    def writes(self) -> int:
        return sum(1 for m, url, _ in self.calls if m in ("POST", "PATCH") and "/upload/" in url)

    # aiohttp session surface -------------------------------------------
    def request(self, method: str, url: str, **kwargs) -> _Call:
        return _Call(self, method, url, kwargs)

    async def close(self) -> None:
        self.closed = True

    async def handle(self, method: str, url: str, **kwargs) -> DummyResp:
        params = {key: str(value) for key, value in (kwargs.get("params") or {}).items()}
        self.calls.append((method, url, params))
        await asyncio.sleep(0)
        if self.offline or (self.fail_when is not None and self.fail_when(method, url, params)):
            raise ClientConnectionError("connection refused")
        if self.status_when is not None:
            status = self.status_when(method, url, params)
            if status:
                return DummyResp(status, {"error": "forced"})
        if url.startswith(DEFAULT_DRIVE_UPLOAD_URL):
            return await self._upload(method, url[len(DEFAULT_DRIVE_UPLOAD_URL) :], params, kwargs)
        return self._api(method, url[len(DEFAULT_DRIVE_BASE_URL) :], params, kwargs)

    def _public(self, item: dict[str, Any]) -> dict[str, Any]:
        return {"id": item["id"], "name": item["name"], "modifiedTime": "2025-01-01T00:00:00Z"}

    def _api(self, method: str, path: str, params: dict[str, str], kwargs: dict[str, Any]) -> DummyResp:
        if path == "/about":
            return DummyResp(200, {"storageQuota": dict(self.quota)})
        if path == "/files" and method == "GET":
            return self._list(params)
        if path == "/files" and method == "POST":
            body = kwargs["json"]
            file_id = self.add_file(body["name"], body["parents"][0], mime_type=body["mimeType"])
            return DummyResp(200, self._public(self.files[file_id]))
        file_id = path.removeprefix("/files/")
        item = self.files.get(file_id)
        if item is None:
            return DummyResp(404, {"error": "not found"})
        if method == "DELETE":
            del self.files[file_id]
            return DummyResp(204)
        if method == "GET" and params.get("alt") == "media":
            return DummyResp(200, body=item["content"])
        return DummyResp(200, self._public(item))

    def _list(self, params: dict[str, str]) -> DummyResp:
        query = params.get("q", "")
        name = _NAME.search(query)
        parent = _PARENT.search(query)
        mime = _MIME.search(query)
        matches = [
            item
            for item in self.files.values()
            if (name is None or item["name"] == _unquote(name.group(1)))
            and (parent is None or _unquote(parent.group(1)) in item["parents"])
            and (mime is None or item["mimeType"] == mime.group(1))
        ]
        offset = int(params.get("pageToken") or 0)
        size = int(params.get("pageSize") or 100)
        page = matches[offset : offset + size]
        data: dict[str, Any] = {"files": [self._public(item) for item in page]}
        if offset + size < len(matches):
            data["nextPageToken"] = str(offset + size)
        return DummyResp(200, data)

    async def _upload(self, method: str, path: str, params: dict[str, str], kwargs: dict[str, Any]) -> DummyResp:
        if method == "POST" and params.get("uploadType") == "multipart":
            metadata, content = await parse_multipart(kwargs["data"])
            file_id = self.add_file(metadata["name"], metadata["parents"][0], content, metadata["mimeType"])
            return DummyResp(200, self._public(self.files[file_id]))
        file_id = path.removeprefix("/files/")
        item = self.files.get(file_id)
        if item is None:
            return DummyResp(404, {"error": "not found"})
        item["content"] = bytes(kwargs["data"])
        return DummyResp(200, self._public(item))


@pytest.fixture(autouse=True)
def _reset_warnings():
    reset_warnings()
    yield
    reset_warnings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider(clock: FakeClock) -> FakeIdentityProvider:
    return FakeIdentityProvider(clock)


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def cache():
    cache = LocalCache()
    yield cache
    cache.close()


@pytest.fixture
def make_remote(drive: FakeDrive) -> Callable[..., DriveRemoteStore]:
    def _make(token: str | None = "token") -> DriveRemoteStore:
        return DriveRemoteStore(StaticTokenSource(token), drive)

    return _make


@pytest.fixture
def remote(make_remote) -> DriveRemoteStore:
    return make_remote()


@pytest_asyncio.fixture
async def auth(clock: FakeClock, provider: FakeIdentityProvider):
    manager = AuthTokenManager(TokenStore(), provider, clock=clock, refresh_timeout=0.5)
    yield manager
    await manager.stop_background_refresh()


@pytest_asyncio.fixture
async def manager(cache: LocalCache, auth: AuthTokenManager, drive: FakeDrive):
    storage = StorageManager(
        cache,
        auth,
        DriveRemoteStore(auth, drive),
        config=SyncConfig(drain_delay=0.0),
    )
    yield storage
    await storage.close()
