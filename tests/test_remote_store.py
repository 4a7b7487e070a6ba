from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from agentflow_sync import remote_store as remote_store_module
from agentflow_sync.const import DOCUMENT_MIME_TYPE
from agentflow_sync.errors import AuthError, NetworkError, NotFoundError
from agentflow_sync.models import ArtifactReference, Conversation, Message, Role


def make_conv(conv_id: str = "c1", title: str = "Test", last_modified: int = 1_000) -> Conversation:
    return Conversation(
        id=conv_id,
        title=title,
        created_at=1_000,
        last_modified=last_modified,
        messages=[Message(Role.USER, "hello", 1_000)],
    )


@pytest.mark.asyncio
async def test_folder_provisioning_is_idempotent(drive, remote, make_remote) -> None:
    await remote.init()
    await remote.init()
    await make_remote().init()

    app_id = drive.folder_id("AgentFlowUI")
    assert app_id is not None
    assert len(drive.children("root", "AgentFlowUI")) == 1
    assert {item["name"] for item in drive.children(app_id)} == {"conversations", "artifacts"}
    assert remote.conversations_folder_id == drive.folder_id("AgentFlowUI", "conversations")


@pytest.mark.asyncio
async def test_save_conversation_creates_then_updates(drive, remote) -> None:
    await remote.save_conversation(make_conv(title="first"))
    await remote.save_conversation(make_conv(title="second", last_modified=2_000))

    folder = drive.folder_id("AgentFlowUI", "conversations")
    files = drive.children(folder)
    assert [item["name"] for item in files] == ["c1.json"]
    assert drive.conversation_docs()["c1"]["title"] == "second"
    assert drive.count("PATCH") == 1


@pytest.mark.asyncio
async def test_list_conversations_skips_corrupt_documents(drive, remote) -> None:
    await remote.save_conversation(make_conv("c1"))
    folder = drive.folder_id("AgentFlowUI", "conversations")
    drive.add_file("broken.json", folder, b"{not json")
    drive.add_file("noid.json", folder, json.dumps({"title": "missing id"}).encode())
    bad_stamp = {"id": "c2", "messages": [{"role": "user", "content": "hi", "timestamp": "not-a-number"}]}
    drive.add_file("c2.json", folder, json.dumps(bad_stamp).encode())

    conversations = await remote.list_conversations()

    assert set(conversations) == {"c1"}
    assert conversations["c1"].messages[0].content == "hello"


@pytest.mark.asyncio
async def test_list_conversations_follows_pages(drive, remote, monkeypatch) -> None:
    monkeypatch.setattr(remote_store_module, "LIST_PAGE_SIZE", 1)
    for conv_id in ("a", "b", "c"):
        await remote.save_conversation(make_conv(conv_id))

    assert set(await remote.list_conversations()) == {"a", "b", "c"}


@pytest.mark.asyncio
async def test_delete_conversation_twice_is_safe(drive, remote) -> None:
    await remote.save_conversation(make_conv("c1"))

    assert await remote.delete_conversation("c1") is True
    assert await remote.delete_conversation("c1") is True
    assert drive.conversation_docs() == {}


@pytest.mark.asyncio
async def test_delete_tolerates_vanished_document(drive, remote) -> None:
    await remote.save_conversation(make_conv("c1"))
    drive.status_when = lambda method, url, params: 404 if method == "DELETE" else None
    assert await remote.delete_conversation("c1") is True


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [b"", b"\x00\xff\x10binary\r\n--", bytes(range(256)) * 4])
async def test_artifact_roundtrip(remote, payload: bytes) -> None:
    reference = await remote.upload_artifact(payload, "blob.bin", "application/octet-stream")
    assert isinstance(reference, ArtifactReference)
    assert await remote.download_artifact(reference) == payload
    assert await remote.download_artifact(str(reference)) == payload


@pytest.mark.asyncio
async def test_artifact_upload_deduplicates_by_name(drive, remote) -> None:
    first = await remote.upload_artifact(b"one", "img_1.png", "image/png")
    second = await remote.upload_artifact(b"two", "img_1.png", "image/png")

    assert first == second
    assert len(drive.children(remote.artifacts_folder_id)) == 1
    assert await remote.download_artifact(first) == b"one"


@pytest.mark.asyncio
async def test_download_artifact_data_url(remote) -> None:
    reference = await remote.upload_artifact(b"abc", "a.txt", "text/plain")
    assert await remote.download_artifact_data_url(reference, "text/plain") == "data:text/plain;base64,YWJj"


@pytest.mark.asyncio
async def test_missing_artifact_raises_not_found(remote) -> None:
    await remote.init()
    with pytest.raises(NotFoundError):
        await remote.download_artifact(ArtifactReference("nope"))


@pytest.mark.asyncio
async def test_operations_require_token(drive, make_remote) -> None:
    store = make_remote(None)
    with pytest.raises(AuthError):
        await store.save_conversation(make_conv())
    assert drive.calls == []


@pytest.mark.asyncio
async def test_http_errors_are_translated(drive, remote) -> None:
    drive.status_when = lambda method, url, params: 401
    with pytest.raises(AuthError):
        await remote.init()

    drive.status_when = lambda method, url, params: 503
    with pytest.raises(NetworkError) as err:
        await remote.init()
    assert err.value.status == 503

    drive.status_when = None
    drive.offline = True
    with pytest.raises(NetworkError):
        await remote.init()
    assert not remote.initialized


@pytest.mark.asyncio
async def test_names_with_quotes_are_escaped(drive, remote) -> None:
    reference = await remote.upload_artifact(b"q", "it's.png", "image/png")
    again = await remote.upload_artifact(b"q", "it's.png", "image/png")
    assert reference == again


@pytest.mark.asyncio
async def test_storage_info(drive, remote) -> None:
    assert await remote.get_storage_info() == {"limit": "1000", "usage": "10"}
    drive.offline = True
    assert await remote.get_storage_info() is None


@pytest.mark.asyncio
async def test_export_document(drive, remote) -> None:
    result = await remote.export_document("# Notes", "Chat", now=datetime(2025, 3, 4, tzinfo=UTC))

    item = drive.files[result["id"]]
    assert item["name"] == "Chat - 2025-03-04"
    assert item["mimeType"] == DOCUMENT_MIME_TYPE
    assert item["parents"] == [remote.app_folder_id]
    assert item["content"] == b"# Notes"
    assert result["url"] == f"https://docs.google.com/document/d/{result['id']}/edit"
