from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

from agentflow_sync.token_store import (
    KEY_ACCESS_TOKEN,
    KEY_LAST_ACTIVITY,
    KEY_TOKEN_EXPIRY,
    TokenStore,
    to_epoch_ms,
)

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def test_file_store_writes_three_epoch_ms_scalars(tmp_path: Path) -> None:
    path = tmp_path / "token.json"
    store = TokenStore(path)
    store.save("abc", NOW + timedelta(hours=1), NOW)

    raw = json.loads(path.read_text())
    assert raw == {
        KEY_ACCESS_TOKEN: "abc",
        KEY_TOKEN_EXPIRY: to_epoch_ms(NOW + timedelta(hours=1)),
        KEY_LAST_ACTIVITY: to_epoch_ms(NOW),
    }
    loaded = TokenStore(path).load()
    assert loaded.access_token == "abc"
    assert loaded.expires_at == NOW + timedelta(hours=1)
    assert loaded.last_activity == NOW


def test_expired_token_is_still_loaded() -> None:
    store = TokenStore()
    store.save("old", NOW - timedelta(hours=1), NOW - timedelta(hours=2))
    assert store.load().access_token == "old"


def test_save_activity_requires_token() -> None:
    store = TokenStore()
    assert store.save_activity(NOW) is False
    store.save("abc", NOW, NOW)
    assert store.save_activity(NOW + timedelta(minutes=2)) is True
    assert store.load().last_activity == NOW + timedelta(minutes=2)


def test_clear_removes_everything(tmp_path: Path) -> None:
    path = tmp_path / "token.json"
    store = TokenStore(path)
    store.save("abc", NOW, NOW)
    store.clear()
    store.clear()
    assert not path.exists()
    assert store.load() is None


def test_unreadable_file_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "token.json"
    path.write_text("{broken")
    assert TokenStore(path).load() is None
