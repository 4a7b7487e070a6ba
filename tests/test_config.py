from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from agentflow_sync.config import SyncConfig, load_config
from agentflow_sync.const import DEFAULT_APP_FOLDER, DEFAULT_DRAIN_INTERVAL
from agentflow_sync.utils.logging import _WarningGate, warn_once


def test_defaults_applied() -> None:
    config = SyncConfig.from_options({})
    assert config.app_folder == DEFAULT_APP_FOLDER
    assert config.drain_interval == DEFAULT_DRAIN_INTERVAL
    assert config.refresh_timeout == 5.0
    assert config.token_path is None
    assert not config.oauth_ready


def test_values_coerced_and_extras_dropped() -> None:
    config = SyncConfig.from_options(
        {
            "client_id": "  abc  ",
            "drain_interval": "60",
            "inline_threshold": "1024",
            "drive_base_url": "https://drive.example.com/v3/",
            "unexpected": True,
        }
    )
    assert config.client_id == "abc"
    assert config.oauth_ready
    assert config.drain_interval == 60.0
    assert config.inline_threshold == 1024
    assert config.drive_base_url == "https://drive.example.com/v3"
    assert "unexpected" not in config.to_options()


@pytest.mark.parametrize(
    "options",
    [
        {"drive_base_url": "ftp://nope"},
        {"drain_interval": 0},
        {"refresh_timeout": "soon"},
        {"app_folder": "   "},
    ],
)
def test_invalid_options_raise(options) -> None:
    with pytest.raises(ValueError):
        SyncConfig.from_options(options)


def test_load_yaml_expands_env(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AGENTFLOW_CLIENT_ID", "from-env")
    path = tmp_path / "sync.yaml"
    path.write_text("client_id: ${AGENTFLOW_CLIENT_ID}\napp_folder: MyChats\ndrain_delay: 0.5\n")

    config = load_config(path)

    assert config.client_id == "from-env"
    assert config.app_folder == "MyChats"
    assert config.drain_delay == 0.5


def test_load_json(tmp_path: Path) -> None:
    path = tmp_path / "sync.json"
    path.write_text(json.dumps({"database_path": ":memory:", "token_path": "tokens.json"}))
    config = load_config(path)
    assert config.database_path == ":memory:"
    assert config.token_path == "tokens.json"


def test_load_config_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")
    bad_yaml = tmp_path / "bad.yaml"
    bad_yaml.write_text("client_id: [unclosed")
    with pytest.raises(ValueError):
        load_config(bad_yaml)
    not_mapping = tmp_path / "list.json"
    not_mapping.write_text("[1, 2]")
    with pytest.raises(ValueError):
        load_config(not_mapping)


def test_warn_once_rate_limits(caplog) -> None:
    logger = logging.getLogger("agentflow_sync.test")
    with caplog.at_level(logging.WARNING):
        assert warn_once(logger, "drain:conversation", "first") is True
        assert warn_once(logger, "drain:conversation", "second") is False
        assert warn_once(logger, "drain:delete-conversation", "third") is True
    messages = [record.getMessage() for record in caplog.records]
    assert messages == ["drain:conversation: first", "drain:delete-conversation: third"]


def test_warning_gate_evicts_stalest_code() -> None:
    gate = _WarningGate(max_codes=2)
    assert gate.allow("a", 60, now=0.0)
    assert gate.allow("b", 60, now=1.0)
    assert not gate.allow("a", 60, now=2.0)
    assert gate.allow("c", 60, now=3.0)
    # "a" fired before "b", so it was dropped to make room
    assert gate.allow("a", 60, now=4.0)
    assert not gate.allow("c", 60, now=5.0)
