"""Configuration for the storage engine, loaded from options or a YAML/JSON file."""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import voluptuous as vol
import yaml

from .const import (
    CONF_APP_FOLDER,
    CONF_CLIENT_ID,
    CONF_CLIENT_SECRET,
    CONF_DATABASE_PATH,
    CONF_DRAIN_DELAY,
    CONF_DRAIN_INTERVAL,
    CONF_DRIVE_BASE_URL,
    CONF_DRIVE_UPLOAD_URL,
    CONF_INLINE_THRESHOLD,
    CONF_REFRESH_TIMEOUT,
    CONF_REFRESH_TOKEN,
    CONF_REVOKE_URL,
    CONF_TOKEN_CHECK_INTERVAL,
    CONF_TOKEN_PATH,
    CONF_TOKEN_URL,
    DEFAULT_APP_FOLDER,
    DEFAULT_DATABASE_PATH,
    DEFAULT_DRAIN_DELAY,
    DEFAULT_DRAIN_INTERVAL,
    DEFAULT_DRIVE_BASE_URL,
    DEFAULT_DRIVE_UPLOAD_URL,
    DEFAULT_INLINE_THRESHOLD,
    DEFAULT_REFRESH_TIMEOUT,
    DEFAULT_REVOKE_URL,
    DEFAULT_TOKEN_CHECK_INTERVAL,
    DEFAULT_TOKEN_URL,
)

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def _stripped(value: Any) -> str:
    return str(value or "").strip()


def _optional_str(value: Any) -> str | None:
    text = _stripped(value)
    return text or None


def _url(value: Any) -> str:
    text = _stripped(value)
    if not text.startswith(("http://", "https://")):
        raise vol.Invalid(f"expected an http(s) URL, got {value!r}")
    return text.rstrip("/")


CONFIG_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_CLIENT_ID, default=""): _stripped,
        vol.Optional(CONF_CLIENT_SECRET, default=None): vol.Any(None, _optional_str),
        vol.Optional(CONF_REFRESH_TOKEN, default=None): vol.Any(None, _optional_str),
        vol.Optional(CONF_DATABASE_PATH, default=DEFAULT_DATABASE_PATH): vol.All(_stripped, vol.Length(min=1)),
        vol.Optional(CONF_TOKEN_PATH, default=None): vol.Any(None, _optional_str),
        vol.Optional(CONF_APP_FOLDER, default=DEFAULT_APP_FOLDER): vol.All(_stripped, vol.Length(min=1)),
        vol.Optional(CONF_DRIVE_BASE_URL, default=DEFAULT_DRIVE_BASE_URL): _url,
        vol.Optional(CONF_DRIVE_UPLOAD_URL, default=DEFAULT_DRIVE_UPLOAD_URL): _url,
        vol.Optional(CONF_TOKEN_URL, default=DEFAULT_TOKEN_URL): _url,
        vol.Optional(CONF_REVOKE_URL, default=DEFAULT_REVOKE_URL): _url,
        vol.Optional(CONF_DRAIN_INTERVAL, default=DEFAULT_DRAIN_INTERVAL): vol.All(
            vol.Coerce(float), vol.Range(min=1)
        ),
        vol.Optional(CONF_DRAIN_DELAY, default=DEFAULT_DRAIN_DELAY): vol.All(vol.Coerce(float), vol.Range(min=0)),
        vol.Optional(CONF_TOKEN_CHECK_INTERVAL, default=DEFAULT_TOKEN_CHECK_INTERVAL): vol.All(
            vol.Coerce(float), vol.Range(min=1)
        ),
        vol.Optional(CONF_REFRESH_TIMEOUT, default=DEFAULT_REFRESH_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=0.1)
        ),
        vol.Optional(CONF_INLINE_THRESHOLD, default=DEFAULT_INLINE_THRESHOLD): vol.All(
            vol.Coerce(int), vol.Range(min=0)
        ),
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(slots=True)
class SyncConfig:
    """Validated settings for :class:`~agentflow_sync.orchestrator.StorageManager`."""

    client_id: str = ""
    client_secret: str | None = None
    refresh_token: str | None = None
    database_path: str = DEFAULT_DATABASE_PATH
    token_path: str | None = None
    app_folder: str = DEFAULT_APP_FOLDER
    drive_base_url: str = DEFAULT_DRIVE_BASE_URL
    drive_upload_url: str = DEFAULT_DRIVE_UPLOAD_URL
    token_url: str = DEFAULT_TOKEN_URL
    revoke_url: str = DEFAULT_REVOKE_URL
    drain_interval: float = DEFAULT_DRAIN_INTERVAL
    drain_delay: float = DEFAULT_DRAIN_DELAY
    token_check_interval: float = DEFAULT_TOKEN_CHECK_INTERVAL
    refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT
    inline_threshold: int = DEFAULT_INLINE_THRESHOLD

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> SyncConfig:
        try:
            data = CONFIG_SCHEMA(dict(options))
        except vol.Invalid as err:
            raise ValueError(f"invalid sync configuration: {err}") from err
        return cls(**data)

    @property
    def oauth_ready(self) -> bool:
        return bool(self.client_id)

    def to_options(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.__slots__}


def _resolve_env(value: Any) -> Any:
    """Replace ``${ENV_VAR}`` patterns in every string value."""

    if isinstance(value, Mapping):
        return {key: _resolve_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_resolve_env(item) for item in value]
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda match: os.environ.get(match.group(1), ""), value)
    return value


def load_config(path: str | Path) -> SyncConfig:
    """Return the :class:`SyncConfig` stored in a YAML or JSON file."""

    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(p)
    try:
        with p.open("r", encoding="utf-8") as handle:
            if p.suffix.lower() in {".yaml", ".yml"}:
                raw = yaml.safe_load(handle) or {}
            else:
                raw = json.load(handle)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {p}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {p}: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise ValueError(f"Configuration in {p} must be a mapping")
    return SyncConfig.from_options(_resolve_env(raw))


__all__ = ["CONFIG_SCHEMA", "SyncConfig", "load_config"]
