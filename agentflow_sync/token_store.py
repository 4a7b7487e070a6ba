"""Persistence for the access token, its expiry and the last user activity."""

from __future__ import annotations

import json
import logging
import os
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_LOGGER = logging.getLogger(__name__)

KEY_ACCESS_TOKEN = "gd_access_token"
KEY_TOKEN_EXPIRY = "gd_token_expiry"
KEY_LAST_ACTIVITY = "gd_last_activity"


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | float | str) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=UTC)


@dataclass(frozen=True, slots=True)
class StoredToken:
    access_token: str
    expires_at: datetime
    last_activity: datetime | None = None


class TokenStore:
    """Keep the three token scalars in a JSON file, or in memory when ``path`` is ``None``.

    The values are always written and cleared together.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._memory: dict[str, int | str] = {}

    # ------------------------------------------------------------------
    def _read(self) -> dict[str, int | str]:
        if self.path is None:
            return dict(self._memory)
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            _LOGGER.warning("Ignoring unreadable token store %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, int | str]) -> None:
        if self.path is None:
            self._memory = dict(data)
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(data, handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, self.path)

    # ------------------------------------------------------------------
    def load(self) -> StoredToken | None:
        """Return the stored token, expired or not, or ``None`` when absent."""

        data = self._read()
        token = data.get(KEY_ACCESS_TOKEN)
        expiry = data.get(KEY_TOKEN_EXPIRY)
        if not token or expiry is None:
            return None
        try:
            expires_at = from_epoch_ms(expiry)
            activity_raw = data.get(KEY_LAST_ACTIVITY)
            last_activity = from_epoch_ms(activity_raw) if activity_raw is not None else None
        except (TypeError, ValueError, OverflowError) as exc:
            _LOGGER.warning("Discarding malformed stored token: %s", exc)
            return None
        return StoredToken(access_token=str(token), expires_at=expires_at, last_activity=last_activity)

    def save(self, access_token: str, expires_at: datetime, last_activity: datetime) -> None:
        self._write(
            {
                KEY_ACCESS_TOKEN: access_token,
                KEY_TOKEN_EXPIRY: to_epoch_ms(expires_at),
                KEY_LAST_ACTIVITY: to_epoch_ms(last_activity),
            }
        )

    def save_activity(self, last_activity: datetime) -> bool:
        """Update only the activity instant; ignored when no token is stored."""

        data = self._read()
        if not data.get(KEY_ACCESS_TOKEN):
            return False
        data[KEY_LAST_ACTIVITY] = to_epoch_ms(last_activity)
        self._write(data)
        return True

    def clear(self) -> None:
        if self.path is None:
            self._memory = {}
            return
        with suppress(FileNotFoundError):
            self.path.unlink()


__all__ = ["StoredToken", "TokenStore", "from_epoch_ms", "to_epoch_ms"]
