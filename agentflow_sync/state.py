"""Finite-state machines for the connectivity mode and the token lifecycle.

Both machines are plain values plus a transition table. Asking for a
transition the table does not list raises :class:`InvalidTransitionError`, so
"refresh while already refreshing" cannot happen silently.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum

from .errors import InvalidTransitionError


class SyncMode(StrEnum):
    OFFLINE = "offline"
    CONNECTING = "connecting"
    ONLINE = "online"
    SYNCING = "syncing"
    ERROR = "error"


class ModeEvent(StrEnum):
    CONNECT = "connect"
    CONNECTED = "connected"
    SYNC_START = "sync_start"
    SYNC_DONE = "sync_done"
    FAIL = "fail"
    DISCONNECT = "disconnect"


MODE_TRANSITIONS: Mapping[SyncMode, Mapping[ModeEvent, SyncMode]] = {
    SyncMode.OFFLINE: {
        ModeEvent.CONNECT: SyncMode.CONNECTING,
        ModeEvent.DISCONNECT: SyncMode.OFFLINE,
    },
    SyncMode.CONNECTING: {
        ModeEvent.CONNECTED: SyncMode.ONLINE,
        ModeEvent.FAIL: SyncMode.OFFLINE,
        ModeEvent.DISCONNECT: SyncMode.OFFLINE,
    },
    SyncMode.ONLINE: {
        ModeEvent.SYNC_START: SyncMode.SYNCING,
        ModeEvent.FAIL: SyncMode.ERROR,
        ModeEvent.DISCONNECT: SyncMode.OFFLINE,
    },
    SyncMode.SYNCING: {
        ModeEvent.SYNC_DONE: SyncMode.ONLINE,
        ModeEvent.FAIL: SyncMode.ERROR,
        ModeEvent.DISCONNECT: SyncMode.OFFLINE,
    },
    SyncMode.ERROR: {
        ModeEvent.CONNECT: SyncMode.CONNECTING,
        ModeEvent.SYNC_START: SyncMode.SYNCING,
        ModeEvent.DISCONNECT: SyncMode.OFFLINE,
    },
}


def next_mode(mode: SyncMode, event: ModeEvent) -> SyncMode:
    """Return the mode reached from ``mode`` on ``event``."""

    try:
        return MODE_TRANSITIONS[mode][event]
    except KeyError:
        raise InvalidTransitionError(mode.value, event.value) from None


def can_transition(mode: SyncMode, event: ModeEvent) -> bool:
    return event in MODE_TRANSITIONS[mode]


class TokenPhase(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


class TokenEvent(StrEnum):
    ACQUIRED = "acquired"
    REFRESH_STARTED = "refresh_started"
    REFRESH_SUCCEEDED = "refresh_succeeded"
    REFRESH_FAILED = "refresh_failed"
    CLEARED = "cleared"


TOKEN_TRANSITIONS: Mapping[TokenPhase, Mapping[TokenEvent, TokenPhase]] = {
    TokenPhase.UNAUTHENTICATED: {
        TokenEvent.ACQUIRED: TokenPhase.AUTHENTICATED,
        TokenEvent.CLEARED: TokenPhase.UNAUTHENTICATED,
    },
    TokenPhase.AUTHENTICATED: {
        TokenEvent.ACQUIRED: TokenPhase.AUTHENTICATED,
        TokenEvent.REFRESH_STARTED: TokenPhase.REFRESHING,
        TokenEvent.CLEARED: TokenPhase.UNAUTHENTICATED,
    },
    TokenPhase.REFRESHING: {
        TokenEvent.ACQUIRED: TokenPhase.REFRESHING,
        TokenEvent.REFRESH_SUCCEEDED: TokenPhase.AUTHENTICATED,
        # The stale credential stays; validity is judged by its expiry
        TokenEvent.REFRESH_FAILED: TokenPhase.AUTHENTICATED,
        TokenEvent.CLEARED: TokenPhase.UNAUTHENTICATED,
    },
}


@dataclass(frozen=True, slots=True)
class TokenState:
    """Access credential, its absolute expiry and the last user activity."""

    phase: TokenPhase = TokenPhase.UNAUTHENTICATED
    access_token: str | None = None
    expires_at: datetime | None = None
    last_activity: datetime | None = None

    @property
    def refreshing(self) -> bool:
        return self.phase is TokenPhase.REFRESHING

    def transition(self, event: TokenEvent, **changes) -> TokenState:
        try:
            phase = TOKEN_TRANSITIONS[self.phase][event]
        except KeyError:
            raise InvalidTransitionError(self.phase.value, event.value) from None
        if event is TokenEvent.CLEARED:
            return TokenState(last_activity=self.last_activity)
        return replace(self, phase=phase, **changes)


__all__ = [
    "MODE_TRANSITIONS",
    "TOKEN_TRANSITIONS",
    "ModeEvent",
    "SyncMode",
    "TokenEvent",
    "TokenPhase",
    "TokenState",
    "can_transition",
    "next_mode",
]
