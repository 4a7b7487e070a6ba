"""OAuth token lifecycle: acquisition, silent renewal, background refresh and revocation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from aiohttp import ClientError, ClientSession, ClientTimeout

from .const import (
    ACTIVITY_SIGNALS,
    ACTIVITY_THROTTLE_SECONDS,
    ACTIVITY_WINDOW_SECONDS,
    DEFAULT_REFRESH_TIMEOUT,
    DEFAULT_REVOKE_URL,
    DEFAULT_TOKEN_CHECK_INTERVAL,
    DEFAULT_TOKEN_URL,
    DRIVE_SCOPE,
    PROACTIVE_REFRESH_WINDOW_SECONDS,
    TOKEN_EXPIRY_BUFFER_SECONDS,
)
from .errors import AuthError, NetworkError
from .scheduler import PeriodicTask
from .state import TokenEvent, TokenPhase, TokenState
from .token_store import TokenStore

_LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]
TokenListener = Callable[["OAuthTokens"], Awaitable[None] | None]


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class OAuthTokens:
    """Normalised token response from the identity provider."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scope: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, now: datetime | None = None) -> OAuthTokens:
        """Create :class:`OAuthTokens` from a token endpoint JSON payload."""

        access_token = str(payload.get("access_token") or "").strip()
        if not access_token:
            raise AuthError("access_token missing from response", reason="invalid_response")
        now = now or utcnow()
        expiry = payload.get("expires_in")
        if expiry is None:
            expiry = payload.get("expires_at")
        if isinstance(expiry, int | float):
            expires_at = now + timedelta(seconds=float(expiry))
        elif isinstance(expiry, str) and expiry.strip():
            text = expiry.strip()
            try:
                expires_at = now + timedelta(seconds=float(text))
            except ValueError:
                try:
                    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
                except ValueError as err:
                    raise AuthError(f"invalid expiry: {expiry}", reason="invalid_response") from err
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=UTC)
                expires_at = parsed.astimezone(UTC)
        else:
            # Google issues one-hour access tokens
            expires_at = now + timedelta(hours=1)
        refresh = payload.get("refresh_token")
        scope = payload.get("scope")
        return cls(
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=str(refresh).strip() if refresh else None,
            scope=str(scope) if scope else None,
        )


class IdentityProvider(Protocol):
    """Issues and revokes access tokens; the interactive consent UI lives elsewhere."""

    async def request_token(self, *, interactive: bool) -> OAuthTokens: ...

    async def revoke(self, token: str) -> None: ...


class GoogleOAuthClient:
    """Google OAuth 2.0 token endpoint client used for silent renewal and revocation."""

    def __init__(
        self,
        client_id: str,
        *,
        client_secret: str | None = None,
        refresh_token: str | None = None,
        token_url: str = DEFAULT_TOKEN_URL,
        revoke_url: str = DEFAULT_REVOKE_URL,
        session: ClientSession | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self._token_url = token_url
        self._revoke_url = revoke_url
        self._session = session
        self._owns_session = session is None
        self._authorization_code: str | None = None
        self._redirect_uri: str | None = None

    async def async_close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    def set_authorization_code(self, code: str, redirect_uri: str) -> None:
        """Hand over the code returned by the consent screen for the next interactive request."""

        self._authorization_code = code
        self._redirect_uri = redirect_uri

    async def request_token(self, *, interactive: bool) -> OAuthTokens:
        if interactive and self._authorization_code:
            code, self._authorization_code = self._authorization_code, None
            payload = {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._redirect_uri or "",
                "client_id": self.client_id,
            }
        elif self.refresh_token:
            payload = {
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
                "client_id": self.client_id,
            }
        else:
            raise AuthError("interactive authorization required", reason="consent_required")
        if self.client_secret:
            payload["client_secret"] = self.client_secret
        tokens = await self._post_token(payload)
        if tokens.refresh_token:
            self.refresh_token = tokens.refresh_token
        return tokens

    async def _post_token(self, payload: dict[str, str]) -> OAuthTokens:
        session = self._get_session()
        try:
            async with session.post(self._token_url, data=payload, timeout=ClientTimeout(total=30)) as resp:
                data = await resp.json(content_type=None)
                if resp.status >= 400:
                    message = None
                    if isinstance(data, Mapping):
                        message = data.get("error_description") or data.get("error")
                    raise AuthError(message or f"token request failed: HTTP {resp.status}", reason="rejected")
        except ClientError as err:
            raise NetworkError(f"token request failed: {err}") from err
        if not isinstance(data, Mapping):
            raise AuthError("token endpoint returned malformed data", reason="invalid_response")
        return OAuthTokens.from_payload(data)

    async def revoke(self, token: str) -> None:
        session = self._get_session()
        try:
            async with session.post(
                self._revoke_url, data={"token": token}, timeout=ClientTimeout(total=30)
            ) as resp:
                if resp.status >= 400:
                    raise AuthError(f"revoke failed: HTTP {resp.status}", reason="revoke_failed")
        except ClientError as err:
            raise NetworkError(f"revoke request failed: {err}") from err


class AuthTokenManager:
    """Own the token state machine and keep the credential fresh.

    Concurrent renewals coalesce onto one in-flight task. A failed renewal
    never raises; :meth:`get_token` returns ``None`` and callers go offline.
    """

    def __init__(
        self,
        store: TokenStore,
        provider: IdentityProvider,
        *,
        refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT,
        check_interval: float = DEFAULT_TOKEN_CHECK_INTERVAL,
        clock: Clock | None = None,
        scopes: str = DRIVE_SCOPE,
    ) -> None:
        self.store = store
        self.provider = provider
        self.refresh_timeout = refresh_timeout
        self.scopes = scopes
        self._clock = clock or utcnow
        self._state = TokenState(last_activity=self._clock())
        self._refresh_task: asyncio.Task[bool] | None = None
        self._proactive_task: asyncio.Task[bool] | None = None
        self._background = PeriodicTask("token-refresh-check", check_interval, self.check_token)
        self._listeners: list[TokenListener] = []
        self.last_refresh_at: datetime | None = None
        self.last_refresh_error: str | None = None
        self._load()

    def _load(self) -> None:
        stored = self.store.load()
        if stored is None:
            return
        self._state = self._state.transition(
            TokenEvent.ACQUIRED,
            access_token=stored.access_token,
            expires_at=stored.expires_at,
            last_activity=stored.last_activity or self._clock(),
        )
        if self.is_token_expired():
            # Kept so get_token() can attempt a silent refresh
            _LOGGER.info("Stored token expired, will attempt silent refresh")
        else:
            _LOGGER.info("Loaded stored token, expires in %d minutes", self._minutes_remaining())

    # ------------------------------------------------------------------
    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def refreshing(self) -> bool:
        return self._state.refreshing

    @property
    def background_running(self) -> bool:
        return self._background.running

    def _minutes_remaining(self, now: datetime | None = None) -> int:
        if self._state.expires_at is None:
            return 0
        now = now or self._clock()
        return round((self._state.expires_at - now).total_seconds() / 60)

    def is_token_expired(self, now: datetime | None = None) -> bool:
        """Return ``True`` when the token is missing or inside the 5-minute safety buffer."""

        if self._state.expires_at is None:
            return True
        now = now or self._clock()
        return now >= self._state.expires_at - timedelta(seconds=TOKEN_EXPIRY_BUFFER_SECONDS)

    def is_authenticated(self, now: datetime | None = None) -> bool:
        return bool(self._state.access_token) and not self.is_token_expired(now)

    def should_refresh_proactively(self, now: datetime | None = None) -> bool:
        if self._state.expires_at is None:
            return False
        now = now or self._clock()
        remaining = (self._state.expires_at - now).total_seconds()
        return 0 < remaining < PROACTIVE_REFRESH_WINDOW_SECONDS

    def recently_active(self, now: datetime | None = None) -> bool:
        if self._state.last_activity is None:
            return False
        now = now or self._clock()
        return (now - self._state.last_activity).total_seconds() < ACTIVITY_WINDOW_SECONDS

    # ------------------------------------------------------------------
    def add_listener(self, listener: TokenListener) -> Callable[[], None]:
        """Register a callback invoked whenever a new token is acquired or refreshed."""

        if listener not in self._listeners:
            self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def _notify(self, tokens: OAuthTokens) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(tokens)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as err:  # pragma: no cover - defensive log
                _LOGGER.debug("Token listener raised error: %s", err, exc_info=True)

    def _persist(self) -> None:
        if self._state.access_token and self._state.expires_at is not None:
            self.store.save(
                self._state.access_token,
                self._state.expires_at,
                self._state.last_activity or self._clock(),
            )

    # ------------------------------------------------------------------
    async def login(self) -> OAuthTokens:
        """Run the interactive acquisition flow; raises :class:`AuthError` on failure."""

        tokens = await self.provider.request_token(interactive=True)
        now = self._clock()
        self._state = self._state.transition(
            TokenEvent.ACQUIRED,
            access_token=tokens.access_token,
            expires_at=tokens.expires_at,
            last_activity=now,
        )
        self._persist()
        _LOGGER.info("Google Drive token acquired, expires in %d minutes", self._minutes_remaining(now))
        self.start_background_refresh()
        await self._notify(tokens)
        return tokens

    async def get_token(self) -> str | None:
        """Return a valid access token, renewing it silently when expired."""

        if not self._state.access_token:
            return None
        # Token use counts as activity for the background check
        self._touch_activity(self._clock())
        if self.is_token_expired():
            _LOGGER.debug("Token expired, attempting silent refresh")
            if not await self.refresh_silently():
                _LOGGER.info("Silent refresh failed, user needs to re-authenticate")
                return None
        return self._state.access_token

    async def refresh_silently(self) -> bool:
        """Renew the token without user interaction.

        Callers arriving while a renewal is in flight await that same attempt.
        """

        task = self._refresh_task
        if task is None or task.done():
            if self._state.phase is not TokenPhase.AUTHENTICATED:
                return False
            self._state = self._state.transition(TokenEvent.REFRESH_STARTED)
            task = asyncio.get_running_loop().create_task(self._run_refresh(), name="token-refresh")
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _run_refresh(self) -> bool:
        try:
            async with asyncio.timeout(self.refresh_timeout):
                tokens = await self.provider.request_token(interactive=False)
        except TimeoutError:
            return self._refresh_failed("silent refresh timed out")
        except Exception as err:
            return self._refresh_failed(str(err) or err.__class__.__name__)
        finally:
            self._refresh_task = None

        if self._state.phase is not TokenPhase.REFRESHING:
            _LOGGER.debug("Discarding refreshed token; state changed to %s", self._state.phase)
            return False
        now = self._clock()
        self._state = self._state.transition(
            TokenEvent.REFRESH_SUCCEEDED,
            access_token=tokens.access_token,
            expires_at=tokens.expires_at,
        )
        self._persist()
        self.last_refresh_at = now
        self.last_refresh_error = None
        _LOGGER.info("Google Drive token refreshed, expires in %d minutes", self._minutes_remaining(now))
        await self._notify(tokens)
        return True

    def _refresh_failed(self, message: str) -> bool:
        self.last_refresh_at = self._clock()
        self.last_refresh_error = message
        if self._state.phase is TokenPhase.REFRESHING:
            self._state = self._state.transition(TokenEvent.REFRESH_FAILED)
        _LOGGER.warning("Silent token refresh failed: %s", message)
        return False

    # ------------------------------------------------------------------
    def record_activity(self, signal: str = "click", *, now: datetime | None = None) -> bool:
        """Note a user interaction; persisted at most once per minute."""

        if signal not in ACTIVITY_SIGNALS:
            return False
        now = now or self._clock()
        if not self._touch_activity(now):
            return False
        if (
            self._state.access_token
            and not self.refreshing
            and self.should_refresh_proactively(now)
        ):
            _LOGGER.debug("User active, refreshing token proactively")
            self._proactive_task = asyncio.get_running_loop().create_task(
                self.refresh_silently(), name="token-proactive-refresh"
            )
        return True

    def _touch_activity(self, now: datetime) -> bool:
        last = self._state.last_activity
        if last is not None and (now - last).total_seconds() <= ACTIVITY_THROTTLE_SECONDS:
            return False
        self._state = replace(self._state, last_activity=now)
        self.store.save_activity(now)
        return True

    async def check_token(self, now: datetime | None = None) -> str:
        """One background tick: refresh for active users, clear for idle expired ones."""

        if not self._state.access_token:
            return "idle"
        now = now or self._clock()
        if self.recently_active(now) and self.should_refresh_proactively(now):
            _LOGGER.debug("Background refresh: user recently active, refreshing token")
            return "refreshed" if await self.refresh_silently() else "refresh_failed"
        if self.is_token_expired(now):
            _LOGGER.info("Background refresh: token expired and user inactive, clearing token")
            self._clear()
            return "cleared"
        return "idle"

    def start_background_refresh(self) -> None:
        self._background.start()

    async def stop_background_refresh(self) -> None:
        await self._background.stop()

    def _clear(self) -> None:
        self._state = self._state.transition(TokenEvent.CLEARED)
        self.store.clear()

    async def logout(self) -> None:
        """Revoke the token, clear it from storage and stop the background timer."""

        token = self._state.access_token
        if token:
            try:
                await self.provider.revoke(token)
            except Exception as err:
                _LOGGER.warning("Token revocation failed: %s", err)
        self._clear()
        await self.stop_background_refresh()

    def status(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or self._clock()
        expires_at = self._state.expires_at
        return {
            "phase": self._state.phase.value,
            "authenticated": self.is_authenticated(now),
            "token_expires_at": expires_at.isoformat() if expires_at else None,
            "token_expires_in_seconds": max((expires_at - now).total_seconds(), 0.0) if expires_at else None,
            "last_activity": self._state.last_activity.isoformat() if self._state.last_activity else None,
            "last_refresh_at": self.last_refresh_at.isoformat() if self.last_refresh_at else None,
            "last_refresh_error": self.last_refresh_error,
            "background_refresh": self.background_running,
        }


__all__ = [
    "AuthTokenManager",
    "GoogleOAuthClient",
    "IdentityProvider",
    "OAuthTokens",
    "utcnow",
]
