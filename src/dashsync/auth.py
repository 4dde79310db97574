"""Auth session value object and the provider the retry layer talks to.

The session is owned by the auth subsystem. The request pipeline only reads
``provider.session`` and asks the provider to ``refresh()`` or ``clear()``;
it never builds or swaps sessions itself.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from loguru import logger

from dashsync.errors import SessionExpiredError

if TYPE_CHECKING:
    from dashsync.executor import RequestExecutor

REFRESH_PATH = "/auth/refresh"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class AuthSession:
    """Bearer credentials. Replaced wholesale on refresh."""

    access_token: str
    refresh_token: str | None
    expires_at: int  # Unix timestamp ms

    def expired(self, now: int | None = None) -> bool:
        return (now if now is not None else _now_ms()) >= self.expires_at

    @classmethod
    def from_refresh_payload(
        cls, payload: dict[str, Any], now: int | None = None
    ) -> AuthSession:
        """Parse a ``{accessToken, refreshToken, expiresIn}`` body.

        ``expiresIn`` is in seconds.
        """
        try:
            access_token = payload["accessToken"]
            expires_in = int(payload["expiresIn"])
        except (KeyError, TypeError, ValueError) as e:
            raise SessionExpiredError("Malformed token refresh response") from e
        issued = now if now is not None else _now_ms()
        return cls(
            access_token=access_token,
            refresh_token=payload.get("refreshToken"),
            expires_at=issued + expires_in * 1000,
        )


@runtime_checkable
class AuthProvider(Protocol):
    """What the request pipeline needs from the auth subsystem."""

    @property
    def session(self) -> AuthSession | None:
        """The current session, or None when logged out."""
        ...

    async def refresh(self) -> AuthSession:
        """Exchange the refresh token for a new session."""
        ...

    def clear(self) -> None:
        """Drop the session (forced logout)."""
        ...

    def on_cleared(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Call ``callback`` after each clear. Returns a function that removes it."""
        ...


RefreshFn = Callable[[AuthSession], Awaitable[AuthSession]]


class SessionStore:
    """
    In-memory AuthProvider.

    Usage:
        store = SessionStore(refresh_fn=my_refresh)
        store.login(AuthSession("access", "refresh", expires_at))
        store.on_cleared(lambda: redirect_to_login())
    """

    def __init__(
        self,
        session: AuthSession | None = None,
        *,
        refresh_fn: RefreshFn | None = None,
    ) -> None:
        self._session = session
        self._refresh_fn = refresh_fn
        self._cleared_listeners: list[Callable[[], None]] = []

    @property
    def session(self) -> AuthSession | None:
        return self._session

    def login(self, session: AuthSession) -> None:
        self._session = session

    def set_refresh_fn(self, refresh_fn: RefreshFn) -> None:
        self._refresh_fn = refresh_fn

    def on_cleared(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a logout listener. Returns a function that removes it."""
        self._cleared_listeners.append(callback)

        def remove() -> None:
            if callback in self._cleared_listeners:
                self._cleared_listeners.remove(callback)

        return remove

    async def refresh(self) -> AuthSession:
        current = self._session
        if current is None or not current.refresh_token:
            raise SessionExpiredError("No refresh token available")
        if self._refresh_fn is None:
            raise SessionExpiredError("Token refresh is not configured")
        new_session = await self._refresh_fn(current)
        self._session = new_session
        logger.info("Auth session refreshed")
        return new_session

    def clear(self) -> None:
        if self._session is None:
            return
        self._session = None
        logger.info("Auth session cleared")
        for callback in list(self._cleared_listeners):
            callback()


def refresh_via_http(executor: RequestExecutor) -> RefreshFn:
    """Build a refresh callback that calls ``POST /auth/refresh``."""
    from dashsync.executor import ApiRequest

    async def refresh(current: AuthSession) -> AuthSession:
        response = await executor.execute(
            ApiRequest(
                "POST",
                REFRESH_PATH,
                json={"refreshToken": current.refresh_token},
                skip_auth=True,
                skip_error_notification=True,
            )
        )
        payload = response.data
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if not isinstance(payload, dict):
            raise SessionExpiredError("Malformed token refresh response")
        return AuthSession.from_refresh_payload(payload)

    return refresh


__all__ = [
    "REFRESH_PATH",
    "AuthProvider",
    "AuthSession",
    "RefreshFn",
    "SessionStore",
    "refresh_via_http",
]
