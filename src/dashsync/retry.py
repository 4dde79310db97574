"""
RetryCoordinator - exponential backoff plus single-flight token refresh.

State machine per request:
- Attempt(n) -> success -> Done
- Attempt(n) -> retryable failure, n + 1 < max_attempts -> Backoff(n) -> Attempt(n + 1)
- Attempt(n) -> non-retryable failure or attempts exhausted -> Failed
- Attempt(n) -> 401 -> RefreshGate -> Attempt(n) with the new token
- expired session -> RefreshGate before the first send
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import NoReturn

from loguru import logger

from dashsync.auth import REFRESH_PATH, AuthProvider, AuthSession
from dashsync.config import RetryPolicy
from dashsync.errors import HttpError, SessionExpiredError, SyncError, ValidationError
from dashsync.executor import ApiRequest, ApiResponse, RequestExecutor
from dashsync.notifications import Notification, NotificationBridge

Sleep = Callable[[float], Awaitable[None]]


def _consume_exception(future: asyncio.Future[AuthSession]) -> None:
    # Mark the exception retrieved when nobody else was waiting.
    if not future.cancelled():
        future.exception()


class RefreshGate:
    """
    Allows exactly one token refresh in flight.

    Every caller that arrives while a refresh is running awaits that same
    refresh. A failed refresh clears the session, notifies once, and fails
    every waiter with SessionExpiredError.
    """

    def __init__(
        self,
        auth: AuthProvider,
        on_expired: Callable[[SessionExpiredError], None] | None = None,
    ):
        self._auth = auth
        self._on_expired = on_expired
        self._in_flight: asyncio.Future[AuthSession] | None = None
        self.refresh_count = 0

    @property
    def refreshing(self) -> bool:
        return self._in_flight is not None

    async def refresh(self) -> AuthSession:
        if self._in_flight is not None:
            return await asyncio.shield(self._in_flight)

        future: asyncio.Future[AuthSession] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        self._in_flight = future
        self.refresh_count += 1
        logger.info("Refreshing auth session")

        try:
            session = await self._auth.refresh()
        except Exception as e:
            self._auth.clear()
            error = (
                e if isinstance(e, SessionExpiredError) else SessionExpiredError()
            )
            logger.warning(f"Token refresh failed, session cleared: {e}")
            future.set_exception(error)
            if self._on_expired is not None:
                self._on_expired(error)
            if error is e:
                raise
            raise error from e
        except BaseException:
            future.cancel()
            raise
        else:
            future.set_result(session)
            return session
        finally:
            self._in_flight = None


class RetryCoordinator:
    """
    Wraps a RequestExecutor with retries, token refresh and notifications.

    Usage:
        coordinator = RetryCoordinator(executor, auth=store, policy=RetryPolicy())
        response = await coordinator.run(ApiRequest("GET", "/reports"))
    """

    def __init__(
        self,
        executor: RequestExecutor,
        *,
        auth: AuthProvider | None = None,
        policy: RetryPolicy | None = None,
        notifications: NotificationBridge | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._executor = executor
        self._auth = auth
        self._policy = policy or RetryPolicy()
        self._notifications = notifications
        self._sleep = sleep
        self._gate = (
            RefreshGate(auth, on_expired=self._notify_session_expired)
            if auth is not None
            else None
        )

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def gate(self) -> RefreshGate | None:
        return self._gate

    def _current_token(self) -> str | None:
        session = self._auth.session if self._auth is not None else None
        return session.access_token if session is not None else None

    def _session_expired(self) -> bool:
        session = self._auth.session if self._auth is not None else None
        return session is not None and session.expired()

    async def run(self, request: ApiRequest) -> ApiResponse:
        """
        Execute ``request`` until it succeeds or fails terminally.

        Raises:
            SessionExpiredError: refresh failed, or the session is gone
            SyncError: the last classified error once retries are exhausted,
                or the first non-retryable one
        """
        needs_auth = self._gate is not None and not request.skip_auth
        attempt = 0
        auth_refreshes = 0

        while True:
            sent_token = self._current_token()
            if needs_auth and sent_token is None:
                raise SessionExpiredError(path=request.path)
            if (
                needs_auth
                and auth_refreshes < self._policy.max_auth_refreshes
                and self._session_expired()
            ):
                auth_refreshes += 1
                logger.debug(f"Session expired before {request.path}, refreshing first")
                assert self._gate is not None
                await self._gate.refresh()
                continue

            try:
                return await self._executor.execute(request)

            except HttpError as e:
                if e.status == 401 and needs_auth:
                    if auth_refreshes >= self._policy.max_auth_refreshes:
                        self._expire(request, e)
                    auth_refreshes += 1
                    if self._current_token() != sent_token:
                        logger.debug(f"Token changed while {request.path} was in flight, retrying")
                        continue
                    assert self._gate is not None
                    await self._gate.refresh()
                    continue

                if await self._backoff(request, e, attempt):
                    attempt += 1
                    continue
                self._notify(request, e)
                raise

            except SyncError as e:
                if await self._backoff(request, e, attempt):
                    attempt += 1
                    continue
                self._notify(request, e)
                raise

    async def _backoff(self, request: ApiRequest, error: SyncError, attempt: int) -> bool:
        """Sleep before the next attempt. False when no retry is allowed."""
        if not (error.retryable and request.retryable):
            return False
        if attempt + 1 >= self._policy.max_attempts:
            logger.warning(
                f"{request.method} {request.path} failed after {attempt + 1} attempts: {error}"
            )
            return False
        delay = self._policy.delay_for(attempt)
        logger.warning(
            f"{request.method} {request.path} failed ({error.code}), "
            f"retry {attempt + 1}/{self._policy.max_attempts - 1} in {delay:.2f}s"
        )
        await self._sleep(delay)
        return True

    def _expire(self, request: ApiRequest, cause: HttpError) -> NoReturn:
        assert self._auth is not None
        logger.warning(
            f"{request.method} {request.path} still unauthorized after refresh, ending session"
        )
        self._auth.clear()
        error = SessionExpiredError(request_id=cause.request_id, path=request.path)
        self._notify_session_expired(error)
        raise error from cause

    def _notify(self, request: ApiRequest, error: SyncError) -> None:
        if self._notifications is None or request.skip_error_notification:
            return
        if isinstance(error, ValidationError):
            return
        if request.path.rstrip("/").endswith(REFRESH_PATH):
            return
        self._notifications.notify(Notification.from_error(error))

    def _notify_session_expired(self, error: SessionExpiredError) -> None:
        if self._notifications is not None:
            self._notifications.notify(Notification.from_error(error))


__all__ = ["RefreshGate", "RetryCoordinator", "Sleep"]
