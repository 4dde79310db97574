"""Shared pytest fixtures."""

from collections.abc import Awaitable, Callable

import httpx
import pytest

from dashsync import (
    AuthSession,
    ClientConfig,
    CollectingNotificationBridge,
    QueryCache,
    RecordingHooks,
    RetryPolicy,
    SessionStore,
)

BASE_URL = "https://api.test.dev/api"


@pytest.fixture
def config() -> ClientConfig:
    """Client config pointed at the mocked API, retrying without real delays."""
    return ClientConfig(
        base_url=BASE_URL,
        tenant_id="acme",
        retry=RetryPolicy(max_attempts=3, base_delay="1s", cap="30s"),
    )


@pytest.fixture
def session() -> AuthSession:
    return AuthSession("access-1", "refresh-1", expires_at=2_000_000_000_000)


@pytest.fixture
def store(session: AuthSession) -> SessionStore:
    """A logged-in SessionStore whose refresh hands out access-2, access-3..."""
    counter = 1

    async def refresh(current: AuthSession) -> AuthSession:
        nonlocal counter
        counter += 1
        return AuthSession(f"access-{counter}", current.refresh_token, current.expires_at)

    return SessionStore(session, refresh_fn=refresh)


@pytest.fixture
def notifications() -> CollectingNotificationBridge:
    return CollectingNotificationBridge()


@pytest.fixture
def hooks() -> RecordingHooks:
    return RecordingHooks()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the retry layer, in seconds."""
    return []


@pytest.fixture
def sleep(sleeps: list[float]) -> Callable[[float], Awaitable[None]]:
    """A sleep that records the delay and returns immediately."""

    async def record(delay: float) -> None:
        sleeps.append(delay)

    return record


@pytest.fixture
async def http_client():
    """An httpx client the tests own; respx intercepts its transport."""
    async with httpx.AsyncClient() as client:
        yield client


@pytest.fixture
def cache() -> QueryCache:
    """Create a fresh QueryCache for each test."""
    return QueryCache()
