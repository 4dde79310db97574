"""SyncContext - explicitly constructed wiring of the data-sync layer."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import replace
from functools import wraps
from typing import Any, ParamSpec, TypeVar

import httpx
from loguru import logger

from dashsync.auth import AuthProvider
from dashsync.config import ClientConfig
from dashsync.executor import ApiRequest, ApiResponse, RequestExecutor
from dashsync.hooks import RequestHooks
from dashsync.keys import make_key
from dashsync.notifications import LogNotificationBridge, NotificationBridge
from dashsync.polling import DataCallback, ErrorCallback, PollingScheduler, Subscription
from dashsync.query_cache import QueryCache
from dashsync.retry import RetryCoordinator, Sleep
from dashsync.types import CacheKey, Duration, MutationResult, QueryDescriptor, Tag

P = ParamSpec("P")
R = TypeVar("R")


def _path_for(resource: str | tuple[str, ...]) -> str:
    parts = resource.split(".") if isinstance(resource, str) else list(resource)
    return "/" + "/".join(parts)


class SyncContext:
    """
    Owns one executor, retry coordinator, cache and scheduler.

    Usage:
        async with SyncContext(load_config(), auth=SessionStore()) as ctx:
            reports = await ctx.query("reports", {"status": "draft"}, tags=["reports"])
            await ctx.mutate(ApiRequest("DELETE", "/reports/42"), invalidates=["reports"])
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        auth: AuthProvider | None = None,
        notifications: NotificationBridge | None = None,
        http_client: httpx.AsyncClient | None = None,
        hooks: list[RequestHooks] | None = None,
        sleep: Sleep | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._auth = auth
        self._notifications = notifications or LogNotificationBridge()
        self._http_client = http_client
        self._hooks = hooks
        self._sleep = sleep
        self._clock = clock

        self._executor: RequestExecutor | None = None
        self._retry: RetryCoordinator | None = None
        self._cache: QueryCache | None = None
        self._scheduler: PollingScheduler | None = None
        self._remove_auth_listener: Callable[[], None] | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._executor is not None

    def init(self) -> SyncContext:
        """Build the components. Calling it twice is a no-op."""
        if self.initialized:
            return self
        config = self._config
        self._executor = RequestExecutor(
            config, auth=self._auth, http_client=self._http_client, hooks=self._hooks
        )
        retry_kwargs: dict[str, Any] = {}
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep
        self._retry = RetryCoordinator(
            self._executor,
            auth=self._auth,
            policy=config.retry,
            notifications=self._notifications,
            **retry_kwargs,
        )
        self._cache = QueryCache(config.cache, clock=self._clock, debug=config.debug)
        self._scheduler = PollingScheduler(self._cache, config.polling, debug=config.debug)

        if self._auth is not None:
            self._remove_auth_listener = self._auth.on_cleared(self._on_session_cleared)

        logger.info(f"SyncContext initialized for {config.base_url}")
        return self

    async def dispose(self) -> None:
        """Stop timers, drop cached data and close the HTTP client."""
        if not self.initialized:
            return
        if self._remove_auth_listener is not None:
            self._remove_auth_listener()
            self._remove_auth_listener = None
        await self.scheduler.dispose()
        await self.cache.dispose()
        await self.executor.aclose()
        self._executor = self._retry = self._cache = self._scheduler = None
        logger.info("SyncContext disposed")

    async def __aenter__(self) -> SyncContext:
        return self.init()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.dispose()

    def _require(self, component: R | None) -> R:
        if component is None:
            raise RuntimeError("SyncContext is not initialized; call init() first")
        return component

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def auth(self) -> AuthProvider | None:
        return self._auth

    @property
    def executor(self) -> RequestExecutor:
        return self._require(self._executor)

    @property
    def retry(self) -> RetryCoordinator:
        return self._require(self._retry)

    @property
    def cache(self) -> QueryCache:
        return self._require(self._cache)

    @property
    def scheduler(self) -> PollingScheduler:
        return self._require(self._scheduler)

    def _on_session_cleared(self) -> None:
        if self._cache is not None:
            logger.info("Session cleared, dropping cached data")
            self._cache.clear()

    # -------------------------------------------------------------------------
    # Requests and queries
    # -------------------------------------------------------------------------

    async def request(self, request: ApiRequest) -> ApiResponse:
        """Run one request through the retry pipeline."""
        return await self.retry.run(request)

    def descriptor(
        self,
        resource: str | tuple[str, ...],
        params: Mapping[str, Any] | None = None,
        *,
        path: str | None = None,
        tags: Iterable[Tag] | None = None,
        stale_time: Duration | None = None,
        poll_interval: Duration | None = None,
        poll: bool = False,
        skip_error_notification: bool = False,
    ) -> QueryDescriptor[Any]:
        """
        Describe a cached GET of ``resource``.

        ``path`` defaults to the resource kind as a URL ("reports.scheduled"
        -> "/reports/scheduled"); ``tags`` default to the top-level resource
        kind. ``poll=True`` without an interval polls at the configured
        default.
        """
        key = make_key(resource, params)
        request = ApiRequest(
            "GET",
            path or _path_for(resource),
            params=dict(params) if params else None,
            skip_error_notification=skip_error_notification,
        )

        async def fetch() -> Any:
            response = await self.request(request)
            return response.data

        if poll and poll_interval is None:
            poll_interval = self._config.polling.default_interval

        return QueryDescriptor(
            key=key,
            fetch=fetch,
            stale_time=stale_time,
            poll_interval=poll_interval,
            tags=frozenset(tags if tags is not None else (key.resource[0],)),
        )

    async def query(
        self,
        resource: str | tuple[str, ...],
        params: Mapping[str, Any] | None = None,
        *,
        path: str | None = None,
        tags: Iterable[Tag] | None = None,
        stale_time: Duration | None = None,
        force: bool = False,
    ) -> Any:
        """Cached GET: fresh cache data, or one shared network fetch."""
        descriptor = self.descriptor(
            resource, params, path=path, tags=tags, stale_time=stale_time
        )
        return await self.run_query(descriptor, force=force)

    async def run_query(self, descriptor: QueryDescriptor[R], *, force: bool = False) -> R:
        return await self.cache.fetch(
            descriptor.key,
            descriptor.fetch,
            tags=descriptor.tags,
            stale_time=descriptor.stale_time,
            force=force,
        )

    def subscribe(
        self,
        descriptor: QueryDescriptor[Any],
        on_data: DataCallback,
        *,
        on_error: ErrorCallback | None = None,
        view: str | None = None,
    ) -> Subscription:
        return self.scheduler.subscribe(descriptor, on_data, on_error=on_error, view=view)

    async def mutate(
        self,
        request: ApiRequest,
        *,
        invalidates: Iterable[Tag] = (),
        evicts: Iterable[CacheKey] = (),
    ) -> ApiResponse:
        """
        Run a write, then evict and invalidate what it affects.

        Mutations are never retried with backoff.
        """
        response = await self.request(replace(request, retryable=False))
        for key in evicts:
            self.cache.evict(key)
        self.cache.invalidate_tags(invalidates)
        return response

    def mutation(
        self,
        fn: Callable[P, Awaitable[MutationResult[R]]],
    ) -> Callable[P, Awaitable[R]]:
        """Decorator that runs a mutation, then invalidates its tags."""

        @wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            result = await fn(*args, **kwargs)
            self.cache.invalidate_tags(result.invalidates)
            return result.result

        return wrapper

    def invalidate(self, *tags: Tag) -> list[CacheKey]:
        """Manually invalidate cache entries by tags."""
        return self.cache.invalidate_tags(tags)


__all__ = ["SyncContext"]
