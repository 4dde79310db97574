"""
PollingScheduler - keeps subscribed queries fresh.

Subscribers to the same key share one group: one timer (the shortest
interval any of them asked for) and the cache's single in-flight fetch.
Timers only run while the scheduler is visible and at least one subscriber's
view is active.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from dashsync.config import PollingConfig
from dashsync.duration import parse_duration
from dashsync.query_cache import QueryCache
from dashsync.types import CacheKey, EntryStatus, QueryDescriptor

DataCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]

_ids = itertools.count(1)


class Subscription:
    """Handle returned by ``subscribe``. Call ``unsubscribe()`` to dispose it."""

    __slots__ = ("_closed", "_scheduler", "id", "key", "on_data", "on_error", "poll_ms", "view")

    def __init__(
        self,
        scheduler: PollingScheduler,
        key: CacheKey,
        on_data: DataCallback,
        on_error: ErrorCallback | None,
        view: str | None,
        poll_ms: int | None,
    ) -> None:
        self.id = next(_ids)
        self.key = key
        self.on_data = on_data
        self.on_error = on_error
        self.view = view
        self.poll_ms = poll_ms
        self._scheduler = scheduler
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def unsubscribe(self) -> None:
        """Stop receiving data. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._scheduler._remove(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.unsubscribe()

    def __repr__(self) -> str:
        return f"Subscription({self.id}, {self.key}, view={self.view!r})"


@dataclass
class _PollGroup:
    key: CacheKey
    descriptor: QueryDescriptor[Any]
    subscribers: dict[int, Subscription] = field(default_factory=dict)
    interval_ms: int | None = None
    timer: asyncio.Task[None] | None = None
    refresh: asyncio.Task[None] | None = None
    rerun: bool = False

    @property
    def stale_ms(self) -> int | None:
        stale = (
            parse_duration(self.descriptor.stale_time)
            if self.descriptor.stale_time is not None
            else None
        )
        if self.interval_ms is None:
            return stale
        # polled data goes stale once its interval has elapsed
        return self.interval_ms if stale is None else min(stale, self.interval_ms)


class PollingScheduler:
    """
    Owns refresh timers for subscribed queries.

    Usage:
        scheduler = PollingScheduler(cache)
        sub = scheduler.subscribe(descriptor, on_data=render, view="analytics")
        scheduler.pause_view("analytics")   # tab hidden
        scheduler.resume_view("analytics")  # refetches if stale
        sub.unsubscribe()
    """

    def __init__(
        self,
        cache: QueryCache,
        config: PollingConfig | None = None,
        *,
        debug: bool = False,
    ) -> None:
        self._cache = cache
        self._config = config or PollingConfig()
        self._debug = debug
        self._groups: dict[CacheKey, _PollGroup] = {}
        self._paused_views: set[str] = set()
        self._visible = True
        self._remove_listener = cache.on_invalidate(self._on_invalidate)

    @property
    def default_interval_ms(self) -> int:
        return parse_duration(self._config.default_interval)

    def subscribe(
        self,
        descriptor: QueryDescriptor[Any],
        on_data: DataCallback,
        *,
        on_error: ErrorCallback | None = None,
        view: str | None = None,
    ) -> Subscription:
        """
        Subscribe to ``descriptor``'s data.

        Cached data is delivered right away; missing or stale data is
        fetched. Must be called from a running event loop.
        """
        key = descriptor.key
        poll_ms = (
            parse_duration(descriptor.poll_interval)
            if descriptor.poll_interval is not None
            else None
        )
        if poll_ms is not None and poll_ms <= 0:
            raise ValueError("poll_interval must be positive")

        group = self._groups.get(key)
        if group is None:
            group = _PollGroup(key=key, descriptor=descriptor)
            self._groups[key] = group
            self._cache.retain(key)

        subscription = Subscription(self, key, on_data, on_error, view, poll_ms)
        group.subscribers[subscription.id] = subscription
        interval = self._group_interval(group)
        restart = interval != group.interval_ms
        group.interval_ms = interval
        self._log(f"SUBSCRIBE: {subscription}")

        entry = self._cache.get(key)
        if entry is not None and entry.status is not EntryStatus.ERROR:
            self._deliver_one(subscription, entry.data)
        if entry is None or entry.status is not EntryStatus.FRESH:
            self._trigger(group)

        self._sync_timer(group, restart=restart)
        return subscription

    def pause_view(self, view: str) -> None:
        """Stop timers for groups whose only active subscribers are in ``view``."""
        self._paused_views.add(view)
        self._sync_all()

    def resume_view(self, view: str) -> None:
        self._paused_views.discard(view)
        self._sync_all(refresh_stale=True)

    def set_visible(self, visible: bool) -> None:
        """Document-level visibility: hidden pauses every timer."""
        if visible == self._visible:
            return
        self._visible = visible
        self._log("VISIBLE" if visible else "HIDDEN")
        self._sync_all(refresh_stale=visible)

    def is_polling(self, key: CacheKey) -> bool:
        group = self._groups.get(key)
        return group is not None and group.timer is not None and not group.timer.done()

    def subscriber_count(self, key: CacheKey) -> int:
        group = self._groups.get(key)
        return len(group.subscribers) if group is not None else 0

    def refetch(self, key: CacheKey) -> None:
        """Force a refetch for every subscriber of ``key``."""
        group = self._groups.get(key)
        if group is not None:
            self._trigger(group, force=True)

    async def dispose(self) -> None:
        """Cancel every timer and drop all subscriptions."""
        self._remove_listener()
        tasks: list[asyncio.Task[None]] = []
        for group in self._groups.values():
            for subscription in group.subscribers.values():
                subscription._closed = True
            for task in (group.timer, group.refresh):
                if task is not None and not task.done():
                    task.cancel()
                    tasks.append(task)
            self._cache.release(group.key)
        self._groups.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._log("DISPOSED")

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _remove(self, subscription: Subscription) -> None:
        group = self._groups.get(subscription.key)
        if group is None or group.subscribers.pop(subscription.id, None) is None:
            return
        self._log(f"UNSUBSCRIBE: {subscription}")

        if group.subscribers:
            interval = self._group_interval(group)
            restart = interval != group.interval_ms
            group.interval_ms = interval
            self._sync_timer(group, restart=restart)
            return

        # Last one out: stop the timer now; an in-flight fetch may finish
        # but nobody receives it.
        self._stop_timer(group)
        del self._groups[group.key]
        self._cache.release(group.key)

    def _group_interval(self, group: _PollGroup) -> int | None:
        intervals = [s.poll_ms for s in group.subscribers.values() if s.poll_ms is not None]
        return min(intervals) if intervals else None

    def _is_active(self, group: _PollGroup) -> bool:
        if not self._visible:
            return False
        return any(
            s.view is None or s.view not in self._paused_views
            for s in group.subscribers.values()
        )

    def _sync_all(self, *, refresh_stale: bool = False) -> None:
        for group in list(self._groups.values()):
            was_polling = group.timer is not None
            self._sync_timer(group)
            if refresh_stale and not was_polling and self._is_active(group):
                entry = self._cache.get(group.key)
                if entry is None or entry.status is not EntryStatus.FRESH:
                    self._trigger(group)

    def _sync_timer(self, group: _PollGroup, *, restart: bool = False) -> None:
        should_run = group.interval_ms is not None and self._is_active(group)
        if not should_run:
            self._stop_timer(group)
            return
        if group.timer is not None and not restart:
            return
        self._stop_timer(group)
        group.timer = asyncio.create_task(self._poll_loop(group))
        self._log(f"TIMER START: {group.key} every {group.interval_ms}ms")

    def _stop_timer(self, group: _PollGroup) -> None:
        if group.timer is None:
            return
        group.timer.cancel()
        group.timer = None
        self._log(f"TIMER STOP: {group.key}")

    async def _poll_loop(self, group: _PollGroup) -> None:
        # the first interval starts once the initial fetch is done
        if group.refresh is not None and not group.refresh.done():
            await asyncio.shield(group.refresh)
        while group.interval_ms is not None:
            await asyncio.sleep(group.interval_ms / 1000)
            if self._groups.get(group.key) is not group:
                return
            if group.refresh is not None and not group.refresh.done():
                await asyncio.shield(group.refresh)
                continue
            entry = self._cache.get(group.key)
            if entry is not None and entry.status is EntryStatus.FRESH:
                self._log(f"TICK skipped, still fresh: {group.key}")
                continue
            self._trigger(group, force=True)
            if group.refresh is not None:
                await asyncio.shield(group.refresh)

    def _trigger(self, group: _PollGroup, *, force: bool = False) -> None:
        if group.refresh is not None and not group.refresh.done():
            group.rerun = group.rerun or force
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no running loop: the next tick or subscribe picks it up
        group.refresh = loop.create_task(self._refresh(group, force))

    async def _refresh(self, group: _PollGroup, force: bool) -> None:
        descriptor = group.descriptor
        while True:
            group.rerun = False
            try:
                data = await self._cache.fetch(
                    group.key,
                    descriptor.fetch,
                    tags=descriptor.tags,
                    stale_time=group.stale_ms,
                    force=force,
                )
            except Exception as e:
                self._deliver_error(group, e)
            else:
                self._deliver(group, data)
            if not group.rerun or self._groups.get(group.key) is not group:
                return
            force = True

    def _on_invalidate(self, keys: list[CacheKey]) -> None:
        for key in keys:
            group = self._groups.get(key)
            if group is not None and self._is_active(group):
                self._trigger(group, force=True)

    def _deliver(self, group: _PollGroup, data: Any) -> None:
        if self._groups.get(group.key) is not group:
            self._log(f"DISCARD result, no subscribers: {group.key}")
            return
        for subscription in list(group.subscribers.values()):
            self._deliver_one(subscription, data)

    def _deliver_one(self, subscription: Subscription, data: Any) -> None:
        if subscription.closed:
            return
        try:
            subscription.on_data(data)
        except Exception:
            logger.exception(f"on_data callback failed for {subscription}")

    def _deliver_error(self, group: _PollGroup, error: Exception) -> None:
        if self._groups.get(group.key) is not group:
            return
        handled = False
        for subscription in list(group.subscribers.values()):
            if subscription.closed or subscription.on_error is None:
                continue
            handled = True
            try:
                subscription.on_error(error)
            except Exception:
                logger.exception(f"on_error callback failed for {subscription}")
        if not handled:
            logger.warning(f"Refresh failed for {group.key}: {error}")

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[PollingScheduler] {message}")


__all__ = ["PollingScheduler", "Subscription"]
