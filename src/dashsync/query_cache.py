"""QueryCache - in-memory, tag-indexed response cache.

Provides:
- get()/set(): raw entry access with staleness tracking
- fetch(): cached fetch with request de-duplication per key
- invalidate_tag()/invalidate_key()/invalidate_resource(): mark stale, keep data
- evict(): hard removal
- retain()/release(): reference counting with grace-period eviction
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar, cast

from loguru import logger

from dashsync.config import CacheConfig
from dashsync.duration import parse_duration
from dashsync.tags import any_matches, tag_matches
from dashsync.types import CacheEntry, CacheKey, Duration, EntryStatus, Tag

T = TypeVar("T")

InvalidationListener = Callable[[list[CacheKey]], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # All waiters may have gone away; keep asyncio from warning about it.
    if not task.cancelled():
        task.exception()


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    deduplicated: int = 0
    discarded_writes: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "deduplicated": self.deduplicated,
            "discarded_writes": self.discarded_writes,
            "evictions": self.evictions,
            "size": self.size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class QueryCache:
    """
    Tag-indexed cache with at most one in-flight fetch per key.

    Usage:
        cache = QueryCache(CacheConfig(stale_time="5m"))
        key = make_key("reports", {"status": "draft"})

        data = await cache.fetch(key, load_reports, tags=["reports"])
        cache.invalidate_tag("reports")   # next fetch() goes to the network
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], int] | None = None,
        debug: bool = False,
    ) -> None:
        self._config = config or CacheConfig()
        self._default_stale_ms = parse_duration(self._config.stale_time)
        self._gc_ms = parse_duration(self._config.gc_time)
        self._clock = clock or _now_ms
        self._debug = debug

        self._entries: dict[CacheKey, CacheEntry[Any]] = {}
        self._tag_index: dict[Tag, set[CacheKey]] = {}
        self._in_flight: dict[CacheKey, asyncio.Task[Any]] = {}
        self._in_flight_tags: dict[CacheKey, tuple[Tag, ...]] = {}
        # Keys invalidated or evicted while their fetch was in flight
        self._invalidated_in_flight: set[CacheKey] = set()
        self._evicted_in_flight: set[CacheKey] = set()

        self._refcounts: dict[CacheKey, int] = {}
        self._gc_handles: dict[CacheKey, asyncio.TimerHandle] = {}
        self._gc_deadlines: dict[CacheKey, int] = {}

        self._listeners: list[InvalidationListener] = []
        self._stats = CacheStats()

    # -------------------------------------------------------------------------
    # Reads and writes
    # -------------------------------------------------------------------------

    def get(self, key: CacheKey) -> CacheEntry[Any] | None:
        """Get the entry for ``key``; a fresh entry past ``stale_at`` turns stale."""
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None
        self._refresh_status(entry)
        if entry.status is EntryStatus.FRESH:
            self._stats.hits += 1
        else:
            self._stats.stale_hits += 1
        return entry

    def get_data(self, key: CacheKey) -> Any | None:
        entry = self.get(key)
        return entry.data if entry is not None else None

    def set(
        self,
        key: CacheKey,
        data: Any,
        tags: Iterable[Tag] = (),
        *,
        stale_time: Duration | None = None,
        fetched_at: int | None = None,
    ) -> bool:
        """
        Create or update the entry for ``key``.

        ``fetched_at`` is when the request producing ``data`` was issued
        (defaults to now). A write older than the current entry is discarded
        so a slow response cannot clobber a newer one.

        Returns:
            True if the write was applied
        """
        now = self._clock()
        fetched_at = now if fetched_at is None else fetched_at
        existing = self._entries.get(key)

        if existing is not None and fetched_at < existing.fetched_at:
            self._stats.discarded_writes += 1
            self._log(f"DISCARD out-of-order write: {key}")
            return False

        stale_ms = (
            parse_duration(stale_time) if stale_time is not None else self._default_stale_ms
        )
        tag_set = frozenset(tags)

        if existing is None:
            entry: CacheEntry[Any] = CacheEntry(
                key=key,
                data=data,
                fetched_at=fetched_at,
                stale_at=fetched_at + stale_ms,
                tags=tag_set,
            )
            self._entries[key] = entry
        else:
            self._unindex(existing)
            entry = existing
            entry.data = data
            entry.fetched_at = fetched_at
            entry.stale_at = fetched_at + stale_ms
            entry.status = EntryStatus.FRESH
            entry.tags = tag_set
            entry.error = None

        self._index(entry)
        self._refresh_status(entry)
        if not self._refcounts.get(key):
            self._schedule_gc(key)
        self._log(f"SET: {key} tags={sorted(tag_set)} (stale in {stale_ms}ms)")
        return True

    async def fetch(
        self,
        key: CacheKey,
        fn: Callable[[], Awaitable[T]],
        *,
        tags: Iterable[Tag] = (),
        stale_time: Duration | None = None,
        force: bool = False,
    ) -> T:
        """
        Return fresh cached data, or run ``fn`` and cache its result.

        Concurrent callers for the same key share one call to ``fn``. A
        failure marks an existing entry ERROR (its data stays servable) and
        is raised to every waiter.
        """
        entry = self.get(key)
        if entry is not None and not force and entry.status is EntryStatus.FRESH:
            return cast(T, entry.data)
        return await self._coalesce(key, fn, tuple(tags), stale_time, force=force)

    def is_fetching(self, key: CacheKey) -> bool:
        return key in self._in_flight

    # -------------------------------------------------------------------------
    # Invalidation and eviction
    # -------------------------------------------------------------------------

    def invalidate_tag(self, tag: Tag) -> list[CacheKey]:
        """Mark every entry carrying ``tag`` (or one of its entity tags) stale."""
        keys = {
            key
            for carried, carried_keys in self._tag_index.items()
            if tag_matches(tag, carried)
            for key in carried_keys
        }
        # first fetches have no entry in the index yet
        keys.update(
            key for key, carried in self._in_flight_tags.items() if any_matches(tag, carried)
        )
        return self._mark_stale(sorted(keys), reason=f"tag {tag!r}")

    def invalidate_tags(self, tags: Iterable[Tag]) -> list[CacheKey]:
        affected: dict[CacheKey, None] = {}
        for tag in tags:
            for key in self.invalidate_tag(tag):
                affected[key] = None
        return list(affected)

    def invalidate_key(self, key: CacheKey) -> list[CacheKey]:
        if key not in self._entries and key not in self._in_flight:
            return []
        return self._mark_stale([key], reason="key")

    def invalidate_resource(self, prefix: tuple[str, ...] | str) -> list[CacheKey]:
        """Mark every entry under a resource prefix stale."""
        keys = [key for key in self._entries if key.matches(prefix)]
        return self._mark_stale(keys, reason=f"resource {prefix!r}")

    def evict(self, key: CacheKey) -> bool:
        """Remove ``key`` outright. An in-flight result for it will not be stored."""
        if key in self._in_flight:
            self._evicted_in_flight.add(key)
        self._cancel_gc(key)
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._unindex(entry)
        self._stats.evictions += 1
        self._log(f"EVICT: {key}")
        return True

    def clear(self) -> None:
        """Drop every entry. In-flight fetches finish but are not stored."""
        count = len(self._entries)
        for key in list(self._gc_handles):
            self._cancel_gc(key)
        self._evicted_in_flight.update(self._in_flight)
        self._entries.clear()
        self._tag_index.clear()
        self._log(f"CLEAR: {count} entries removed")

    def on_invalidate(self, listener: InvalidationListener) -> Callable[[], None]:
        """Call ``listener`` with the affected keys after each invalidation."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # -------------------------------------------------------------------------
    # Reference counting and garbage collection
    # -------------------------------------------------------------------------

    def retain(self, key: CacheKey) -> int:
        self._refcounts[key] = self._refcounts.get(key, 0) + 1
        self._cancel_gc(key)
        return self._refcounts[key]

    def release(self, key: CacheKey) -> int:
        count = self._refcounts.get(key, 0) - 1
        if count > 0:
            self._refcounts[key] = count
            return count
        self._refcounts.pop(key, None)
        self._schedule_gc(key)
        return 0

    def refcount(self, key: CacheKey) -> int:
        return self._refcounts.get(key, 0)

    def collect_garbage(self) -> list[CacheKey]:
        """Evict unreferenced entries whose grace period has passed."""
        now = self._clock()
        expired = [
            key
            for key, deadline in self._gc_deadlines.items()
            if deadline <= now and not self._refcounts.get(key) and key not in self._in_flight
        ]
        for key in expired:
            self.evict(key)
        return expired

    def _schedule_gc(self, key: CacheKey) -> None:
        if key not in self._entries:
            return
        self._cancel_gc(key)
        self._gc_deadlines[key] = self._clock() + self._gc_ms
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # collect_garbage() picks it up
        self._gc_handles[key] = loop.call_later(self._gc_ms / 1000, self._gc, key)

    def _cancel_gc(self, key: CacheKey) -> None:
        self._gc_deadlines.pop(key, None)
        handle = self._gc_handles.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _gc(self, key: CacheKey) -> None:
        self._gc_handles.pop(key, None)
        if self._refcounts.get(key) or key in self._in_flight:
            return
        self._log(f"GC: {key}")
        self.evict(key)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def stats(self) -> CacheStats:
        self._stats.size = len(self._entries)
        return self._stats

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def entries_for_tag(self, tag: Tag) -> list[CacheEntry[Any]]:
        return [
            self._entries[key]
            for carried, keys in self._tag_index.items()
            if tag_matches(tag, carried)
            for key in keys
        ]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def dispose(self) -> None:
        """Cancel timers and in-flight fetches, then drop everything."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # tasks cancelled before their first step never reach their cleanup
        self._in_flight.clear()
        self._in_flight_tags.clear()
        self.clear()
        self._refcounts.clear()
        self._invalidated_in_flight.clear()
        self._evicted_in_flight.clear()
        self._listeners.clear()
        self._log("DISPOSED")

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _coalesce(
        self,
        key: CacheKey,
        fn: Callable[[], Awaitable[T]],
        tags: tuple[Tag, ...],
        stale_time: Duration | None,
        *,
        force: bool = False,
    ) -> T:
        """Share one fetch task per key between concurrent callers.

        A forced fetch does not join a fetch that was invalidated after it
        was issued; it waits for it and then issues its own.
        """
        while True:
            task = self._in_flight.get(key)
            if task is None:
                task = asyncio.create_task(self._run_fetch(key, fn, tags, stale_time))
                task.add_done_callback(_consume_exception)
                self._in_flight[key] = task
                self._in_flight_tags[key] = tags
                break
            if force and key in self._invalidated_in_flight:
                self._log(f"WAIT for invalidated fetch: {key}")
                await asyncio.wait({task})
                if self._in_flight.get(key) is task:
                    # cancelled before its first step, so it never cleaned up
                    self._in_flight.pop(key)
                    self._in_flight_tags.pop(key, None)
                    self._invalidated_in_flight.discard(key)
                continue
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: {key}")
            break
        # shield: one caller going away must not cancel the others' fetch
        return cast(T, await asyncio.shield(task))

    async def _run_fetch(
        self,
        key: CacheKey,
        fn: Callable[[], Awaitable[Any]],
        tags: tuple[Tag, ...],
        stale_time: Duration | None,
    ) -> Any:
        issued_at = self._clock()
        entry = self._entries.get(key)
        if entry is not None:
            entry.status = EntryStatus.FETCHING
        self._log(f"FETCH: {key}")

        try:
            data = await fn()
        except Exception as e:
            current = self._entries.get(key)
            if current is not None:
                current.status = EntryStatus.ERROR
                current.error = e
            self._log(f"ERROR: {key}: {e}")
            raise
        except BaseException:
            current = self._entries.get(key)
            if current is not None and current.status is EntryStatus.FETCHING:
                current.status = EntryStatus.STALE
            raise
        finally:
            self._in_flight.pop(key, None)
            self._in_flight_tags.pop(key, None)
            invalidated = key in self._invalidated_in_flight
            evicted = key in self._evicted_in_flight
            self._invalidated_in_flight.discard(key)
            self._evicted_in_flight.discard(key)

        if evicted:
            self._log(f"DROP result for evicted key: {key}")
            return data

        if not self.set(key, data, tags, stale_time=stale_time, fetched_at=issued_at):
            return self._entries[key].data

        if invalidated:
            self._entries[key].status = EntryStatus.STALE
        return data

    def _mark_stale(self, keys: list[CacheKey], *, reason: str) -> list[CacheKey]:
        for key in keys:
            entry = self._entries.get(key)
            if entry is not None:
                entry.status = EntryStatus.STALE
            if key in self._in_flight:
                self._invalidated_in_flight.add(key)
        if keys:
            self._log(f"INVALIDATE {reason}: {len(keys)} entries")
            for listener in list(self._listeners):
                try:
                    listener(list(keys))
                except Exception:
                    logger.exception(f"Invalidation listener failed for {reason}")
        return keys

    def _refresh_status(self, entry: CacheEntry[Any]) -> None:
        if entry.status is EntryStatus.FRESH and self._clock() >= entry.stale_at:
            entry.status = EntryStatus.STALE

    def _index(self, entry: CacheEntry[Any]) -> None:
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(entry.key)

    def _unindex(self, entry: CacheEntry[Any]) -> None:
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(entry.key)
            if not keys:
                del self._tag_index[tag]

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[QueryCache] {message}")


__all__ = ["CacheStats", "QueryCache"]
