"""Tests for QueryCache: de-duplication, staleness, invalidation and GC."""

import asyncio
from typing import Any

import pytest

from dashsync import (
    CacheConfig,
    EntryStatus,
    HttpError,
    QueryCache,
    make_key,
    parse_duration,
)
from dashsync.types import Duration

KEY = make_key("reports", {"status": "draft"})


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, duration: Duration) -> None:
        self.now += parse_duration(duration)


async def settle() -> None:
    """Let spawned fetch tasks run up to their first await."""
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timed_cache(clock: FakeClock) -> QueryCache:
    """Create a QueryCache driven by the fake clock."""
    return QueryCache(CacheConfig(stale_time="30s", gc_time="10m"), clock=clock)


def blocking_fetch(value: Any = None, error: Exception | None = None):
    """A fetch function that waits for ``release`` and counts its calls."""
    release = asyncio.Event()
    calls = 0

    async def fn() -> Any:
        nonlocal calls
        calls += 1
        await release.wait()
        if error is not None:
            raise error
        return value

    def call_count() -> int:
        return calls

    return fn, release, call_count


class TestFetch:
    """Cached fetch behavior."""

    async def test_miss_then_hit(self, cache: QueryCache) -> None:
        calls = 0

        async def fn() -> dict:
            nonlocal calls
            calls += 1
            return {"items": [1]}

        assert await cache.fetch(KEY, fn) == {"items": [1]}
        assert await cache.fetch(KEY, fn) == {"items": [1]}
        assert calls == 1

    async def test_force_refetches(self, cache: QueryCache) -> None:
        calls = 0

        async def fn() -> int:
            nonlocal calls
            calls += 1
            return calls

        await cache.fetch(KEY, fn)
        assert await cache.fetch(KEY, fn, force=True) == 2

    async def test_concurrent_callers_share_one_fetch(self, cache: QueryCache) -> None:
        fn, release, call_count = blocking_fetch({"n": 1})

        tasks = [asyncio.create_task(cache.fetch(KEY, fn)) for _ in range(10)]
        await settle()
        assert cache.is_fetching(KEY)
        release.set()
        results = await asyncio.gather(*tasks)

        assert call_count() == 1
        assert all(r == {"n": 1} for r in results)
        assert cache.stats().deduplicated == 9
        assert not cache.is_fetching(KEY)

    async def test_different_keys_fetch_separately(self, cache: QueryCache) -> None:
        calls: list[int] = []

        async def fetch_page(page: int) -> int:
            calls.append(page)
            return page

        await asyncio.gather(
            cache.fetch(make_key("reports", {"page": 1}), lambda: fetch_page(1)),
            cache.fetch(make_key("reports", {"page": 2}), lambda: fetch_page(2)),
        )
        assert sorted(calls) == [1, 2]

    async def test_failure_reaches_every_waiter(self, cache: QueryCache) -> None:
        fn, release, call_count = blocking_fetch(error=HttpError(500))

        tasks = [asyncio.create_task(cache.fetch(KEY, fn)) for _ in range(3)]
        await settle()
        release.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert call_count() == 1
        assert all(isinstance(r, HttpError) for r in results)
        assert KEY not in cache

    async def test_failure_keeps_previous_data(self, cache: QueryCache) -> None:
        cache.set(KEY, "old")

        async def fail() -> str:
            raise HttpError(503)

        with pytest.raises(HttpError):
            await cache.fetch(KEY, fail, force=True)

        entry = cache.get(KEY)
        assert entry is not None
        assert entry.status is EntryStatus.ERROR
        assert entry.data == "old"
        assert isinstance(entry.error, HttpError)

    async def test_entry_is_fetching_during_refetch(self, cache: QueryCache) -> None:
        cache.set(KEY, "old")
        fn, release, _ = blocking_fetch("new")

        task = asyncio.create_task(cache.fetch(KEY, fn, force=True))
        await settle()
        entry = cache.get(KEY)
        assert entry is not None
        assert entry.status is EntryStatus.FETCHING
        assert entry.data == "old"

        release.set()
        assert await task == "new"
        assert entry.status is EntryStatus.FRESH

    async def test_caller_cancellation_does_not_cancel_shared_fetch(
        self, cache: QueryCache
    ) -> None:
        fn, release, call_count = blocking_fetch("data")

        first = asyncio.create_task(cache.fetch(KEY, fn))
        second = asyncio.create_task(cache.fetch(KEY, fn))
        await settle()
        first.cancel()
        release.set()

        assert await second == "data"
        assert call_count() == 1
        assert cache.get_data(KEY) == "data"


class TestStaleness:
    """Entries turn stale once their stale time has elapsed."""

    async def test_fresh_then_stale(self, timed_cache: QueryCache, clock: FakeClock) -> None:
        timed_cache.set(KEY, 1)
        assert timed_cache.get(KEY).status is EntryStatus.FRESH

        clock.advance("29s")
        assert timed_cache.get(KEY).status is EntryStatus.FRESH

        clock.advance("1s")
        entry = timed_cache.get(KEY)
        assert entry.status is EntryStatus.STALE
        assert entry.is_stale
        assert entry.data == 1

    async def test_stale_entry_is_refetched(self, timed_cache: QueryCache, clock: FakeClock) -> None:
        calls = 0

        async def fn() -> int:
            nonlocal calls
            calls += 1
            return calls

        await timed_cache.fetch(KEY, fn)
        clock.advance("1m")
        assert await timed_cache.fetch(KEY, fn) == 2

    async def test_per_entry_stale_time(self, timed_cache: QueryCache, clock: FakeClock) -> None:
        timed_cache.set(KEY, 1, stale_time="5s")
        entry = timed_cache.get(KEY)
        assert entry.stale_at == entry.fetched_at + 5000
        clock.advance("5s")
        assert timed_cache.get(KEY).status is EntryStatus.STALE


class TestOutOfOrderWrites:
    """A slower, older response never replaces a newer one."""

    def test_older_write_discarded(self, timed_cache: QueryCache) -> None:
        assert timed_cache.set(KEY, "new", fetched_at=2_000_000)
        assert not timed_cache.set(KEY, "old", fetched_at=1_500_000)

        assert timed_cache.get_data(KEY) == "new"
        assert timed_cache.stats().discarded_writes == 1

    def test_equal_timestamp_applies(self, timed_cache: QueryCache) -> None:
        timed_cache.set(KEY, "a", fetched_at=2_000_000)
        assert timed_cache.set(KEY, "b", fetched_at=2_000_000)
        assert timed_cache.get_data(KEY) == "b"

    async def test_slow_fetch_loses_to_newer_write(
        self, timed_cache: QueryCache, clock: FakeClock
    ) -> None:
        fn, release, _ = blocking_fetch("slow")

        task = asyncio.create_task(timed_cache.fetch(KEY, fn))
        await settle()
        clock.advance("10ms")
        timed_cache.set(KEY, "pushed")
        release.set()

        assert await task == "pushed"
        assert timed_cache.get_data(KEY) == "pushed"


class TestInvalidation:
    """Invalidation marks entries stale without dropping their data."""

    async def test_invalidate_tag(self, cache: QueryCache) -> None:
        cache.set(KEY, "data", ["reports"])
        other = make_key("analytics.dashboard")
        cache.set(other, "metrics", ["analytics"])

        assert cache.invalidate_tag("reports") == [KEY]

        assert cache.get(KEY).status is EntryStatus.STALE
        assert cache.get_data(KEY) == "data"
        assert cache.get(other).status is EntryStatus.FRESH

    async def test_kind_reaches_entity_tags(self, cache: QueryCache) -> None:
        detail = make_key(("reports", "detail"), {"id": 42})
        cache.set(detail, {"id": 42}, ["reports:42"])

        assert cache.invalidate_tag("reports") == [detail]

    async def test_entity_tag_is_scoped(self, cache: QueryCache) -> None:
        a = make_key(("reports", "detail"), {"id": 1})
        b = make_key(("reports", "detail"), {"id": 2})
        cache.set(a, 1, ["reports:1"])
        cache.set(b, 2, ["reports:2"])

        assert cache.invalidate_tag("reports:1") == [a]
        assert cache.get(b).status is EntryStatus.FRESH

    async def test_invalidate_tags_deduplicates(self, cache: QueryCache) -> None:
        cache.set(KEY, "data", ["reports", "report-metrics"])
        assert cache.invalidate_tags(["reports", "report-metrics"]) == [KEY]

    async def test_next_fetch_after_invalidation_hits_network(self, cache: QueryCache) -> None:
        calls = 0

        async def fn() -> int:
            nonlocal calls
            calls += 1
            return calls

        await cache.fetch(KEY, fn, tags=["reports"])
        cache.invalidate_tag("reports")
        assert await cache.fetch(KEY, fn, tags=["reports"]) == 2

    async def test_invalidated_while_in_flight_stays_stale(self, cache: QueryCache) -> None:
        fn, release, _ = blocking_fetch("pre-mutation")

        task = asyncio.create_task(cache.fetch(KEY, fn, tags=["reports"]))
        await settle()
        assert cache.invalidate_tag("reports") == [KEY]
        release.set()

        assert await task == "pre-mutation"
        assert cache.get(KEY).status is EntryStatus.STALE

    async def test_invalidation_visible_during_refetch(self, cache: QueryCache) -> None:
        cache.set(KEY, "old", ["reports"])
        fn, release, _ = blocking_fetch("new")

        task = asyncio.create_task(cache.fetch(KEY, fn, tags=["reports"], force=True))
        await settle()
        assert cache.get(KEY).status is EntryStatus.FETCHING

        cache.invalidate_tag("reports")
        assert cache.get(KEY).status is EntryStatus.STALE

        release.set()
        assert await task == "new"
        assert cache.get(KEY).status is EntryStatus.STALE

    async def test_forced_fetch_does_not_join_invalidated_fetch(self, cache: QueryCache) -> None:
        """Test that a refetch after invalidation waits out the older fetch."""
        old_fn, release, _ = blocking_fetch("pre-mutation")

        async def new_fn() -> str:
            return "post-mutation"

        first = asyncio.create_task(cache.fetch(KEY, old_fn, tags=["reports"]))
        await settle()
        cache.invalidate_tag("reports")
        second = asyncio.create_task(cache.fetch(KEY, new_fn, tags=["reports"], force=True))
        await settle()
        release.set()

        assert await first == "pre-mutation"
        assert await second == "post-mutation"
        assert cache.get_data(KEY) == "post-mutation"
        assert cache.get(KEY).status is EntryStatus.FRESH

    async def test_invalidate_key_and_resource(self, cache: QueryCache) -> None:
        scheduled = make_key("reports.scheduled")
        cache.set(KEY, 1)
        cache.set(scheduled, 2)
        cache.set(make_key("analytics"), 3)

        assert cache.invalidate_key(make_key("missing")) == []
        assert cache.invalidate_key(KEY) == [KEY]
        assert sorted(cache.invalidate_resource("reports")) == sorted([KEY, scheduled])

    async def test_listeners(self, cache: QueryCache) -> None:
        seen: list[list] = []
        remove = cache.on_invalidate(seen.append)
        cache.set(KEY, 1, ["reports"])

        cache.invalidate_tag("reports")
        cache.invalidate_tag("nothing")
        remove()
        cache.invalidate_tag("reports")

        assert seen == [[KEY]]

    async def test_broken_listener_does_not_stop_invalidation(self, cache: QueryCache) -> None:
        def broken(keys: list) -> None:
            raise RuntimeError("boom")

        cache.on_invalidate(broken)
        cache.set(KEY, 1, ["reports"])
        assert cache.invalidate_tag("reports") == [KEY]
        assert cache.get(KEY).status is EntryStatus.STALE

    async def test_entries_for_tag(self, cache: QueryCache) -> None:
        cache.set(KEY, 1, ["reports:7"])
        assert [e.data for e in cache.entries_for_tag("reports")] == [1]


class TestEviction:
    async def test_evict(self, cache: QueryCache) -> None:
        cache.set(KEY, 1, ["reports"])
        assert cache.evict(KEY)
        assert KEY not in cache
        assert not cache.evict(KEY)
        assert cache.invalidate_tag("reports") == []

    async def test_evicted_in_flight_result_not_stored(self, cache: QueryCache) -> None:
        fn, release, _ = blocking_fetch("late")

        task = asyncio.create_task(cache.fetch(KEY, fn))
        await settle()
        cache.evict(KEY)
        release.set()

        assert await task == "late"
        assert KEY not in cache

    async def test_clear(self, cache: QueryCache) -> None:
        fn, release, _ = blocking_fetch("late")
        cache.set(make_key("analytics"), 1)
        task = asyncio.create_task(cache.fetch(KEY, fn))
        await settle()

        cache.clear()
        release.set()
        await task

        assert len(cache) == 0


class TestGarbageCollection:
    """Unreferenced entries are evicted after the grace period."""

    async def test_unreferenced_entry_collected(self) -> None:
        cache = QueryCache(CacheConfig(gc_time="20ms"))
        cache.set(KEY, 1)
        await asyncio.sleep(0.06)
        assert KEY not in cache

    async def test_retained_entry_survives(self) -> None:
        cache = QueryCache(CacheConfig(gc_time="20ms"))
        cache.retain(KEY)
        cache.set(KEY, 1)
        await asyncio.sleep(0.06)
        assert KEY in cache

        assert cache.release(KEY) == 0
        await asyncio.sleep(0.06)
        assert KEY not in cache

    async def test_retain_cancels_pending_collection(self) -> None:
        cache = QueryCache(CacheConfig(gc_time="20ms"))
        cache.set(KEY, 1)
        cache.retain(KEY)
        await asyncio.sleep(0.06)
        assert KEY in cache
        assert cache.refcount(KEY) == 1

    async def test_collect_garbage(self, timed_cache: QueryCache, clock: FakeClock) -> None:
        timed_cache.set(KEY, 1)
        kept = make_key("analytics")
        timed_cache.retain(kept)
        timed_cache.set(kept, 2)

        clock.advance("9m")
        assert timed_cache.collect_garbage() == []
        clock.advance("1m")
        assert timed_cache.collect_garbage() == [KEY]
        assert kept in timed_cache


class TestLifecycle:
    async def test_stats(self, cache: QueryCache) -> None:
        cache.get(KEY)
        cache.set(KEY, 1)
        cache.get(KEY)
        cache.invalidate_key(KEY)
        cache.get(KEY)

        stats = cache.stats()
        assert (stats.hits, stats.stale_hits, stats.misses) == (1, 1, 1)
        assert stats.size == 1
        assert stats.to_dict()["hit_rate"] == "66.67%"

    async def test_dispose_cancels_in_flight(self, cache: QueryCache) -> None:
        fn, _, _ = blocking_fetch("never")
        task = asyncio.create_task(cache.fetch(KEY, fn))
        await settle()

        await cache.dispose()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(cache) == 0
