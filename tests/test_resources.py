"""Tests for the analytics and reports endpoint helpers."""

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import datetime

import httpx
import pytest
import respx

from dashsync import (
    AnalyticsResource,
    ClientConfig,
    EntryStatus,
    Preset,
    ReportsResource,
    SessionStore,
    SyncContext,
    TimeRange,
)

BASE_URL = "https://api.test.dev/api"
NOW = datetime(2024, 1, 10, 9, 0)


@pytest.fixture
async def ctx(
    config: ClientConfig, store: SessionStore, sleep: Callable[[float], Awaitable[None]]
):
    ctx = SyncContext(config, auth=store, sleep=sleep, hooks=[])
    ctx.init()
    yield ctx
    await ctx.dispose()


@pytest.fixture
def analytics(ctx: SyncContext) -> AnalyticsResource:
    return AnalyticsResource(ctx)


@pytest.fixture
def reports(ctx: SyncContext) -> ReportsResource:
    return ReportsResource(ctx)


class TestAnalytics:
    @respx.mock
    async def test_dashboard_resolves_preset(self, analytics: AnalyticsResource) -> None:
        route = respx.get(f"{BASE_URL}/analytics/dashboard").mock(
            return_value=httpx.Response(200, json={"revenue": 10})
        )

        data = await analytics.dashboard("lastMonth", now=NOW, region="emea")

        assert data == {"revenue": 10}
        params = route.calls.last.request.url.params
        assert params["timeRange"] == "2023-12-01T00:00:00/2023-12-31T23:59:59"
        assert params["region"] == "emea"

    @respx.mock
    async def test_dashboard_cached_per_range(self, analytics: AnalyticsResource) -> None:
        route = respx.get(f"{BASE_URL}/analytics/dashboard").mock(
            return_value=httpx.Response(200, json={})
        )

        await analytics.dashboard("lastMonth", now=NOW)
        await analytics.dashboard(Preset.LAST_MONTH, now=NOW)
        await analytics.dashboard(
            TimeRange(datetime(2023, 12, 1), datetime(2023, 12, 31, 23, 59, 59)), now=NOW
        )
        assert route.call_count == 1

        await analytics.dashboard("lastWeek", now=NOW)
        assert route.call_count == 2

    async def test_dashboard_descriptor(self, analytics: AnalyticsResource) -> None:
        descriptor = analytics.dashboard_descriptor("today", now=NOW)
        assert descriptor.key.resource == ("analytics", "dashboard")
        assert descriptor.tags == frozenset({"analytics"})

    async def test_realtime_descriptor(self, analytics: AnalyticsResource) -> None:
        descriptor = analytics.realtime_descriptor()
        assert descriptor.key.resource == ("analytics", "realtime")
        assert descriptor.poll_interval == "5s"
        assert descriptor.tags == frozenset({"realtime-metrics"})

    async def test_analytics_invalidation_skips_realtime(
        self, ctx: SyncContext, analytics: AnalyticsResource
    ) -> None:
        realtime = analytics.realtime_descriptor()
        dashboard = analytics.dashboard_descriptor("today", now=NOW)
        ctx.cache.set(realtime.key, {"activeUsers": 1}, realtime.tags)
        ctx.cache.set(dashboard.key, {"revenue": 1}, dashboard.tags)

        assert ctx.invalidate("analytics") == [dashboard.key]
        assert ctx.cache.get(realtime.key).status is EntryStatus.FRESH

    @respx.mock
    async def test_realtime_subscription(
        self, ctx: SyncContext, analytics: AnalyticsResource
    ) -> None:
        respx.get(f"{BASE_URL}/analytics/realtime").mock(
            return_value=httpx.Response(200, json={"activeUsers": 12})
        )
        received: list = []

        with ctx.subscribe(analytics.realtime_descriptor(), received.append) as sub:
            await asyncio.sleep(0.02)
            assert ctx.scheduler.is_polling(sub.key)

        assert received == [{"activeUsers": 12}]


class TestReports:
    @respx.mock
    async def test_list_and_get(self, reports: ReportsResource) -> None:
        list_route = respx.get(f"{BASE_URL}/reports").mock(
            return_value=httpx.Response(200, json=[{"id": 42}])
        )
        detail_route = respx.get(f"{BASE_URL}/reports/42").mock(
            return_value=httpx.Response(200, json={"id": 42})
        )

        assert await reports.list(status="draft") == [{"id": 42}]
        assert await reports.get(42) == {"id": 42}

        assert list_route.calls.last.request.url.params["status"] == "draft"
        assert "id" not in detail_route.calls.last.request.url.params

    @respx.mock
    async def test_create_invalidates_lists(
        self, ctx: SyncContext, reports: ReportsResource
    ) -> None:
        list_route = respx.get(f"{BASE_URL}/reports").mock(
            return_value=httpx.Response(200, json=[])
        )
        create_route = respx.post(f"{BASE_URL}/reports").mock(
            return_value=httpx.Response(201, json={"id": 43})
        )

        await reports.list()
        created = await reports.create({"name": "Q4"})
        await reports.list()

        assert created == {"id": 43}
        assert json.loads(create_route.calls.last.request.content) == {"name": "Q4"}
        assert list_route.call_count == 2

    @respx.mock
    async def test_update_invalidates_only_that_report(
        self, ctx: SyncContext, reports: ReportsResource
    ) -> None:
        respx.get(f"{BASE_URL}/reports").mock(return_value=httpx.Response(200, json=[]))
        respx.get(f"{BASE_URL}/reports/42").mock(return_value=httpx.Response(200, json={}))
        respx.get(f"{BASE_URL}/reports/43").mock(return_value=httpx.Response(200, json={}))
        respx.patch(f"{BASE_URL}/reports/42").mock(return_value=httpx.Response(200, json={}))

        await reports.list()
        await reports.get(42)
        await reports.get(43)
        await reports.update(42, {"name": "renamed"})

        cache = ctx.cache
        assert cache.get(ReportsResource.detail_key(42)).status is EntryStatus.STALE
        assert cache.get(ReportsResource.detail_key(43)).status is EntryStatus.FRESH

    @respx.mock
    async def test_delete_evicts_detail(
        self, ctx: SyncContext, reports: ReportsResource
    ) -> None:
        respx.get(f"{BASE_URL}/reports").mock(return_value=httpx.Response(200, json=[]))
        respx.get(f"{BASE_URL}/reports/42").mock(return_value=httpx.Response(200, json={}))
        delete_route = respx.delete(f"{BASE_URL}/reports/42").mock(
            return_value=httpx.Response(204)
        )

        await reports.list()
        await reports.get(42)
        await reports.delete(42)

        assert delete_route.called
        assert ReportsResource.detail_key(42) not in ctx.cache
        lists = ctx.cache.entries_for_tag("reports")
        assert lists
        assert all(e.status is EntryStatus.STALE for e in lists)

    @respx.mock
    async def test_schedule_invalidates_scheduled(self, reports: ReportsResource) -> None:
        scheduled_route = respx.get(f"{BASE_URL}/reports/scheduled").mock(
            return_value=httpx.Response(200, json=[])
        )
        respx.post(f"{BASE_URL}/reports/scheduled").mock(
            return_value=httpx.Response(201, json={"id": 1})
        )

        await reports.scheduled()
        await reports.scheduled()
        await reports.schedule({"reportId": 42, "cron": "0 9 * * 1"})
        await reports.scheduled()

        assert scheduled_route.call_count == 2
