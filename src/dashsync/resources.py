"""Typed helpers for the dashboard's analytics and reports endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from dashsync.client import SyncContext
from dashsync.executor import ApiRequest
from dashsync.keys import make_key
from dashsync.tags import tag
from dashsync.time_range import Preset, TimeRange, resolve
from dashsync.types import CacheKey, QueryDescriptor

ANALYTICS = "analytics"
REPORTS = "reports"
REPORT_METRICS = "report-metrics"
SCHEDULED_REPORTS = "scheduled-reports"
REALTIME_METRICS = "realtime-metrics"

REALTIME_POLL_INTERVAL = "5s"
REALTIME_STALE_TIME = "5s"


def _as_range(time_range: TimeRange | Preset | str, now: datetime | None) -> TimeRange:
    if isinstance(time_range, TimeRange):
        return time_range
    return resolve(time_range, now)


class AnalyticsResource:
    def __init__(self, ctx: SyncContext):
        self._ctx = ctx

    def dashboard_descriptor(
        self,
        time_range: TimeRange | Preset | str,
        *,
        now: datetime | None = None,
        **filters: Any,
    ) -> QueryDescriptor[Any]:
        resolved = _as_range(time_range, now)
        return self._ctx.descriptor(
            "analytics.dashboard",
            {"timeRange": resolved, **filters},
            tags=[ANALYTICS],
        )

    async def dashboard(
        self,
        time_range: TimeRange | Preset | str,
        *,
        now: datetime | None = None,
        **filters: Any,
    ) -> Any:
        """``GET /analytics/dashboard`` for a preset or explicit range."""
        return await self._ctx.run_query(
            self.dashboard_descriptor(time_range, now=now, **filters)
        )

    def realtime_descriptor(self) -> QueryDescriptor[Any]:
        """Live metrics, polled every 5 seconds."""
        return self._ctx.descriptor(
            "analytics.realtime",
            tags=[REALTIME_METRICS],
            stale_time=REALTIME_STALE_TIME,
            poll_interval=REALTIME_POLL_INTERVAL,
            skip_error_notification=True,
        )


class ReportsResource:
    def __init__(self, ctx: SyncContext):
        self._ctx = ctx

    @staticmethod
    def detail_key(report_id: str | int) -> CacheKey:
        """Cache key of one report, fetched from ``/reports/<id>``."""
        return make_key((REPORTS, str(report_id)))

    async def list(self, **filters: Any) -> Any:
        return await self._ctx.query(REPORTS, filters, tags=[REPORTS])

    async def get(self, report_id: str | int) -> Any:
        return await self._ctx.query(
            self.detail_key(report_id).resource, tags=[tag(REPORTS, report_id)]
        )

    async def create(self, body: dict[str, Any]) -> Any:
        response = await self._ctx.mutate(
            ApiRequest("POST", "/reports", json=body),
            invalidates=[REPORTS, REPORT_METRICS],
        )
        return response.data

    async def update(self, report_id: str | int, body: dict[str, Any]) -> Any:
        response = await self._ctx.mutate(
            ApiRequest("PATCH", f"/reports/{report_id}", json=body),
            invalidates=[tag(REPORTS, report_id), REPORT_METRICS],
        )
        return response.data

    async def delete(self, report_id: str | int) -> None:
        """Delete a report; its detail entry is evicted, lists go stale."""
        await self._ctx.mutate(
            ApiRequest("DELETE", f"/reports/{report_id}"),
            invalidates=[REPORTS, REPORT_METRICS],
            evicts=[self.detail_key(report_id)],
        )

    async def scheduled(self) -> Any:
        return await self._ctx.query(
            (REPORTS, "scheduled"), tags=[SCHEDULED_REPORTS]
        )

    async def schedule(self, body: dict[str, Any]) -> Any:
        response = await self._ctx.mutate(
            ApiRequest("POST", "/reports/scheduled", json=body),
            invalidates=[SCHEDULED_REPORTS],
        )
        return response.data


__all__ = [
    "ANALYTICS",
    "REALTIME_METRICS",
    "REPORTS",
    "REPORT_METRICS",
    "SCHEDULED_REPORTS",
    "AnalyticsResource",
    "ReportsResource",
]
