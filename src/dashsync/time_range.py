"""Named time-range presets resolved into concrete boundaries.

The output of :func:`resolve` feeds straight into cache keys, so every preset
is a pure function of ``reference_now``.

Usage:
    resolve("lastMonth", datetime(2024, 1, 10))
    # start=2023-12-01 00:00:00, end=2023-12-31 23:59:59
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from dashsync.errors import InvalidRangeError, UnknownPresetError


class Preset(str, Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    THIS_WEEK = "thisWeek"
    LAST_WEEK = "lastWeek"
    THIS_MONTH = "thisMonth"
    LAST_MONTH = "lastMonth"
    THIS_QUARTER = "thisQuarter"
    LAST_QUARTER = "lastQuarter"
    THIS_YEAR = "thisYear"
    LAST_YEAR = "lastYear"
    LAST_7_DAYS = "last7Days"
    LAST_30_DAYS = "last30Days"
    LAST_90_DAYS = "last90Days"
    CUSTOM = "custom"


LABELS: dict[Preset, str] = {
    Preset.TODAY: "Today",
    Preset.YESTERDAY: "Yesterday",
    Preset.THIS_WEEK: "This Week",
    Preset.LAST_WEEK: "Last Week",
    Preset.THIS_MONTH: "This Month",
    Preset.LAST_MONTH: "Last Month",
    Preset.THIS_QUARTER: "This Quarter",
    Preset.LAST_QUARTER: "Last Quarter",
    Preset.THIS_YEAR: "This Year",
    Preset.LAST_YEAR: "Last Year",
    Preset.LAST_7_DAYS: "Last 7 Days",
    Preset.LAST_30_DAYS: "Last 30 Days",
    Preset.LAST_90_DAYS: "Last 90 Days",
    Preset.CUSTOM: "Custom Range",
}

_ROLLING_DAYS = {
    Preset.LAST_7_DAYS: 7,
    Preset.LAST_30_DAYS: 30,
    Preset.LAST_90_DAYS: 90,
}


@dataclass(frozen=True, slots=True)
class TimeRange:
    """Immutable ``[start, end]`` pair. Replace it, never mutate it."""

    start: datetime
    end: datetime
    label: str | None = None

    def __post_init__(self) -> None:
        try:
            inverted = self.start > self.end
        except TypeError as e:
            raise InvalidRangeError(
                "Cannot mix timezone-aware and naive datetimes in a range"
            ) from e
        if inverted:
            raise InvalidRangeError(
                f"Range start {self.start.isoformat()} is after end {self.end.isoformat()}"
            )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _end_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=23, minute=59, second=59, microsecond=0)


def _month_start(dt: datetime, year: int, month: int) -> datetime:
    return _start_of_day(dt.replace(year=year, month=month, day=1))


def _month_end(dt: datetime, year: int, month: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return _end_of_day(dt.replace(year=year, month=month, day=last_day))


def _week_start(now: datetime) -> datetime:
    # weekday(): Monday=0 .. Sunday=6; weeks here start on Sunday
    days_since_sunday = (now.weekday() + 1) % 7
    return _start_of_day(now - timedelta(days=days_since_sunday))


def _quarter_bounds(now: datetime, year: int, quarter: int) -> tuple[datetime, datetime]:
    first_month = quarter * 3 + 1
    return _month_start(now, year, first_month), _month_end(now, year, first_month + 2)


def resolve(
    preset: Preset | str,
    reference_now: datetime | None = None,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> TimeRange:
    """Resolve a preset id into a concrete :class:`TimeRange`.

    "This" presets end at ``reference_now``; "last" presets end at 23:59:59
    on their final day. ``start``/``end`` are only used by ``custom``.

    Raises:
        UnknownPresetError: if ``preset`` is not a known id
        InvalidRangeError: if a custom range is incomplete or inverted
    """
    try:
        preset = Preset(preset)
    except ValueError:
        raise UnknownPresetError(str(preset)) from None

    label = LABELS[preset]

    if preset is Preset.CUSTOM:
        if start is None or end is None:
            raise InvalidRangeError("Custom range requires both start and end")
        return TimeRange(start, end, label)

    now = reference_now if reference_now is not None else datetime.now()

    if preset is Preset.TODAY:
        return TimeRange(_start_of_day(now), now, label)

    if preset is Preset.YESTERDAY:
        day = now - timedelta(days=1)
        return TimeRange(_start_of_day(day), _end_of_day(day), label)

    if preset is Preset.THIS_WEEK:
        return TimeRange(_week_start(now), now, label)

    if preset is Preset.LAST_WEEK:
        this_week = _week_start(now)
        return TimeRange(
            this_week - timedelta(days=7),
            _end_of_day(this_week - timedelta(days=1)),
            label,
        )

    if preset is Preset.THIS_MONTH:
        return TimeRange(_month_start(now, now.year, now.month), now, label)

    if preset is Preset.LAST_MONTH:
        year, month = (now.year - 1, 12) if now.month == 1 else (now.year, now.month - 1)
        return TimeRange(_month_start(now, year, month), _month_end(now, year, month), label)

    if preset is Preset.THIS_QUARTER:
        quarter = (now.month - 1) // 3
        quarter_start, _ = _quarter_bounds(now, now.year, quarter)
        return TimeRange(quarter_start, now, label)

    if preset is Preset.LAST_QUARTER:
        quarter = (now.month - 1) // 3 - 1
        year = now.year
        if quarter < 0:
            quarter = 3
            year -= 1
        return TimeRange(*_quarter_bounds(now, year, quarter), label)

    if preset is Preset.THIS_YEAR:
        return TimeRange(_month_start(now, now.year, 1), now, label)

    if preset is Preset.LAST_YEAR:
        return TimeRange(
            _month_start(now, now.year - 1, 1), _month_end(now, now.year - 1, 12), label
        )

    days = _ROLLING_DAYS[preset]
    return TimeRange(_start_of_day(now - timedelta(days=days - 1)), now, label)


def previous_period(time_range: TimeRange) -> TimeRange:
    """The range of equal length immediately before ``time_range``."""
    end = time_range.start - timedelta(microseconds=1)
    return TimeRange(end - time_range.duration, end, "Previous Period")


__all__ = ["LABELS", "Preset", "TimeRange", "previous_period", "resolve"]
