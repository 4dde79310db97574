"""Core types for dashsync."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Generic, NamedTuple, TypeVar

T = TypeVar("T")

# Duration type alias
Duration = str | int | timedelta  # "30s", "5m", "2h", "1d", milliseconds or timedelta

# Tags are plain strings: "reports" or entity-scoped "reports:42"
Tag = str


class CacheKey(NamedTuple):
    """Hashable cache key: hierarchical resource path plus a params digest."""

    resource: tuple[str, ...]
    digest: str

    def matches(self, prefix: tuple[str, ...] | str) -> bool:
        """Check if this key's resource lives under ``prefix``."""
        if isinstance(prefix, str):
            prefix = tuple(prefix.split("."))
        if len(prefix) > len(self.resource):
            return False
        return self.resource[: len(prefix)] == prefix

    def __str__(self) -> str:
        return f"{'.'.join(self.resource)}#{self.digest[:8]}"


class EntryStatus(str, Enum):
    """Lifecycle state of a cache entry."""

    FRESH = "fresh"
    STALE = "stale"
    FETCHING = "fetching"
    ERROR = "error"


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    """A cached value with metadata. Updated in place on refetch."""

    key: CacheKey
    data: T
    fetched_at: int  # Unix timestamp ms, when the request that produced data was issued
    stale_at: int  # fetched_at + stale time
    status: EntryStatus = EntryStatus.FRESH
    tags: frozenset[Tag] = field(default_factory=frozenset)
    error: BaseException | None = None

    @property
    def is_stale(self) -> bool:
        return self.status is not EntryStatus.FRESH


@dataclass(frozen=True, slots=True)
class QueryDescriptor(Generic[T]):
    """What to fetch for a key and how to keep it fresh.

    ``stale_time`` of None uses the cache default; ``poll_interval`` of None
    means no polling.
    """

    key: CacheKey
    fetch: Callable[[], Awaitable[T]]
    stale_time: Duration | None = None
    poll_interval: Duration | None = None
    tags: frozenset[Tag] = field(default_factory=frozenset)


@dataclass(frozen=True, slots=True)
class MutationResult(Generic[T]):
    """Result of a mutation with tags to invalidate."""

    result: T
    invalidates: list[Tag]


