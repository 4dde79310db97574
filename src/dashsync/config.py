"""Configuration structs for dashsync.

Every tunable the data-sync layer uses lives here with its default; nothing
is a hidden constant. All structs validate themselves on construction and
raise ``ValueError`` on nonsense values.
"""

from dataclasses import dataclass, field

from dashsync.duration import parse_duration, to_seconds
from dashsync.types import Duration

DEFAULT_BASE_URL = "http://localhost:3001/api"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff and attempt limits for the RetryCoordinator.

    ``max_attempts`` counts every attempt, including the first.
    ``max_auth_refreshes`` bounds the refresh-and-retry cycles a single
    request may go through after 401 responses.
    """

    max_attempts: int = 3
    base_delay: Duration = "1s"
    cap: Duration = "30s"
    max_auth_refreshes: int = 1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_auth_refreshes < 0:
            raise ValueError("max_auth_refreshes must not be negative")
        if parse_duration(self.cap) < parse_duration(self.base_delay):
            raise ValueError("cap must not be shorter than base_delay")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt`` (0-based)."""
        delay_ms = parse_duration(self.base_delay) * (2**attempt)
        return min(delay_ms, parse_duration(self.cap)) / 1000


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """QueryCache defaults.

    ``stale_time``: how long fetched data counts as fresh.
    ``gc_time``: how long an unreferenced entry survives before eviction.
    """

    stale_time: Duration = "5m"
    gc_time: Duration = "10m"

    def __post_init__(self) -> None:
        parse_duration(self.stale_time)
        parse_duration(self.gc_time)


@dataclass(frozen=True, slots=True)
class PollingConfig:
    """PollingScheduler defaults."""

    default_interval: Duration = "5s"

    def __post_init__(self) -> None:
        if parse_duration(self.default_interval) <= 0:
            raise ValueError("default_interval must be positive")


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Top-level configuration for a SyncContext."""

    base_url: str = DEFAULT_BASE_URL
    timeout: Duration = "30s"
    tenant_id: str | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    cache: CacheConfig = field(default_factory=CacheConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    default_headers: dict[str, str] = field(
        default_factory=lambda: {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
    )
    debug: bool = False

    def __post_init__(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {self.base_url!r}")
        if parse_duration(self.timeout) <= 0:
            raise ValueError("timeout must be positive")

    @property
    def timeout_seconds(self) -> float:
        return to_seconds(self.timeout)


__all__ = [
    "DEFAULT_BASE_URL",
    "CacheConfig",
    "ClientConfig",
    "PollingConfig",
    "RetryPolicy",
]
