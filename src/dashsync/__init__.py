"""dashsync - Cached, polled, auth-aware data sync for dashboard APIs."""

# Auth
from dashsync.auth import AuthProvider, AuthSession, SessionStore, refresh_via_http

# Context
from dashsync.client import SyncContext

# Configuration
from dashsync.config import CacheConfig, ClientConfig, PollingConfig, RetryPolicy

# Duration parsing
from dashsync.duration import parse_duration

# Errors
from dashsync.errors import (
    HttpError,
    InvalidRangeError,
    NetworkError,
    RequestTimeoutError,
    SessionExpiredError,
    SyncError,
    TimeRangeError,
    UnknownPresetError,
    ValidationError,
)

# Requests
from dashsync.executor import ApiRequest, ApiResponse, RequestExecutor
from dashsync.hooks import LoggingHooks, RecordingHooks, RequestEvent, RequestHooks, ResponseEvent
from dashsync.keys import make_key
from dashsync.notifications import (
    CollectingNotificationBridge,
    LogNotificationBridge,
    Notification,
    NotificationBridge,
)
from dashsync.polling import PollingScheduler, Subscription

# Cache
from dashsync.query_cache import CacheStats, QueryCache
from dashsync.resources import AnalyticsResource, ReportsResource
from dashsync.retry import RetryCoordinator
from dashsync.settings import Settings, load_config, load_settings
from dashsync.tags import tag, tag_matches
from dashsync.time_range import Preset, TimeRange, previous_period, resolve

# Core types
from dashsync.types import (
    CacheEntry,
    CacheKey,
    Duration,
    EntryStatus,
    MutationResult,
    QueryDescriptor,
    Tag,
)

__version__ = "0.1.0"

__all__ = [
    "AnalyticsResource",
    "ApiRequest",
    "ApiResponse",
    "AuthProvider",
    "AuthSession",
    "CacheConfig",
    "CacheEntry",
    "CacheKey",
    "CacheStats",
    "ClientConfig",
    "CollectingNotificationBridge",
    "Duration",
    "EntryStatus",
    "HttpError",
    "InvalidRangeError",
    "LogNotificationBridge",
    "LoggingHooks",
    "MutationResult",
    "NetworkError",
    "Notification",
    "NotificationBridge",
    "PollingConfig",
    "PollingScheduler",
    "Preset",
    "QueryCache",
    "QueryDescriptor",
    "RecordingHooks",
    "ReportsResource",
    "RequestEvent",
    "RequestExecutor",
    "RequestHooks",
    "RequestTimeoutError",
    "ResponseEvent",
    "RetryCoordinator",
    "RetryPolicy",
    "SessionExpiredError",
    "SessionStore",
    "Settings",
    "Subscription",
    "SyncContext",
    "SyncError",
    "Tag",
    "TimeRange",
    "TimeRangeError",
    "UnknownPresetError",
    "ValidationError",
    "load_config",
    "load_settings",
    "make_key",
    "parse_duration",
    "previous_period",
    "resolve",
    "tag",
    "tag_matches",
]
