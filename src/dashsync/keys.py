"""Deterministic cache keys for fetchable resources."""

import hashlib
import json
from collections.abc import Mapping
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from dashsync.time_range import TimeRange
from dashsync.types import CacheKey

_DIGEST_LENGTH = 32


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        return value.isoformat()
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def canonicalize(value: Any) -> Any:
    """Convert params into a JSON-ready structure with a single spelling.

    Mappings keep their keys (sorting happens at serialization) but drop
    ``None`` values; datetimes become ISO-8601 (UTC for aware values) and a
    ``TimeRange`` becomes ``"<start>/<end>"``.
    """
    if isinstance(value, TimeRange):
        return f"{_iso(value.start)}/{_iso(value.end)}"
    if isinstance(value, Enum):
        return canonicalize(value.value)
    if isinstance(value, datetime):
        return _iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): canonicalize(v) for k, v in value.items() if v is not None}
    if isinstance(value, (set, frozenset)):
        items = [canonicalize(v) for v in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def params_digest(params: Mapping[str, Any] | None) -> str:
    """Hash the canonical serialization of ``params``."""
    payload = json.dumps(
        canonicalize(params or {}),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
    )
    return hashlib.sha256(payload.encode()).hexdigest()[:_DIGEST_LENGTH]


def resource_path(resource_kind: str | tuple[str, ...]) -> tuple[str, ...]:
    """Split a dotted resource kind into its hierarchical path."""
    if isinstance(resource_kind, tuple):
        parts = resource_kind
    else:
        parts = tuple(resource_kind.split("."))
    if not parts or any(not part for part in parts):
        raise ValueError(f"Invalid resource kind: {resource_kind!r}")
    return parts


def make_key(
    resource_kind: str | tuple[str, ...],
    params: Mapping[str, Any] | None = None,
) -> CacheKey:
    """Generate a cache key from a resource kind and its query params.

    Two param mappings that differ only in insertion order produce the same
    key.

    Example:
        make_key("reports.scheduled", {"status": "active", "page": 1})
    """
    return CacheKey(resource_path(resource_kind), params_digest(params))


__all__ = ["canonicalize", "make_key", "params_digest", "resource_path"]
