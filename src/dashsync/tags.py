"""Tag construction and matching."""

from collections.abc import Iterable

from dashsync.types import Tag

_SEPARATOR = ":"


def tag(kind: str, entity_id: object | None = None) -> Tag:
    """
    Build a tag for a resource kind, optionally scoped to one entity.

    Example:
        tag("reports")       # "reports"
        tag("reports", 42)   # "reports:42"
    """
    if not kind or _SEPARATOR in kind:
        raise ValueError(f"Invalid tag kind: {kind!r}")
    if entity_id is None:
        return kind
    return f"{kind}{_SEPARATOR}{entity_id}"


def split_tag(value: Tag) -> tuple[str, str | None]:
    """Split a tag into ``(kind, entity_id)``."""
    kind, sep, entity_id = value.partition(_SEPARATOR)
    return kind, entity_id if sep else None


def tag_matches(invalidated: Tag, carried: Tag) -> bool:
    """Check if invalidating ``invalidated`` reaches an entry carrying ``carried``.

    A bare kind reaches all of its entity-scoped tags; an entity-scoped tag
    only reaches itself.
    """
    if invalidated == carried:
        return True
    kind, entity_id = split_tag(invalidated)
    if entity_id is not None:
        return False
    return split_tag(carried)[0] == kind


def any_matches(invalidated: Tag, carried: Iterable[Tag]) -> bool:
    return any(tag_matches(invalidated, c) for c in carried)
