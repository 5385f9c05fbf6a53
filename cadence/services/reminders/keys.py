"""
Composite idempotency keys.

Format: ``entityType_entityId_targetUserId_kind``. Underscores and percent
signs inside the first three segments are percent-encoded so that distinct
tuples can never collide; the kind is always the final segment and may itself
contain underscores (``24h_before``).
"""

from typing import Any, NamedTuple

SEPARATOR = "_"


class CompositeKeyError(ValueError):
    """Raised when a composite key cannot be built or parsed"""
    pass


class KeyParts(NamedTuple):
    entity_type: str
    entity_id: str
    target_user_id: str
    kind: str


def _text(value: Any) -> str:
    # Enums carry their wire value in .value
    return str(getattr(value, "value", value))


def _escape(segment: str) -> str:
    return segment.replace("%", "%25").replace(SEPARATOR, "%5F")


def _unescape(segment: str) -> str:
    return segment.replace("%5F", SEPARATOR).replace("%25", "%")


def composite_key(entity_type: Any, entity_id: Any, target_user_id: Any, kind: Any) -> str:
    """Build the deterministic key identifying one notification instance."""
    parts = [_text(entity_type), _text(entity_id), _text(target_user_id), _text(kind)]
    if not all(parts):
        raise CompositeKeyError(f"Composite key segments must be non-empty: {parts!r}")
    head = [_escape(p) for p in parts[:3]]
    return SEPARATOR.join(head + [parts[3]])


def parse_composite_key(key: str) -> KeyParts:
    """Split a composite key back into its four segments."""
    segments = key.split(SEPARATOR, 3)
    if len(segments) != 4 or not all(segments):
        raise CompositeKeyError(f"Malformed composite key: {key!r}")
    entity_type, entity_id, target_user_id, kind = segments
    return KeyParts(
        _unescape(entity_type),
        _unescape(entity_id),
        _unescape(target_user_id),
        kind,
    )
