"""
Preference gate.

Decides whether a user wants a given nudge kind. Plain reminders (pre-event
and task reminders) are not user-configurable and always pass.
"""

from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from cadence.common.logging import setup_logging
from .models import EntityStoreError, NudgeKind, UserNudgePreferences
from .sources import USERS, EntityStore

logger = setup_logging("preferences")

# Nudge kind -> per-kind switch on UserNudgePreferences
KIND_SWITCHES: Dict[NudgeKind, str] = {
    NudgeKind.POST_SESSION_NOTE: "post_session_notes_enabled",
    NudgeKind.LONG_GAP_ALERT: "long_gap_alerts_enabled",
    NudgeKind.UNCONFIRMED_24H: "unconfirmed_events_enabled",
}

PreferenceLoader = Callable[[str], Awaitable[Optional[Mapping[str, Any]]]]


_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _switch(value: Any) -> Optional[bool]:
    """A stored switch as a bool, or None when it cannot be read as one."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    return None


def preferences_from_mapping(user_id: str, raw: Optional[Mapping[str, Any]]) -> UserNudgePreferences:
    """Merge stored switches over the all-enabled defaults. Unknown keys are ignored."""
    if not raw:
        return UserNudgePreferences(user_id=user_id)
    switches = {}
    for name in ("enabled", *KIND_SWITCHES.values()):
        if name not in raw or raw[name] is None:
            continue
        value = _switch(raw[name])
        if value is None:
            logger.warning(f"Ignoring unreadable preference {name}={raw[name]!r} for {user_id}")
            continue
        switches[name] = value
    return UserNudgePreferences(user_id=user_id, **switches)


def allows(prefs: UserNudgePreferences, kind: NudgeKind) -> bool:
    """Pure decision: global switch AND the per-kind switch."""
    kind = NudgeKind(kind)
    if not kind.is_nudge:
        return True
    if not prefs.enabled:
        return False
    return bool(getattr(prefs, KIND_SWITCHES[kind]))


class PreferenceGate:
    """
    Looks up a user's nudge preferences and applies ``allows``.

    A missing profile means defaults. A failed lookup also means defaults:
    one broken user record must not silence nudges for everyone in the pass.
    """

    def __init__(self, loader: PreferenceLoader):
        self._loader = loader

    @classmethod
    def from_store(cls, store: EntityStore) -> "PreferenceGate":
        async def load(user_id: str) -> Optional[Mapping[str, Any]]:
            doc = await store.get(USERS, user_id)
            if doc is None:
                return None
            return doc.get("nudge_preferences")
        return cls(load)

    async def get_preferences(self, user_id: str) -> UserNudgePreferences:
        try:
            raw = await self._loader(user_id)
        except EntityStoreError as e:
            logger.warning(f"Preference lookup failed for {user_id}, using defaults: {e}")
            return UserNudgePreferences(user_id=user_id)
        if raw is not None and not isinstance(raw, Mapping):
            logger.warning(f"Ignoring malformed preferences for {user_id}")
            raw = None
        return preferences_from_mapping(user_id, raw)

    async def should_send(self, user_id: str, kind: NudgeKind) -> bool:
        kind = NudgeKind(kind)
        if not kind.is_nudge:
            return True
        prefs = await self.get_preferences(user_id)
        return allows(prefs, kind)
