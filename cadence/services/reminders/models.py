"""
Data model for the reminder engine.

Candidates are computed fresh on every detection pass and never persisted.
Idempotency records and outbox entries are the only durable state.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .keys import composite_key


class ReminderError(Exception):
    """Base exception for the reminder engine"""
    pass


class EntityStoreError(ReminderError):
    """Raised when an upstream entity store is unreachable or returns bad data"""
    pass


class DeliveryError(ReminderError):
    """Raised by a notification sender when a delivery attempt fails"""
    pass


class OutboxError(ReminderError):
    """Raised when the outbox cannot be read or written"""
    pass


class EntityType(str, Enum):
    """Kinds of entity a notification can be about"""
    EVENT = "event"
    TASK = "task"
    CONVERSATION = "conversation"


class NudgeKind(str, Enum):
    """Every notification kind the detector can produce"""
    POST_SESSION_NOTE = "post_session_note"
    DAY_BEFORE = "24h_before"
    TWO_HOURS_BEFORE = "2h_before"
    TASK_DUE_TODAY = "task_due_today"
    TASK_OVERDUE = "task_overdue"
    UNCONFIRMED_24H = "unconfirmed_24h"
    LONG_GAP_ALERT = "long_gap_alert"

    @property
    def is_nudge(self) -> bool:
        """Nudges are subject to user preferences; plain reminders are not."""
        return self in NUDGE_KINDS


NUDGE_KINDS = frozenset({
    NudgeKind.POST_SESSION_NOTE,
    NudgeKind.UNCONFIRMED_24H,
    NudgeKind.LONG_GAP_ALERT,
})


class OutboxStatus(str, Enum):
    """Outbox entry lifecycle states"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class EventStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value: Any) -> Optional[datetime]:
    """Parse an ISO string, epoch seconds or datetime into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def format_instant(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value is not None else None


@dataclass(frozen=True)
class Event:
    """Read-only view of a calendar event (tutoring session)."""
    event_id: str
    title: str
    start_at: datetime
    end_at: datetime
    created_by: str
    status: EventStatus = EventStatus.CONFIRMED
    participants: tuple = ()
    responded: frozenset = frozenset()
    conversation_id: Optional[str] = None

    @property
    def all_responded(self) -> bool:
        return all(uid in self.responded for uid in self.participants)


@dataclass(frozen=True)
class Task:
    """Read-only view of a task / deadline."""
    task_id: str
    title: str
    due_at: datetime
    assignee: str
    completed: bool = False
    conversation_id: Optional[str] = None


@dataclass(frozen=True)
class SessionHistory:
    """Last ended session between a tutor and one conversation."""
    conversation_id: str
    owner_id: str
    last_session_at: datetime
    contact_id: Optional[str] = None
    last_message_at: Optional[datetime] = None


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    display_name: Optional[str] = None
    timezone: Optional[str] = None
    nudge_preferences: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class UserNudgePreferences:
    """Per-recipient nudge switches. Defaults to everything enabled."""
    user_id: str
    enabled: bool = True
    post_session_notes_enabled: bool = True
    long_gap_alerts_enabled: bool = True
    unconfirmed_events_enabled: bool = True


@dataclass(frozen=True)
class ReminderCandidate:
    """A notification instance the detector found due on this pass."""
    entity_type: EntityType
    entity_id: str
    target_user_id: str
    kind: NudgeKind
    at: datetime  # due instant, event start/end, or last session
    context: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def composite_key(self) -> str:
        return composite_key(self.entity_type, self.entity_id, self.target_user_id, self.kind)


@dataclass(frozen=True)
class RenderedMessage:
    title: str
    body: str


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    claimed_at: datetime


@dataclass
class OutboxEntry:
    """Durable record of one notification to deliver."""
    id: str
    composite_key: str
    recipient_id: str
    rendered_message: str
    kind: str
    title: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    last_error: Optional[str] = None
    manual_retries: int = 0

    def is_due(self, now: datetime) -> bool:
        if self.status != OutboxStatus.PENDING:
            return False
        return self.next_attempt_at is None or self.next_attempt_at <= now

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("created_at", "last_attempt_at", "next_attempt_at", "sent_at"):
            data[key] = format_instant(getattr(self, key))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OutboxEntry":
        return cls(
            id=data["id"],
            composite_key=data["composite_key"],
            recipient_id=data["recipient_id"],
            rendered_message=data["rendered_message"],
            kind=data.get("kind", ""),
            title=data.get("title", ""),
            data=dict(data.get("data") or {}),
            status=OutboxStatus(data.get("status", OutboxStatus.PENDING.value)),
            attempts=int(data.get("attempts", 0)),
            created_at=parse_instant(data.get("created_at")) or utcnow(),
            last_attempt_at=parse_instant(data.get("last_attempt_at")),
            next_attempt_at=parse_instant(data.get("next_attempt_at")),
            sent_at=parse_instant(data.get("sent_at")),
            last_error=data.get("last_error"),
            manual_retries=int(data.get("manual_retries", 0)),
        )


@dataclass
class DetectionReport:
    """Summary of one detection pass."""
    started_at: datetime
    candidates: int = 0
    claimed: int = 0
    already_claimed: int = 0
    suppressed: int = 0
    errors: int = 0
    recovered: int = 0  # claimed earlier but enqueued only now
    enqueued: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": format_instant(self.started_at),
            "candidates": self.candidates,
            "claimed": self.claimed,
            "already_claimed": self.already_claimed,
            "suppressed": self.suppressed,
            "errors": self.errors,
            "recovered": self.recovered,
            "enqueued": list(self.enqueued),
        }
