"""Idempotent reminder and nudge detection with outbox delivery."""

from .engine import ReminderEngine
from .keys import CompositeKeyError, composite_key, parse_composite_key
from .models import (
    DeliveryError,
    DetectionReport,
    EntityStoreError,
    NudgeKind,
    OutboxEntry,
    OutboxError,
    OutboxStatus,
    ReminderError,
)
from .outbox import OutboxWorker, retry_delay_ms

__all__ = [
    "ReminderEngine",
    "OutboxWorker",
    "retry_delay_ms",
    "composite_key",
    "parse_composite_key",
    "CompositeKeyError",
    "DeliveryError",
    "DetectionReport",
    "EntityStoreError",
    "NudgeKind",
    "OutboxEntry",
    "OutboxError",
    "OutboxStatus",
    "ReminderError",
]
