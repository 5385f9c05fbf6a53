"""Shared fixtures for the reminder engine tests."""

import logging
from datetime import datetime, timedelta, timezone

import pytest

from cadence.services.reminders.engine import ReminderEngine
from cadence.services.reminders.models import DeliveryError

# Suppress logging during tests
logging.disable(logging.CRITICAL)

# Saturday 11:00 in Toronto (EDT)
NOW = datetime(2025, 10, 18, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    """Injected clock; tests move time explicitly."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingSender:
    """Sender double that fails the first ``failures`` calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.sent = []

    async def send(self, recipient_id, message, data=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise DeliveryError(f"transport down (call {self.calls})")
        self.sent.append((recipient_id, message, data))

    async def close(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_sender():
    return RecordingSender


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def engine(clock, sender):
    return ReminderEngine.in_memory(sender, clock=clock)
