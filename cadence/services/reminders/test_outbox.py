"""Tests for the outbox state machine, backoff and leases."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from cadence.services.reminders.models import (
    EntityType,
    NudgeKind,
    OutboxStatus,
    ReminderCandidate,
    RenderedMessage,
)
from cadence.services.reminders.outbox import MemoryOutboxStore, OutboxWorker, retry_delay_ms


def candidate(clock, entity_id="evt1", kind=NudgeKind.POST_SESSION_NOTE):
    return ReminderCandidate(
        entity_type=EntityType.EVENT,
        entity_id=entity_id,
        target_user_id="tutor1",
        kind=kind,
        at=clock(),
        context={"conversation_id": "c1"},
    )


MESSAGE = RenderedMessage(title="Session notes", body='📝 How did the "Algebra" session go?')


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def store(clock):
    return MemoryOutboxStore(clock=clock)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_worker(store, clock, sleeper):
    def factory(sender, **kwargs):
        kwargs.setdefault("worker_id", "w1")
        return OutboxWorker(store, sender, clock=clock, sleep=sleeper, **kwargs)
    return factory


class TestRetryDelay:

    def test_sequence(self):
        assert [retry_delay_ms(n) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 4000]

    def test_cap_applies_beyond_three(self):
        assert retry_delay_ms(10) == 4000

    def test_custom_base_and_cap(self):
        assert [retry_delay_ms(n, 500, 3000) for n in (1, 2, 3, 4)] == [500, 1000, 2000, 3000]

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            retry_delay_ms(0)


class TestStateMachine:

    @pytest.mark.asyncio
    async def test_fresh_entry_is_pending(self, make_worker, sender, clock):
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)

        assert entry.status == OutboxStatus.PENDING
        assert entry.attempts == 0
        assert entry.next_attempt_at == clock()
        assert entry.data["entity_id"] == "evt1"
        assert entry.title == "Session notes"

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, make_worker, sender, clock):
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)

        result = await worker.attempt(entry.id)

        assert result.status == OutboxStatus.SENT
        assert result.attempts == 1
        assert result.sent_at == clock()
        recipient, message, data = sender.sent[0]
        assert recipient == "tutor1"
        assert message.body == MESSAGE.body
        assert data["kind"] == "post_session_note"

    @pytest.mark.asyncio
    async def test_three_failures_end_in_failed(self, make_worker, make_sender, clock):
        sender = make_sender(failures=99)
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)

        first = await worker.attempt(entry.id)
        assert first.status == OutboxStatus.PENDING
        assert first.attempts == 1
        assert first.next_attempt_at == clock() + timedelta(milliseconds=1000)
        assert "transport down" in first.last_error

        # Not due yet: nothing happens
        assert (await worker.attempt(entry.id)).attempts == 1
        assert sender.calls == 1

        clock.advance(seconds=1)
        second = await worker.attempt(entry.id)
        assert second.attempts == 2
        assert second.next_attempt_at == clock() + timedelta(milliseconds=2000)

        clock.advance(seconds=2)
        third = await worker.attempt(entry.id)
        assert third.status == OutboxStatus.FAILED
        assert third.attempts == 3
        assert third.next_attempt_at is None
        assert sender.calls == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures", [0, 1, 2])
    async def test_success_on_any_attempt_up_to_three(self, make_worker, make_sender, clock, sleeper, failures):
        sender = make_sender(failures=failures)
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)

        result = await worker.deliver(entry.id)

        assert result.status == OutboxStatus.SENT
        assert result.attempts == failures + 1
        assert sleeper.delays == [1.0, 2.0][:failures]

    @pytest.mark.asyncio
    async def test_deliver_gives_up_after_max_attempts(self, make_worker, make_sender, clock, sleeper):
        sender = make_sender(failures=99)
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)

        result = await worker.deliver(entry.id)

        assert result.status == OutboxStatus.FAILED
        assert result.attempts == 3
        assert sleeper.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_higher_max_attempts_hits_the_cap(self, make_worker, make_sender, clock, sleeper):
        worker = make_worker(make_sender(failures=99), max_attempts=5)
        entry = await worker.enqueue(candidate(clock), MESSAGE)

        await worker.deliver(entry.id)

        assert sleeper.delays == [1.0, 2.0, 4.0, 4.0]

    @pytest.mark.asyncio
    async def test_false_return_counts_as_failure(self, make_worker, clock):
        sender = AsyncMock()
        sender.send = AsyncMock(return_value=False)
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)

        result = await worker.attempt(entry.id)

        assert result.status == OutboxStatus.PENDING
        assert result.last_error == "sender reported failure"

    @pytest.mark.asyncio
    async def test_sent_is_terminal(self, make_worker, sender, clock):
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)
        await worker.attempt(entry.id)

        again = await worker.deliver(entry.id)

        assert again.status == OutboxStatus.SENT
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_enqueue_same_key_returns_existing(self, make_worker, sender, clock):
        worker = make_worker(sender)
        first = await worker.enqueue(candidate(clock), MESSAGE)
        second = await worker.enqueue(candidate(clock), MESSAGE)

        assert second.id == first.id
        assert (await worker.store.stats())["pending"] == 1

    @pytest.mark.asyncio
    async def test_transition_hook_sees_every_state(self, make_worker, make_sender, clock):
        seen = []

        async def hook(entry):
            seen.append((entry.status.value, entry.attempts))

        worker = make_worker(make_sender(failures=1), on_transition=hook)
        entry = await worker.enqueue(candidate(clock), MESSAGE)
        await worker.deliver(entry.id)

        assert seen == [("pending", 0), ("pending", 1), ("sent", 2)]

    @pytest.mark.asyncio
    async def test_failing_hook_does_not_break_delivery(self, make_worker, sender, clock):
        worker = make_worker(sender, on_transition=AsyncMock(side_effect=RuntimeError("mqtt down")))
        entry = await worker.enqueue(candidate(clock), MESSAGE)

        assert (await worker.attempt(entry.id)).status == OutboxStatus.SENT


class TestManualRetry:

    async def failed_entry(self, worker, clock):
        entry = await worker.enqueue(candidate(clock), MESSAGE)
        result = await worker.deliver(entry.id)
        assert result.status == OutboxStatus.FAILED
        return result

    @pytest.mark.asyncio
    async def test_failed_to_pending(self, make_worker, make_sender, clock):
        sender = make_sender(failures=3)
        worker = make_worker(sender)
        entry = await self.failed_entry(worker, clock)

        assert await worker.manual_retry(entry.id) is True

        rearmed = await worker.store.get(entry.id)
        assert rearmed.status == OutboxStatus.PENDING
        assert rearmed.attempts == 0
        assert rearmed.manual_retries == 1

        delivered = await worker.deliver(entry.id)
        assert delivered.status == OutboxStatus.SENT
        assert delivered.attempts == 1

    @pytest.mark.asyncio
    async def test_retry_does_not_touch_idempotency(self, engine, clock):
        key = "event_evt1_tutor1_post_session_note"
        assert await engine.idempotency.claim(key) is True
        engine.worker.sender = AsyncMock()
        engine.worker.sender.send = AsyncMock(side_effect=RuntimeError("down"))
        engine.worker.sleep = SleepRecorder()
        entry = await engine.worker.enqueue(candidate(clock), MESSAGE)
        await engine.worker.deliver(entry.id)

        assert await engine.manual_retry(entry.id) is True
        assert await engine.idempotency.has_claimed(key) is True
        assert await engine.idempotency.claim(key) is False

    @pytest.mark.asyncio
    async def test_pending_is_a_no_op(self, make_worker, sender, clock):
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)

        assert await worker.manual_retry(entry.id) is False
        assert (await worker.store.get(entry.id)).manual_retries == 0

    @pytest.mark.asyncio
    async def test_sent_is_rejected_and_unchanged(self, make_worker, sender, clock):
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)
        sent = await worker.attempt(entry.id)

        assert await worker.manual_retry(entry.id) is False
        assert await worker.store.get(entry.id) == sent

    @pytest.mark.asyncio
    async def test_unknown_entry(self, make_worker, sender):
        assert await make_worker(sender).manual_retry("missing") is False


class TestProcessDue:

    @pytest.mark.asyncio
    async def test_attempts_only_due_entries(self, make_worker, make_sender, clock):
        sender = make_sender(failures=1)
        worker = make_worker(sender)
        first = await worker.enqueue(candidate(clock, "e1"), MESSAGE)
        await worker.attempt(first.id)  # fails, due again in 1s
        await worker.enqueue(candidate(clock, "e2"), MESSAGE)
        await worker.enqueue(candidate(clock, "e3"), MESSAGE)

        assert await worker.process_due() == 2
        assert (await worker.store.stats()) == {"pending": 1, "sent": 2, "failed": 0}

        clock.advance(seconds=1)
        assert await worker.process_due() == 1
        assert (await worker.store.stats())["sent"] == 3

    @pytest.mark.asyncio
    async def test_nothing_due(self, make_worker, sender):
        assert await make_worker(sender).process_due() == 0


class TestLeases:

    @pytest.mark.asyncio
    async def test_second_worker_skips_leased_entry(self, store, clock, sleeper):
        release = asyncio.Event()

        class SlowSender:
            calls = 0

            async def send(self, recipient_id, message, data=None):
                SlowSender.calls += 1
                await release.wait()

        slow = SlowSender()
        w1 = OutboxWorker(store, slow, clock=clock, worker_id="w1", sleep=sleeper)
        w2 = OutboxWorker(store, slow, clock=clock, worker_id="w2", sleep=sleeper)
        entry = await w1.enqueue(candidate(clock), MESSAGE)

        first = asyncio.create_task(w1.attempt(entry.id))
        await asyncio.sleep(0)
        assert await w2.attempt(entry.id) is None

        release.set()
        result = await first
        assert result.status == OutboxStatus.SENT
        assert SlowSender.calls == 1

    @pytest.mark.asyncio
    async def test_lease_released_after_attempt(self, store):
        assert await store.acquire_lease("e1", "w1", 30) is True
        assert await store.acquire_lease("e1", "w2", 30) is False
        await store.release_lease("e1", "w2")
        assert await store.acquire_lease("e1", "w2", 30) is False
        await store.release_lease("e1", "w1")
        assert await store.acquire_lease("e1", "w2", 30) is True

    @pytest.mark.asyncio
    async def test_expired_lease_can_be_taken(self, store):
        assert await store.acquire_lease("e1", "w1", 0) is True
        assert await store.acquire_lease("e1", "w2", 30) is True


class TestMemoryOutboxStore:

    @pytest.mark.asyncio
    async def test_transition_requires_expected_status(self, make_worker, sender, clock, store):
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)

        assert await store.transition(entry.id, OutboxStatus.FAILED, {"status": OutboxStatus.PENDING}) is None
        assert await store.transition(entry.id, OutboxStatus.PENDING, {"attempts": 1}, expected_attempts=5) is None
        assert await store.transition("missing", OutboxStatus.PENDING, {}) is None

    @pytest.mark.asyncio
    async def test_list_newest_first_and_filtered(self, make_worker, sender, clock, store):
        worker = make_worker(sender)
        old = await worker.enqueue(candidate(clock, "e1"), MESSAGE)
        clock.advance(minutes=1)
        new = await worker.enqueue(candidate(clock, "e2"), MESSAGE)
        await worker.attempt(old.id)

        assert [e.id for e in await store.list()] == [new.id, old.id]
        assert [e.id for e in await store.list(OutboxStatus.SENT)] == [old.id]
        assert [e.id for e in await store.list(limit=1)] == [new.id]

    @pytest.mark.asyncio
    async def test_returned_entries_are_copies(self, make_worker, sender, clock, store):
        worker = make_worker(sender)
        entry = await worker.enqueue(candidate(clock), MESSAGE)
        fetched = await store.get(entry.id)
        fetched.status = OutboxStatus.SENT
        assert (await store.get(entry.id)).status == OutboxStatus.PENDING
