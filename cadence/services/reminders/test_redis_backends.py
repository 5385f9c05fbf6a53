"""Tests for the Redis-backed outbox and entity stores against a mocked client."""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from cadence.services.reminders.models import EntityStoreError, OutboxEntry, OutboxError, OutboxStatus
from cadence.services.reminders.outbox import RedisOutboxStore
from cadence.services.reminders.sources import EVENTS, RedisEntityStore


@pytest.fixture
def scripts():
    return {"transition": AsyncMock(), "create": AsyncMock(), "release": AsyncMock()}


@pytest.fixture
def redis_client(scripts):
    client = MagicMock()
    client.register_script.side_effect = [scripts["transition"], scripts["create"], scripts["release"]]
    client.get = AsyncMock()
    client.set = AsyncMock()
    client.mget = AsyncMock()
    client.zrangebyscore = AsyncMock()
    client.zrevrange = AsyncMock()
    client.zcard = AsyncMock()
    return client


@pytest.fixture
def outbox(redis_client):
    return RedisOutboxStore(redis_client, prefix="test")


def make_entry(clock, entry_id="abc", **fields):
    data = dict(
        id=entry_id,
        composite_key="event_evt1_tutor1_post_session_note",
        recipient_id="tutor1",
        rendered_message="How did it go?",
        kind="post_session_note",
        created_at=clock(),
        next_attempt_at=clock(),
    )
    data.update(fields)
    return OutboxEntry(**data)


class TestRedisOutboxStore:

    @pytest.mark.asyncio
    async def test_create_writes_entry_and_indexes(self, outbox, scripts, clock):
        entry = make_entry(clock)
        scripts["create"].return_value = b"abc"

        assert await outbox.create(entry) == entry

        kwargs = scripts["create"].await_args.kwargs
        assert kwargs["keys"] == [
            "test:outbox:key:event_evt1_tutor1_post_session_note",
            "test:outbox:entry:abc",
            "test:outbox:status:pending",
            "test:outbox:due",
        ]
        assert kwargs["args"][0] == "abc"
        assert json.loads(kwargs["args"][1])["status"] == "pending"
        assert kwargs["args"][3] == clock().timestamp()

    @pytest.mark.asyncio
    async def test_create_returns_existing_entry_for_same_key(self, outbox, scripts, redis_client, clock):
        existing = make_entry(clock, "first")
        scripts["create"].return_value = "first"
        redis_client.get.return_value = json.dumps(existing.to_dict())

        result = await outbox.create(make_entry(clock, "second"))

        assert result.id == "first"
        redis_client.get.assert_awaited_once_with("test:outbox:entry:first")

    @pytest.mark.asyncio
    async def test_create_wraps_redis_errors(self, outbox, scripts, clock):
        scripts["create"].side_effect = redis.ConnectionError("down")
        with pytest.raises(OutboxError):
            await outbox.create(make_entry(clock))

    @pytest.mark.asyncio
    async def test_transition_to_sent(self, outbox, scripts, clock):
        updated = make_entry(clock, status=OutboxStatus.SENT, attempts=1, sent_at=clock(), next_attempt_at=None)
        scripts["transition"].return_value = json.dumps(updated.to_dict())

        result = await outbox.transition(
            "abc",
            OutboxStatus.PENDING,
            {"status": OutboxStatus.SENT, "attempts": 1, "sent_at": clock(), "next_attempt_at": None},
            expected_attempts=0,
        )

        assert result.status == OutboxStatus.SENT
        kwargs = scripts["transition"].await_args.kwargs
        assert kwargs["keys"] == [
            "test:outbox:entry:abc",
            "test:outbox:status:pending",
            "test:outbox:status:sent",
            "test:outbox:due",
        ]
        expected, attempts, updates, entry_id, due_score = kwargs["args"]
        assert (expected, attempts, entry_id, due_score) == ("pending", "0", "abc", "")
        assert json.loads(updates) == {
            "status": "sent",
            "attempts": 1,
            "sent_at": clock().isoformat(),
            "next_attempt_at": None,
        }

    @pytest.mark.asyncio
    async def test_transition_to_pending_reschedules(self, outbox, scripts, clock):
        retry_at = clock() + timedelta(seconds=2)
        scripts["transition"].return_value = json.dumps(make_entry(clock, next_attempt_at=retry_at).to_dict())

        await outbox.transition("abc", OutboxStatus.FAILED, {"status": OutboxStatus.PENDING, "next_attempt_at": retry_at})

        assert scripts["transition"].await_args.kwargs["args"][4] == retry_at.timestamp()

    @pytest.mark.asyncio
    async def test_pending_transition_needs_schedule(self, outbox):
        with pytest.raises(OutboxError):
            await outbox.transition("abc", OutboxStatus.FAILED, {"status": OutboxStatus.PENDING})

    @pytest.mark.asyncio
    async def test_transition_precondition_failed(self, outbox, scripts):
        scripts["transition"].return_value = None
        assert await outbox.transition("abc", OutboxStatus.PENDING, {"attempts": 1}) is None

    @pytest.mark.asyncio
    async def test_due_reads_schedule(self, outbox, redis_client, clock):
        redis_client.zrangebyscore.return_value = [b"a", b"b"]

        assert await outbox.due(clock(), limit=10) == ["a", "b"]
        redis_client.zrangebyscore.assert_awaited_once_with(
            "test:outbox:due", "-inf", clock().timestamp(), start=0, num=10
        )

    @pytest.mark.asyncio
    async def test_stats(self, outbox, redis_client):
        redis_client.zcard.side_effect = [2, 5, 1]
        assert await outbox.stats() == {"pending": 2, "sent": 5, "failed": 1}

    @pytest.mark.asyncio
    async def test_list_by_status(self, outbox, redis_client, clock):
        entry = make_entry(clock, status=OutboxStatus.FAILED)
        redis_client.zrevrange.return_value = [(b"abc", 1.0)]
        redis_client.mget.return_value = [json.dumps(entry.to_dict())]

        result = await outbox.list(OutboxStatus.FAILED, limit=5)

        assert [e.id for e in result] == ["abc"]
        redis_client.zrevrange.assert_awaited_once_with("test:outbox:status:failed", 0, 4, withscores=True)

    @pytest.mark.asyncio
    async def test_lease_uses_set_nx_px(self, outbox, redis_client, scripts):
        redis_client.set.return_value = True

        assert await outbox.acquire_lease("abc", "w1", 30) is True
        redis_client.set.assert_awaited_once_with("test:outbox:lease:abc", "w1", nx=True, px=30000)

        await outbox.release_lease("abc", "w1")
        scripts["release"].assert_awaited_once_with(keys=["test:outbox:lease:abc"], args=["w1"])

    @pytest.mark.asyncio
    async def test_corrupt_entry(self, outbox, redis_client):
        redis_client.get.return_value = "{not json"
        with pytest.raises(OutboxError):
            await outbox.get("abc")


class TestRedisEntityStore:

    @pytest.fixture
    def pipe(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[])
        return pipe

    @pytest.fixture
    def client(self, pipe):
        client = MagicMock()
        client.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
        client.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)
        client.zrangebyscore = AsyncMock()
        client.mget = AsyncMock()
        client.get = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_upsert_indexes_times(self, client, pipe, clock):
        store = RedisEntityStore(client)
        start = clock()
        doc = {
            "id": "evt1",
            "start_at": start.isoformat(),
            "end_at": (start + timedelta(hours=1)).isoformat(),
        }

        await store.upsert(EVENTS, doc)

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("cadence:doc:events:evt1", json.dumps(doc))
        pipe.sadd.assert_called_once_with("cadence:ids:events", "evt1")
        pipe.zadd.assert_any_call("cadence:idx:events:start", {"evt1": start.timestamp()})
        pipe.zadd.assert_any_call("cadence:idx:events:end", {"evt1": start.timestamp() + 3600})
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_upsert_requires_id_and_index_fields(self, client, clock):
        store = RedisEntityStore(client)
        with pytest.raises(EntityStoreError):
            await store.upsert(EVENTS, {"start_at": clock().isoformat(), "end_at": clock().isoformat()})
        with pytest.raises(EntityStoreError):
            await store.upsert(EVENTS, {"id": "evt1", "start_at": clock().isoformat()})

    @pytest.mark.asyncio
    async def test_range_loads_documents_and_skips_garbage(self, client, clock):
        store = RedisEntityStore(client)
        client.zrangebyscore.return_value = [b"evt1", b"evt2", b"evt3"]
        client.mget.return_value = [json.dumps({"id": "evt1"}), "{garbage", None]

        docs = await store.range(EVENTS, "start", clock(), clock() + timedelta(hours=1))

        assert docs == [{"id": "evt1"}]
        client.zrangebyscore.assert_awaited_once_with(
            "cadence:idx:events:start", clock().timestamp(), clock().timestamp() + 3600
        )

    @pytest.mark.asyncio
    async def test_open_ended_range(self, client, clock):
        store = RedisEntityStore(client)
        client.zrangebyscore.return_value = []

        assert await store.range(EVENTS, "end", end=clock()) == []
        client.zrangebyscore.assert_awaited_once_with("cadence:idx:events:end", "-inf", clock().timestamp())
        client.mget.assert_not_called()

    @pytest.mark.asyncio
    async def test_redis_errors_become_store_errors(self, client):
        store = RedisEntityStore(client)
        client.get.side_effect = redis.ConnectionError("down")
        with pytest.raises(EntityStoreError):
            await store.get(EVENTS, "evt1")

    @pytest.mark.asyncio
    async def test_unknown_collection(self, client):
        with pytest.raises(EntityStoreError):
            await RedisEntityStore(client).get("invoices", "x")
