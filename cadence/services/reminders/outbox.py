"""
Outbox store and worker.

Every claimed notification becomes an OutboxEntry before any delivery is
attempted. The worker moves entries through

    pending --success--> sent
    pending --failure, attempts < max--> pending (next_attempt_at pushed back)
    pending --failure, attempts == max--> failed
    failed  --manual retry--> pending

``sent`` is terminal. Every transition is a compare-and-set on the current
status, and each attempt runs under a short per-entry lease so horizontally
scaled workers never attempt the same entry at once.
"""

import asyncio
import json
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as redis

from cadence.common.logging import setup_logging
from .models import (
    DeliveryError,
    OutboxEntry,
    OutboxError,
    OutboxStatus,
    ReminderCandidate,
    RenderedMessage,
    ensure_utc,
    format_instant,
    utcnow,
)

logger = setup_logging("outbox")

MAX_ATTEMPTS = 3
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 4000


def retry_delay_ms(attempt: int, base_ms: int = BASE_DELAY_MS, cap_ms: int = MAX_DELAY_MS) -> int:
    """
    Delay before retry ``attempt`` (1-based): ``min(2^(attempt-1) * base, cap)``.

    With the defaults this is 1000, 2000, 4000, 4000, ...
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(2 ** (attempt - 1) * base_ms, cap_ms)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value.decode() if isinstance(value, bytes) else str(value)


class OutboxStore:
    """Persistence for outbox entries and worker leases."""

    async def create(self, entry: OutboxEntry) -> OutboxEntry:
        """Insert ``entry``. If its composite key is already enqueued, return that entry instead."""
        raise NotImplementedError

    async def get(self, entry_id: str) -> Optional[OutboxEntry]:
        raise NotImplementedError

    async def get_by_key(self, composite_key: str) -> Optional[OutboxEntry]:
        raise NotImplementedError

    async def transition(
        self,
        entry_id: str,
        expected: OutboxStatus,
        updates: Dict[str, Any],
        expected_attempts: Optional[int] = None,
    ) -> Optional[OutboxEntry]:
        """
        Apply ``updates`` only if the entry is currently ``expected`` (and has
        ``expected_attempts`` attempts, when given). Returns the updated entry,
        or None when the entry is missing or the precondition failed.
        """
        raise NotImplementedError

    async def due(self, now: datetime, limit: int = 100) -> List[str]:
        """Ids of pending entries whose next attempt is at or before ``now``."""
        raise NotImplementedError

    async def list(self, status: Optional[OutboxStatus] = None, limit: int = 50) -> List[OutboxEntry]:
        """Most recently created first."""
        raise NotImplementedError

    async def stats(self) -> Dict[str, int]:
        raise NotImplementedError

    async def acquire_lease(self, entry_id: str, owner: str, ttl: float) -> bool:
        raise NotImplementedError

    async def release_lease(self, entry_id: str, owner: str) -> None:
        raise NotImplementedError


def _apply(entry: OutboxEntry, updates: Dict[str, Any]) -> OutboxEntry:
    data = entry.to_dict()
    data.update(_serialize(updates))
    return OutboxEntry.from_dict(data)


def _serialize(updates: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in updates.items():
        if isinstance(value, datetime):
            value = format_instant(value)
        elif isinstance(value, OutboxStatus):
            value = value.value
        out[key] = value
    return out


# KEYS: entry, from-status zset, to-status zset, due zset
# ARGV: expected status, expected attempts or "", updates json, id, due score or ""
_TRANSITION_LUA = """
local raw = redis.call('GET', KEYS[1])
if not raw then return false end
local entry = cjson.decode(raw)
if entry['status'] ~= ARGV[1] then return false end
if ARGV[2] ~= '' and tostring(entry['attempts']) ~= ARGV[2] then return false end
local updates = cjson.decode(ARGV[3])
for k, v in pairs(updates) do entry[k] = v end
local encoded = cjson.encode(entry)
redis.call('SET', KEYS[1], encoded)
if KEYS[2] ~= KEYS[3] then
  local score = redis.call('ZSCORE', KEYS[2], ARGV[4])
  redis.call('ZREM', KEYS[2], ARGV[4])
  redis.call('ZADD', KEYS[3], score or 0, ARGV[4])
end
if ARGV[5] ~= '' then
  redis.call('ZADD', KEYS[4], ARGV[5], ARGV[4])
else
  redis.call('ZREM', KEYS[4], ARGV[4])
end
return encoded
"""

# KEYS: key index, entry, pending zset, due zset
# ARGV: id, entry json, created score, due score
_CREATE_LUA = """
if not redis.call('SET', KEYS[1], ARGV[1], 'NX') then
  return redis.call('GET', KEYS[1])
end
redis.call('SET', KEYS[2], ARGV[2])
redis.call('ZADD', KEYS[3], ARGV[3], ARGV[1])
redis.call('ZADD', KEYS[4], ARGV[4], ARGV[1])
return ARGV[1]
"""

_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisOutboxStore(OutboxStore):
    """
    Keys:
        {prefix}:outbox:entry:{id}       JSON document
        {prefix}:outbox:key:{ckey}       composite key -> id
        {prefix}:outbox:status:{status}  zset of ids by created_at
        {prefix}:outbox:due              zset of pending ids by next_attempt_at
        {prefix}:outbox:lease:{id}       worker lease (PX expiry)
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "cadence"):
        self.redis_client = redis_client
        self.prefix = f"{prefix}:outbox"
        self._transition_script = redis_client.register_script(_TRANSITION_LUA)
        self._create_script = redis_client.register_script(_CREATE_LUA)
        self._release_script = redis_client.register_script(_RELEASE_LUA)

    def _entry_key(self, entry_id: str) -> str:
        return f"{self.prefix}:entry:{entry_id}"

    def _index_key(self, composite_key: str) -> str:
        return f"{self.prefix}:key:{composite_key}"

    def _status_key(self, status: OutboxStatus) -> str:
        return f"{self.prefix}:status:{OutboxStatus(status).value}"

    @property
    def _due_key(self) -> str:
        return f"{self.prefix}:due"

    def _lease_key(self, entry_id: str) -> str:
        return f"{self.prefix}:lease:{entry_id}"

    def _decode(self, raw: Any) -> Optional[OutboxEntry]:
        raw = _text(raw)
        if raw is None:
            return None
        try:
            return OutboxEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError) as e:
            raise OutboxError(f"Corrupt outbox entry: {e}") from e

    async def create(self, entry: OutboxEntry) -> OutboxEntry:
        due_at = entry.next_attempt_at or entry.created_at
        try:
            owner = await self._create_script(
                keys=[
                    self._index_key(entry.composite_key),
                    self._entry_key(entry.id),
                    self._status_key(OutboxStatus.PENDING),
                    self._due_key,
                ],
                args=[
                    entry.id,
                    json.dumps(entry.to_dict()),
                    entry.created_at.timestamp(),
                    due_at.timestamp(),
                ],
            )
        except redis.RedisError as e:
            raise OutboxError(f"Failed to create outbox entry for {entry.composite_key}: {e}") from e
        owner = _text(owner)
        if owner != entry.id:
            logger.warning(f"Composite key {entry.composite_key} already enqueued as {owner}")
            existing = await self.get(owner)
            if existing is None:
                raise OutboxError(f"Outbox index points at missing entry {owner}")
            return existing
        return entry

    async def get(self, entry_id: str) -> Optional[OutboxEntry]:
        try:
            raw = await self.redis_client.get(self._entry_key(entry_id))
        except redis.RedisError as e:
            raise OutboxError(f"Failed to read outbox entry {entry_id}: {e}") from e
        return self._decode(raw)

    async def get_by_key(self, composite_key: str) -> Optional[OutboxEntry]:
        try:
            entry_id = _text(await self.redis_client.get(self._index_key(composite_key)))
        except redis.RedisError as e:
            raise OutboxError(f"Failed to read outbox index: {e}") from e
        return await self.get(entry_id) if entry_id else None

    async def transition(self, entry_id, expected, updates, expected_attempts=None):
        expected = OutboxStatus(expected)
        target = OutboxStatus(updates.get("status", expected))
        due_score = ""
        if target == OutboxStatus.PENDING:
            next_at = updates.get("next_attempt_at")
            if next_at is None:
                raise OutboxError("Pending transitions must set next_attempt_at")
            due_score = ensure_utc(next_at).timestamp()
        try:
            raw = await self._transition_script(
                keys=[
                    self._entry_key(entry_id),
                    self._status_key(expected),
                    self._status_key(target),
                    self._due_key,
                ],
                args=[
                    expected.value,
                    "" if expected_attempts is None else str(expected_attempts),
                    json.dumps(_serialize(updates)),
                    entry_id,
                    due_score,
                ],
            )
        except redis.RedisError as e:
            raise OutboxError(f"Failed to update outbox entry {entry_id}: {e}") from e
        if not raw:
            return None
        return self._decode(raw)

    async def due(self, now, limit=100):
        try:
            ids = await self.redis_client.zrangebyscore(
                self._due_key, "-inf", now.timestamp(), start=0, num=limit
            )
        except redis.RedisError as e:
            raise OutboxError(f"Failed to read due entries: {e}") from e
        return [_text(i) for i in ids]

    async def list(self, status=None, limit=50):
        statuses = [OutboxStatus(status)] if status else list(OutboxStatus)
        try:
            scored = []
            for s in statuses:
                scored.extend(await self.redis_client.zrevrange(
                    self._status_key(s), 0, limit - 1, withscores=True
                ))
            scored.sort(key=lambda pair: pair[1], reverse=True)
            ids = [_text(i) for i, _ in scored[:limit]]
            if not ids:
                return []
            raws = await self.redis_client.mget([self._entry_key(i) for i in ids])
        except redis.RedisError as e:
            raise OutboxError(f"Failed to list outbox: {e}") from e
        return [entry for entry in (self._decode(r) for r in raws) if entry is not None]

    async def stats(self):
        try:
            return {s.value: int(await self.redis_client.zcard(self._status_key(s))) for s in OutboxStatus}
        except redis.RedisError as e:
            raise OutboxError(f"Failed to read outbox stats: {e}") from e

    async def acquire_lease(self, entry_id, owner, ttl):
        result = await self.redis_client.set(
            self._lease_key(entry_id), owner, nx=True, px=max(1, int(ttl * 1000))
        )
        return bool(result)

    async def release_lease(self, entry_id, owner):
        await self._release_script(keys=[self._lease_key(entry_id)], args=[owner])


class MemoryOutboxStore(OutboxStore):
    """In-process outbox for tests and single-process development."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._entries: Dict[str, OutboxEntry] = {}
        self._by_key: Dict[str, str] = {}
        self._leases: Dict[str, tuple] = {}
        self._lock = asyncio.Lock()

    async def create(self, entry):
        async with self._lock:
            existing_id = self._by_key.get(entry.composite_key)
            if existing_id is not None:
                logger.warning(f"Composite key {entry.composite_key} already enqueued as {existing_id}")
                return _apply(self._entries[existing_id], {})
            self._entries[entry.id] = _apply(entry, {})
            self._by_key[entry.composite_key] = entry.id
            return _apply(entry, {})

    async def get(self, entry_id):
        entry = self._entries.get(entry_id)
        return _apply(entry, {}) if entry is not None else None

    async def get_by_key(self, composite_key):
        entry_id = self._by_key.get(composite_key)
        return await self.get(entry_id) if entry_id else None

    async def transition(self, entry_id, expected, updates, expected_attempts=None):
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.status != OutboxStatus(expected):
                return None
            if expected_attempts is not None and entry.attempts != expected_attempts:
                return None
            updated = _apply(entry, updates)
            self._entries[entry_id] = updated
            return _apply(updated, {})

    async def due(self, now, limit=100):
        ready = [e for e in self._entries.values() if e.is_due(now)]
        ready.sort(key=lambda e: e.next_attempt_at or e.created_at)
        return [e.id for e in ready[:limit]]

    async def list(self, status=None, limit=50):
        entries = [
            e for e in self._entries.values()
            if status is None or e.status == OutboxStatus(status)
        ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return [_apply(e, {}) for e in entries[:limit]]

    async def stats(self):
        counts = {s.value: 0 for s in OutboxStatus}
        for entry in self._entries.values():
            counts[entry.status.value] += 1
        return counts

    async def acquire_lease(self, entry_id, owner, ttl):
        now = time.monotonic()
        async with self._lock:
            holder = self._leases.get(entry_id)
            if holder is not None and holder[1] > now and holder[0] != owner:
                return False
            self._leases[entry_id] = (owner, now + ttl)
            return True

    async def release_lease(self, entry_id, owner):
        async with self._lock:
            holder = self._leases.get(entry_id)
            if holder is not None and holder[0] == owner:
                del self._leases[entry_id]


TransitionHook = Callable[[OutboxEntry], Awaitable[None]]


class OutboxWorker:
    """Delivers outbox entries through a notification sender with bounded retry."""

    def __init__(
        self,
        store: OutboxStore,
        sender,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay_ms: int = BASE_DELAY_MS,
        max_delay_ms: int = MAX_DELAY_MS,
        worker_id: Optional[str] = None,
        lease_ttl: float = 30.0,
        concurrency: int = 8,
        on_transition: Optional[TransitionHook] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.sender = sender
        self.clock = clock
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.lease_ttl = lease_ttl
        self.concurrency = max(1, concurrency)
        self.on_transition = on_transition
        self.sleep = sleep

    def delay_ms(self, attempt: int) -> int:
        return retry_delay_ms(attempt, self.base_delay_ms, self.max_delay_ms)

    async def enqueue(self, candidate: ReminderCandidate, message: RenderedMessage) -> OutboxEntry:
        """Persist a freshly claimed candidate as a pending entry, due immediately."""
        now = self.clock()
        entry = OutboxEntry(
            id=uuid.uuid4().hex,
            composite_key=candidate.composite_key,
            recipient_id=candidate.target_user_id,
            rendered_message=message.body,
            kind=candidate.kind.value,
            title=message.title,
            data={
                "entity_type": candidate.entity_type.value,
                "entity_id": candidate.entity_id,
                "kind": candidate.kind.value,
                "conversation_id": candidate.context.get("conversation_id"),
            },
            created_at=now,
            next_attempt_at=now,
        )
        entry = await self.store.create(entry)
        logger.info(
            f"Enqueued {entry.composite_key} as {entry.id}",
            extra={"composite_key": entry.composite_key, "outbox_id": entry.id},
        )
        await self._notify(entry)
        return entry

    async def attempt(self, entry_id: str, require_due: bool = True) -> Optional[OutboxEntry]:
        """
        Make at most one delivery attempt for ``entry_id``.

        Returns the entry as it stands afterwards, or None if it does not
        exist or another worker holds its lease.
        """
        if not await self.store.acquire_lease(entry_id, self.worker_id, self.lease_ttl):
            logger.debug(f"Lease held elsewhere for {entry_id}", extra={"outbox_id": entry_id})
            return None
        try:
            entry = await self.store.get(entry_id)
            if entry is None:
                return None
            if entry.status != OutboxStatus.PENDING:
                return entry
            if require_due and not entry.is_due(self.clock()):
                return entry
            return await self._attempt(entry)
        finally:
            await self.store.release_lease(entry_id, self.worker_id)

    async def _attempt(self, entry: OutboxEntry) -> OutboxEntry:
        attempt = entry.attempts + 1
        extra = {
            "outbox_id": entry.id,
            "composite_key": entry.composite_key,
            "attempt": attempt,
            "recipient_id": entry.recipient_id,
            "worker_id": self.worker_id,
        }
        error = None
        try:
            result = await self.sender.send(
                entry.recipient_id,
                RenderedMessage(title=entry.title, body=entry.rendered_message),
                data=entry.data,
            )
            if result is False:
                raise DeliveryError("sender reported failure")
        except Exception as e:
            error = str(e) or e.__class__.__name__

        now = self.clock()
        if error is None:
            updates = {
                "status": OutboxStatus.SENT,
                "attempts": attempt,
                "last_attempt_at": now,
                "sent_at": now,
                "next_attempt_at": None,
                "last_error": None,
            }
        elif attempt >= self.max_attempts:
            updates = {
                "status": OutboxStatus.FAILED,
                "attempts": attempt,
                "last_attempt_at": now,
                "next_attempt_at": None,
                "last_error": error,
            }
        else:
            updates = {
                "status": OutboxStatus.PENDING,
                "attempts": attempt,
                "last_attempt_at": now,
                "next_attempt_at": now + timedelta(milliseconds=self.delay_ms(attempt)),
                "last_error": error,
            }

        updated = await self.store.transition(
            entry.id, OutboxStatus.PENDING, updates, expected_attempts=entry.attempts
        )
        if updated is None:
            logger.warning(f"Outbox entry {entry.id} changed during attempt, discarding result", extra=extra)
            return await self.store.get(entry.id) or entry

        if updated.status == OutboxStatus.SENT:
            logger.info(f"Delivered {entry.composite_key} on attempt {attempt}", extra=extra)
        elif updated.status == OutboxStatus.FAILED:
            logger.error(
                f"Giving up on {entry.composite_key} after {attempt} attempts: {error}", extra=extra
            )
        else:
            logger.warning(
                f"Delivery attempt {attempt} failed for {entry.composite_key}: {error}, "
                f"retrying in {self.delay_ms(attempt)}ms",
                extra=extra,
            )
        await self._notify(updated)
        return updated

    async def deliver(self, entry_id: str) -> Optional[OutboxEntry]:
        """Attempt until the entry is terminal, sleeping the backoff between attempts."""
        entry = await self.attempt(entry_id, require_due=False)
        while entry is not None and entry.status == OutboxStatus.PENDING and entry.attempts > 0:
            await self.sleep(self.delay_ms(entry.attempts) / 1000)
            entry = await self.attempt(entry_id, require_due=False)
        return entry

    async def process_due(self, limit: int = 100) -> int:
        """Attempt every due entry concurrently. Returns how many were attempted."""
        entry_ids = await self.store.due(self.clock(), limit)
        if not entry_ids:
            return 0
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(entry_id: str):
            async with semaphore:
                try:
                    return await self.attempt(entry_id)
                except OutboxError as e:
                    logger.error(f"Outbox error for {entry_id}: {e}", extra={"outbox_id": entry_id})
                    return None

        results = await asyncio.gather(*(run(i) for i in entry_ids))
        return sum(1 for r in results if r is not None)

    async def manual_retry(self, entry_id: str) -> bool:
        """
        Re-arm a failed entry. Only valid on ``failed``: returns False (and
        changes nothing) for pending, sent or unknown entries.
        """
        entry = await self.store.get(entry_id)
        if entry is None:
            logger.warning(f"Manual retry for unknown outbox entry {entry_id}")
            return False
        if entry.status != OutboxStatus.FAILED:
            logger.info(
                f"Manual retry ignored for {entry_id}: status is {entry.status.value}",
                extra={"outbox_id": entry_id},
            )
            return False

        updated = await self.store.transition(entry_id, OutboxStatus.FAILED, {
            "status": OutboxStatus.PENDING,
            "attempts": 0,
            "manual_retries": entry.manual_retries + 1,
            "next_attempt_at": self.clock(),
        })
        if updated is None:
            return False
        logger.info(f"Manual retry re-armed {entry_id}", extra={"outbox_id": entry_id})
        await self._notify(updated)
        return True

    async def _notify(self, entry: OutboxEntry) -> None:
        if self.on_transition is None:
            return
        try:
            await self.on_transition(entry)
        except Exception as e:
            logger.warning(f"Transition hook failed for {entry.id}: {e}")
