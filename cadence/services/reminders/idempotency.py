"""
Idempotency store.

``claim(key)`` is the single correctness-critical primitive of the engine: an
atomic create-if-absent. Whoever gets ``True`` owns producing that
notification; everyone else skips. There is no unclaim.
"""

import asyncio
from typing import Callable, Dict, Optional
from datetime import datetime

import redis.asyncio as redis

from cadence.common.logging import setup_logging
from .models import IdempotencyRecord, format_instant, parse_instant, utcnow

logger = setup_logging("idempotency")


class IdempotencyStore:
    """Interface shared by every backing store."""

    async def claim(self, key: str) -> bool:
        raise NotImplementedError

    async def has_claimed(self, key: str) -> bool:
        raise NotImplementedError

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        raise NotImplementedError


class RedisIdempotencyStore(IdempotencyStore):
    """
    Claims backed by ``SET key value NX``.

    Redis executes the conditional set atomically, so concurrent detection
    passes (in this process or another host) can never both win a key.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        prefix: str = "cadence",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redis_client = redis_client
        self.key_prefix = f"{prefix}:idempotency:"
        self.clock = clock

    def _redis_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def claim(self, key: str) -> bool:
        claimed_at = format_instant(self.clock())
        result = await self.redis_client.set(self._redis_key(key), claimed_at, nx=True)
        won = bool(result)
        if won:
            logger.debug(f"Claimed {key}")
        return won

    async def has_claimed(self, key: str) -> bool:
        return bool(await self.redis_client.exists(self._redis_key(key)))

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        raw = await self.redis_client.get(self._redis_key(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return IdempotencyRecord(key=key, claimed_at=parse_instant(raw))


class MemoryIdempotencyStore(IdempotencyStore):
    """
    In-process store for tests and single-process development.

    Atomic within one event loop; claims do not survive a restart and are not
    shared between processes, so production deployments use Redis.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()

    async def claim(self, key: str) -> bool:
        async with self._lock:
            if key in self._records:
                return False
            self._records[key] = IdempotencyRecord(key=key, claimed_at=self.clock())
            return True

    async def has_claimed(self, key: str) -> bool:
        return key in self._records

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        return self._records.get(key)

    def __len__(self) -> int:
        return len(self._records)
