"""
Reminder engine facade.

Wires the entity store, preference gate, idempotency store, detector and
outbox worker together and exposes the operations the service, the admin API
and tests drive: run a detection pass, process the outbox, manual retry and
read-only outbox access.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis

from cadence.config.models import DetectionConfig, OutboxConfig
from .detector import Detector
from .idempotency import IdempotencyStore, MemoryIdempotencyStore, RedisIdempotencyStore
from .models import DetectionReport, OutboxEntry, OutboxStatus, utcnow
from .outbox import MemoryOutboxStore, OutboxStore, OutboxWorker, RedisOutboxStore
from .preferences import PreferenceGate
from .senders import NotificationSender
from .sources import EntityStore, MemoryEntityStore, RedisEntityStore


class ReminderEngine:
    def __init__(
        self,
        entities: EntityStore,
        idempotency: IdempotencyStore,
        outbox: OutboxStore,
        sender: NotificationSender,
        clock: Callable[[], datetime] = utcnow,
        detection_config: Optional[DetectionConfig] = None,
        outbox_config: Optional[OutboxConfig] = None,
    ):
        detection_config = detection_config or DetectionConfig()
        outbox_config = outbox_config or OutboxConfig()
        self.entities = entities
        self.idempotency = idempotency
        self.outbox = outbox
        self.sender = sender
        self.clock = clock
        self.batch_size = outbox_config.batch_size

        self.gate = PreferenceGate.from_store(entities)
        self.worker = OutboxWorker(
            outbox,
            sender,
            clock=clock,
            max_attempts=outbox_config.max_attempts,
            base_delay_ms=outbox_config.base_delay_ms,
            max_delay_ms=outbox_config.max_delay_ms,
            worker_id=outbox_config.worker_id,
            lease_ttl=outbox_config.lease_ttl,
            concurrency=outbox_config.concurrency,
        )
        self.detector = Detector(
            entities,
            idempotency,
            self.gate,
            self.worker.enqueue,
            clock=clock,
            default_timezone=detection_config.default_timezone,
            overdue_lookback=timedelta(hours=detection_config.overdue_lookback_hours),
            find_entry=outbox.get_by_key,
        )

    @classmethod
    def in_memory(cls, sender: NotificationSender, clock: Callable[[], datetime] = utcnow, **kwargs) -> "ReminderEngine":
        """Engine over in-process stores. Claims do not survive a restart."""
        return cls(
            MemoryEntityStore(),
            MemoryIdempotencyStore(clock=clock),
            MemoryOutboxStore(clock=clock),
            sender,
            clock=clock,
            **kwargs,
        )

    @classmethod
    def with_redis(
        cls,
        redis_client: redis.Redis,
        sender: NotificationSender,
        prefix: str = "cadence",
        clock: Callable[[], datetime] = utcnow,
        **kwargs,
    ) -> "ReminderEngine":
        return cls(
            RedisEntityStore(redis_client, prefix=prefix),
            RedisIdempotencyStore(redis_client, prefix=prefix, clock=clock),
            RedisOutboxStore(redis_client, prefix=prefix),
            sender,
            clock=clock,
            **kwargs,
        )

    async def run_detection_pass(self) -> DetectionReport:
        """Safe to call on any schedule: duplicates are stopped by the claim."""
        return await self.detector.run_pass()

    async def process_outbox(self) -> int:
        return await self.worker.process_due(self.batch_size)

    async def manual_retry(self, entry_id: str) -> bool:
        return await self.worker.manual_retry(entry_id)

    async def get_outbox_entry(self, entry_id: str) -> Optional[OutboxEntry]:
        return await self.outbox.get(entry_id)

    async def list_outbox(self, status: Optional[OutboxStatus] = None, limit: int = 50) -> List[OutboxEntry]:
        return await self.outbox.list(status=status, limit=limit)

    async def outbox_stats(self) -> Dict[str, int]:
        return await self.outbox.stats()

    async def upsert_entity(self, collection: str, doc: Dict[str, Any]) -> None:
        await self.entities.upsert(collection, doc)

    async def close(self):
        await self.sender.close()
