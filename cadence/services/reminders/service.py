#!/usr/bin/env python3
"""
Reminder Service - detection ticks, outbox delivery and admin API.

Runs a detection pass every ``detection.tick_interval`` seconds (or on demand
via MQTT / HTTP), drains due outbox entries every ``outbox.poll_interval``
seconds, and keeps the entity document store fed from upsert topics.
"""

import asyncio
import json
from typing import Optional

import redis.asyncio as redis

from cadence.common.service_base import CadenceService
from cadence.common.mqtt_topics import (
    ENTITY_UPSERT_ALL,
    OUTBOX_RETRY,
    OUTBOX_STATUS,
    REMINDERS_DETECT,
    REMINDERS_PASS_COMPLETED,
)
from cadence.config import CadenceConfig
from .api import register_routes
from .engine import ReminderEngine
from .models import DetectionReport, OutboxEntry, ReminderError
from .senders import MqttSender, NotificationSender, NtfySender
from .sources import INDEXES


class ReminderService(CadenceService):
    """MQTT/HTTP wrapper around ReminderEngine."""

    def __init__(self, config: Optional[CadenceConfig] = None):
        super().__init__(name="reminders", config=config)
        self.http_port = self.config.api.port or None
        self.redis_client: Optional[redis.Redis] = None
        self.engine: Optional[ReminderEngine] = None

    def _build_sender(self) -> NotificationSender:
        kind = self.config.outbox.sender
        if kind == "mqtt":
            return MqttSender(self.mqtt_publish)
        if kind != "ntfy":
            self.logger.warning(f"Unknown sender {kind!r}, falling back to ntfy")
        cfg = self.config.ntfy
        return NtfySender(server=cfg.server, topic_prefix=cfg.topic_prefix, timeout=cfg.timeout)

    async def setup(self):
        """Service-specific initialization"""
        sender = self._build_sender()
        options = dict(
            detection_config=self.config.detection,
            outbox_config=self.config.outbox,
        )

        if self.config.storage.backend == "memory":
            self.logger.warning("Using in-memory storage: claims and outbox are lost on restart")
            self.engine = ReminderEngine.in_memory(sender, **options)
        else:
            cfg = self.config.redis
            self.redis_client = redis.from_url(
                f"redis://{cfg.host}:{cfg.port}/{cfg.db}",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
            )
            await self.redis_client.ping()
            self.logger.info(f"✓ Redis connected at {cfg.host}:{cfg.port}")
            self.engine = ReminderEngine.with_redis(
                self.redis_client, sender, prefix=cfg.key_prefix, **options
            )

        self.engine.worker.on_transition = self._publish_transition

        self.on_mqtt(REMINDERS_DETECT)(self._on_detect_request)
        self.on_mqtt(OUTBOX_RETRY)(self._on_retry_request)
        self.on_mqtt(ENTITY_UPSERT_ALL)(self._on_entity_upsert)

        if self.http_port:
            register_routes(self.get_app(), self.engine, on_detection=self._publish_pass)

        self.logger.info("✓ Reminder engine initialized")

    async def start_background(self):
        self.every(self.config.detection.tick_interval, self.run_detection, name="detection-tick")
        self.every(self.config.outbox.poll_interval, self.engine.process_outbox, name="outbox-poll")

    async def teardown(self):
        """Service-specific cleanup"""
        if self.engine:
            await self.engine.close()
        if self.redis_client:
            await self.redis_client.aclose()
            self.logger.info("Redis connection closed")

    def health(self):
        data = super().health()
        data["storage"] = self.config.storage.backend
        data["worker_id"] = self.config.outbox.worker_id
        return data

    async def run_detection(self) -> DetectionReport:
        report = await self.engine.run_detection_pass()
        await self._publish_pass(report)
        return report

    # --- Publishing ---

    async def _publish_pass(self, report: DetectionReport):
        if self.mqtt_connected:
            await self.mqtt_publish(REMINDERS_PASS_COMPLETED, report.to_dict())

    async def _publish_transition(self, entry: OutboxEntry):
        if self.mqtt_connected:
            await self.mqtt_publish(OUTBOX_STATUS, {
                "id": entry.id,
                "composite_key": entry.composite_key,
                "status": entry.status.value,
                "attempts": entry.attempts,
                "last_error": entry.last_error,
            })

    # --- MQTT handlers ---

    async def _on_detect_request(self, topic: str, payload: bytes):
        report = await self.run_detection()
        self.logger.info(f"On-demand detection pass enqueued {len(report.enqueued)} entries")

    async def _on_retry_request(self, topic: str, payload: bytes):
        """
        Expected payload:
        {
            "entry_id": "<outbox entry id>"
        }
        """
        try:
            data = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self.logger.error(f"Invalid JSON in retry request: {e}")
            return
        entry_id = data.get("entry_id") if isinstance(data, dict) else None
        if not entry_id:
            self.logger.warning("Retry request without entry_id")
            return
        retried = await self.engine.manual_retry(entry_id)
        self.logger.info(f"Retry request for {entry_id}: {'re-armed' if retried else 'ignored'}")

    async def _on_entity_upsert(self, topic: str, payload: bytes):
        collection = topic.split("/")[-2]
        if collection not in INDEXES:
            self.logger.warning(f"Upsert for unknown collection {collection!r}")
            return
        try:
            doc = json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self.logger.error(f"Invalid JSON on {topic}: {e}")
            return
        if not isinstance(doc, dict):
            self.logger.error(f"Expected a JSON object on {topic}")
            return
        try:
            await self.engine.upsert_entity(collection, doc)
        except (ReminderError, ValueError) as e:
            self.logger.error(f"Rejected {collection} document: {e}")


def main():
    service = ReminderService()
    asyncio.run(service.run())


if __name__ == "__main__":
    main()
