"""
Notification senders.

The outbox only knows ``send(recipient_id, message, data=None)``: return on
success, raise DeliveryError on failure. Whether that is a push, a chat
message or an MQTT hop to another service is the sender's business.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from aiomqtt import MqttError

from cadence.common.logging import setup_logging
from cadence.common.mqtt_topics import NOTIFICATION_SEND
from .models import DeliveryError, RenderedMessage

logger = setup_logging("senders")


class NotificationSender:
    async def send(self, recipient_id: str, message: RenderedMessage, data: Optional[Dict[str, Any]] = None):
        raise NotImplementedError

    async def close(self):
        pass


class NtfySender(NotificationSender):
    """Posts to ntfy, one topic per recipient: ``{server}/{topic_prefix}-{recipient_id}``."""

    def __init__(self, server: str = "https://ntfy.sh", topic_prefix: str = "cadence", timeout: float = 10.0):
        self.server = server.rstrip("/")
        self.topic_prefix = topic_prefix
        self.timeout = timeout
        self.http_session: Optional[aiohttp.ClientSession] = None

    def topic_url(self, recipient_id: str) -> str:
        return f"{self.server}/{self.topic_prefix}-{recipient_id}"

    async def _session(self) -> aiohttp.ClientSession:
        if self.http_session is None or self.http_session.closed:
            self.http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout, connect=5),
            )
        return self.http_session

    async def send(self, recipient_id, message, data=None):
        headers = {
            "Title": message.title or "Cadence",
            "Content-Type": "text/plain; charset=utf-8",
        }
        kind = (data or {}).get("kind")
        if kind:
            headers["Tags"] = kind

        session = await self._session()
        try:
            async with session.post(
                self.topic_url(recipient_id),
                data=message.body.encode("utf-8"),
                headers=headers,
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise DeliveryError(f"ntfy error {response.status}: {error_text}")
                if response.status != 200:
                    raise DeliveryError(f"Unexpected ntfy response: {response.status}")
        except aiohttp.ClientError as e:
            raise DeliveryError(f"HTTP request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise DeliveryError("ntfy request timeout") from e
        logger.debug(f"ntfy delivered to {recipient_id}", extra={"recipient_id": recipient_id})

    async def close(self):
        if self.http_session is not None and not self.http_session.closed:
            await self.http_session.close()
        self.http_session = None


class MqttSender(NotificationSender):
    """
    Hands the notification to whichever transport service listens on
    ``NOTIFICATION_SEND``. ``publish`` must return False when not connected.
    """

    def __init__(self, publish: Callable[[str, Any], Awaitable[bool]], topic: str = NOTIFICATION_SEND):
        self.publish = publish
        self.topic = topic

    async def send(self, recipient_id, message, data=None):
        payload = {
            "recipient_id": recipient_id,
            "title": message.title,
            "message": message.body,
            "data": data or {},
        }
        try:
            published = await self.publish(self.topic, json.dumps(payload, default=str))
        except MqttError as e:
            raise DeliveryError(f"MQTT publish failed: {e}") from e
        if published is False:
            raise DeliveryError("MQTT not connected")
