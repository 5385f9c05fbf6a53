"""Base class for Cadence services.

Provides:
- MQTT client lifecycle (connect, reconnect with backoff, graceful disconnect)
- Optional FastAPI HTTP server with /health endpoint
- Periodic background loops
- Graceful shutdown on SIGTERM/SIGINT
"""

import asyncio
import json
import logging
import signal
import time
from typing import Optional, Dict, Any, List, Callable, Awaitable
from contextlib import asynccontextmanager

import uvicorn
from aiomqtt import Client as MQTTClient, MqttError
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cadence.config import get_config, CadenceConfig
from cadence.common.logging import setup_logging


class CadenceService:
    """Base class for Cadence microservices."""

    def __init__(self, name: str, http_port: Optional[int] = None, config: Optional[CadenceConfig] = None):
        self.name = name
        self.config: CadenceConfig = config or get_config()
        self.http_port = http_port
        self.logger = setup_logging(
            name,
            level=getattr(logging, self.config.logging.level.upper(), logging.INFO),
            json_output=self.config.logging.json_output,
        )
        self._mqtt_client: Optional[MQTTClient] = None
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._mqtt_handlers: Dict[str, Callable] = {}
        self._app: Optional[FastAPI] = None
        self._started_at: Optional[float] = None

    # --- MQTT ---

    def on_mqtt(self, topic: str):
        """Decorator to register an MQTT topic handler."""
        def decorator(func: Callable[[str, bytes], Awaitable[None]]):
            self._mqtt_handlers[topic] = func
            return func
        return decorator

    @property
    def mqtt_connected(self) -> bool:
        return self._mqtt_client is not None

    async def mqtt_publish(self, topic: str, payload: Any) -> bool:
        """Publish to an MQTT topic. Returns False when not connected."""
        if self._mqtt_client is None:
            self.logger.warning(f"MQTT not connected, cannot publish to {topic}")
            return False
        if isinstance(payload, dict):
            payload = json.dumps(payload, default=str)
        if isinstance(payload, str):
            payload = payload.encode()
        await self._mqtt_client.publish(topic, payload)
        return True

    async def _mqtt_loop(self):
        """Main MQTT connection loop with auto-reconnect and exponential backoff."""
        cfg = self.config.mqtt
        reconnect_delay = 1
        max_delay = 60
        while self._running:
            try:
                async with MQTTClient(
                    hostname=cfg.broker,
                    port=cfg.port,
                    username=cfg.username or None,
                    password=cfg.password or None,
                    identifier=f"cadence-{self.name}-{self.config.outbox.worker_id}",
                ) as client:
                    self._mqtt_client = client
                    self.logger.info(f"MQTT connected to {cfg.broker}:{cfg.port}")
                    reconnect_delay = 1

                    for topic in self._mqtt_handlers:
                        await client.subscribe(topic)
                        self.logger.debug(f"Subscribed to {topic}")

                    async for message in client.messages:
                        topic_str = str(message.topic)
                        for pattern, handler in self._mqtt_handlers.items():
                            if topic_matches(topic_str, pattern):
                                try:
                                    await handler(topic_str, message.payload)
                                except Exception as e:
                                    self.logger.error(f"Handler error for {topic_str}: {e}", exc_info=True)

            except MqttError as e:
                self._mqtt_client = None
                if self._running:
                    self.logger.warning(f"MQTT disconnected: {e}, reconnecting in {reconnect_delay}s...")
                    await asyncio.sleep(reconnect_delay)
                    reconnect_delay = min(reconnect_delay * 2, max_delay)
            except Exception as e:
                self._mqtt_client = None
                if self._running:
                    self.logger.error(f"MQTT error: {e}, reconnecting in {reconnect_delay}s...", exc_info=True)
                    await asyncio.sleep(reconnect_delay)
                    reconnect_delay = min(reconnect_delay * 2, max_delay)

    # --- Periodic work ---

    def every(self, interval: float, func: Callable[[], Awaitable[Any]], name: str):
        """Run ``func`` every ``interval`` seconds while the service is running."""
        async def loop():
            while self._running:
                try:
                    await func()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.error(f"{name} failed: {e}", exc_info=True)
                await asyncio.sleep(interval)
        self._tasks.append(asyncio.create_task(loop(), name=name))

    # --- HTTP ---

    def health(self) -> Dict[str, Any]:
        """Override to add service-specific health fields."""
        return {
            "service": self.name,
            "status": "healthy",
            "mqtt_connected": self.mqtt_connected,
            "uptime_seconds": round(time.monotonic() - self._started_at, 1) if self._started_at else 0.0,
        }

    def get_app(self) -> FastAPI:
        """Get or create the FastAPI app."""
        if self._app is None:
            @asynccontextmanager
            async def lifespan(app):
                yield

            self._app = FastAPI(
                title=f"Cadence - {self.name.title()} Service",
                lifespan=lifespan,
            )
            self._app.add_middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["*"],
                allow_headers=["*"],
            )

            @self._app.get("/health")
            async def health():
                return self.health()
        return self._app

    async def _run_http(self):
        """Run the FastAPI HTTP server."""
        config = uvicorn.Config(
            self.get_app(),
            host="0.0.0.0",
            port=self.http_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()

    # --- Lifecycle ---

    async def setup(self):
        """Override in subclass for service-specific initialization."""
        pass

    async def start_background(self):
        """Override to start periodic loops with ``every``."""
        pass

    async def teardown(self):
        """Override in subclass for service-specific cleanup."""
        pass

    async def run(self):
        """Main entry point. Starts MQTT, HTTP and background loops, runs until shutdown."""
        self._running = True
        self._started_at = time.monotonic()
        self.logger.info(f"Starting {self.name} service...")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.shutdown()))

        await self.setup()

        if self.config.mqtt.enabled:
            self._tasks.append(asyncio.create_task(self._mqtt_loop()))
        if self.http_port:
            self._tasks.append(asyncio.create_task(self._run_http()))
        await self.start_background()

        self.logger.info(f"{self.name} service started")

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.teardown()
            self.logger.info(f"{self.name} service stopped")

    async def shutdown(self):
        """Graceful shutdown."""
        self.logger.info(f"Shutting down {self.name}...")
        self._running = False
        for task in self._tasks:
            task.cancel()


def topic_matches(actual: str, pattern: str) -> bool:
    """MQTT topic pattern matching with + and # wildcards."""
    if pattern == actual:
        return True
    pattern_parts = pattern.split("/")
    actual_parts = actual.split("/")
    for i, p in enumerate(pattern_parts):
        if p == "#":
            return True
        if i >= len(actual_parts):
            return False
        if p != "+" and p != actual_parts[i]:
            return False
    return len(pattern_parts) == len(actual_parts)
