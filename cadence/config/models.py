"""
Configuration dataclass models for Cadence.
"""
import os
import socket
from dataclasses import dataclass, field


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class MQTTConfig:
    """MQTT broker configuration."""
    broker: str = "localhost"
    port: int = 1883
    username: str = "cadence"
    password: str = ""  # loaded from env
    enabled: bool = True


@dataclass
class RedisConfig:
    """Redis server configuration."""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    key_prefix: str = "cadence"


@dataclass
class StorageConfig:
    """Backing store selection for idempotency, outbox and entities."""
    backend: str = "redis"  # "redis" or "memory"


@dataclass
class NtfyConfig:
    """Ntfy notification transport configuration."""
    server: str = "https://ntfy.sh"
    topic_prefix: str = "cadence"
    timeout: float = 10.0


@dataclass
class DetectionConfig:
    """Detector tick configuration."""
    tick_interval: float = 300.0  # seconds between detection passes
    default_timezone: str = "America/Toronto"
    overdue_lookback_hours: int = 24


@dataclass
class OutboxConfig:
    """Outbox worker configuration."""
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 4000
    poll_interval: float = 5.0
    concurrency: int = 8
    lease_ttl: float = 30.0
    batch_size: int = 100
    sender: str = "ntfy"  # "ntfy" or "mqtt"
    worker_id: str = field(default_factory=_default_worker_id)


@dataclass
class APIConfig:
    """Admin HTTP API configuration."""
    port: int = 8010  # 0 disables the HTTP server


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    json_output: bool = False


@dataclass
class CadenceConfig:
    """Root configuration object containing all subsystem configs."""
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    ntfy: NtfyConfig = field(default_factory=NtfyConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    outbox: OutboxConfig = field(default_factory=OutboxConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
