"""
Cadence configuration management.

Provides centralized configuration loading from TOML files with environment variable overrides.

Usage:
    from cadence.config import get_config

    config = get_config()
    redis_host = config.redis.host
    max_attempts = config.outbox.max_attempts
"""
from .loader import load_config, get_config, reset_config
from .models import CadenceConfig

__all__ = ["load_config", "get_config", "reset_config", "CadenceConfig"]
