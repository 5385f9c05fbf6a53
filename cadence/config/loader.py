"""
Configuration loader with TOML file parsing and environment variable overrides.
"""
import os
import logging
import tomllib
from pathlib import Path
from typing import Optional, Any, Dict

from .models import CadenceConfig

logger = logging.getLogger(__name__)

_config: Optional[CadenceConfig] = None

CONFIG_PATHS = [
    Path("/etc/cadence/cadence.toml"),
    Path.home() / ".config" / "cadence" / "cadence.toml",
]

ENV_PREFIX = "CADENCE_"


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load TOML file and return parsed dict."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _sections(config: CadenceConfig) -> Dict[str, Any]:
    return {
        "mqtt": config.mqtt,
        "redis": config.redis,
        "storage": config.storage,
        "ntfy": config.ntfy,
        "detection": config.detection,
        "outbox": config.outbox,
        "api": config.api,
        "logging": config.logging,
    }


def _coerce(current: Any, raw: str) -> Any:
    """Convert an env string to the type of the existing field value."""
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def _apply_env_overrides(config: CadenceConfig, environ: Optional[Dict[str, str]] = None) -> CadenceConfig:
    """
    Override config with environment variables.
    Format: CADENCE_SECTION_KEY
    Example: CADENCE_REDIS_HOST overrides config.redis.host
    """
    environ = os.environ if environ is None else environ

    for section_name, section_obj in _sections(config).items():
        for key in vars(section_obj):
            env_var = f"{ENV_PREFIX}{section_name.upper()}_{key.upper()}"
            value = environ.get(env_var)
            if value is None:
                continue
            try:
                setattr(section_obj, key, _coerce(getattr(section_obj, key), value))
                logger.debug(f"Config override from env: {env_var}")
            except (ValueError, TypeError) as e:
                logger.warning(f"Failed to apply env override {env_var}={value}: {e}")

    return config


def _toml_to_config(data: Dict[str, Any]) -> CadenceConfig:
    """Convert TOML dict to CadenceConfig dataclass."""
    config = CadenceConfig()

    for section_name, section_obj in _sections(config).items():
        if section_name in data:
            for k, v in data[section_name].items():
                if hasattr(section_obj, k):
                    setattr(section_obj, k, v)
                else:
                    logger.warning(f"Unknown config key [{section_name}] {k}")

    return config


def load_config(config_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> CadenceConfig:
    """
    Load configuration from TOML file with environment variable overrides.

    Args:
        config_path: Optional explicit path to config file. If None, uses
            CADENCE_CONFIG or searches default paths.
        environ: Optional environment mapping (defaults to os.environ).

    Returns:
        CadenceConfig instance with loaded configuration.
    """
    global _config

    env = os.environ if environ is None else environ
    if config_path:
        paths = [Path(config_path)]
    elif env.get("CADENCE_CONFIG"):
        paths = [Path(env["CADENCE_CONFIG"])]
    else:
        paths = CONFIG_PATHS

    data = {}
    for path in paths:
        if path.exists():
            try:
                data = _load_toml(path)
                logger.info(f"Loaded config from {path}")
                break
            except (OSError, tomllib.TOMLDecodeError) as e:
                logger.error(f"Failed to load config from {path}: {e}")
                continue
    else:
        logger.warning("No config file found, using defaults")

    config = _toml_to_config(data)
    config = _apply_env_overrides(config, env)
    _config = config
    return config


def get_config() -> CadenceConfig:
    """
    Get cached config or load if not yet loaded.

    Returns:
        CadenceConfig instance.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config so the next get_config() reloads it."""
    global _config
    _config = None
