"""
Build Observer Configuration

Settings are resolved from environment variables and can be overlaid by an
optional YAML file named by BUILD_OBSERVER_CONFIG.

YAML keys mirror the lower-cased environment names:

    build_api_url: https://api.kautoploy.com
    build_api_token: "..."
    log_poll_interval: 3
    http_timeout: 30
    log_level: INFO
"""

import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger("observer_config")

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_API_URL = "https://api.kautoploy.com"
DEFAULT_POLL_INTERVAL = 3.0  # seconds between log polls for a live build
DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_LOG_LEVEL = "INFO"
CONFIG_PATH_ENV = "BUILD_OBSERVER_CONFIG"


class ConfigError(ValueError):
    """Raised when a configuration value cannot be used."""


@dataclass(frozen=True)
class ObserverSettings:
    """Resolved runtime settings."""
    api_url: str = DEFAULT_API_URL
    api_token: Optional[str] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    log_level: str = DEFAULT_LOG_LEVEL

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        # Never echo the token back
        data["api_token"] = "***" if self.api_token else None
        return data


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Read a YAML settings file, returning an empty dict for empty files."""
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return {str(k).lower(): v for k, v in data.items()}


def _as_float(name: str, value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid value for {name}: {value!r}, using {default}")
        return default
    if number <= 0:
        raise ConfigError(f"{name} must be positive, got {number}")
    return number


def load_settings(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None
) -> ObserverSettings:
    """
    Resolve settings.

    Precedence (highest first): YAML file, environment, defaults.

    Args:
        path: YAML file to overlay; defaults to $BUILD_OBSERVER_CONFIG
        env: Environment mapping; defaults to os.environ
    """
    env = os.environ if env is None else env

    values: Dict[str, Any] = {
        "build_api_url": env.get("BUILD_API_URL"),
        "build_api_token": env.get("BUILD_API_TOKEN"),
        "log_poll_interval": env.get("LOG_POLL_INTERVAL"),
        "http_timeout": env.get("HTTP_TIMEOUT"),
        "log_level": env.get("LOG_LEVEL"),
    }

    config_path = path or (Path(env[CONFIG_PATH_ENV]) if env.get(CONFIG_PATH_ENV) else None)
    if config_path is not None:
        if config_path.exists():
            overlay = _load_yaml(config_path)
            values.update({k: v for k, v in overlay.items() if k in values})
            logger.info(f"Loaded settings overlay from {config_path}")
        else:
            logger.warning(f"Config file not found: {config_path}")

    return ObserverSettings(
        api_url=(values["build_api_url"] or DEFAULT_API_URL).rstrip("/"),
        api_token=values["build_api_token"] or None,
        poll_interval=_as_float("log_poll_interval", values["log_poll_interval"], DEFAULT_POLL_INTERVAL),
        http_timeout=_as_float("http_timeout", values["http_timeout"], DEFAULT_HTTP_TIMEOUT),
        log_level=str(values["log_level"] or DEFAULT_LOG_LEVEL).upper(),
    )
