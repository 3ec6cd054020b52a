"""Configuration model and loader for chatrelay.yaml."""

from chatrelay.config.models import RelayConfig
from chatrelay.config.parser import DEFAULT_CONFIG_NAME, ConfigError, load_config

__all__ = [
    "DEFAULT_CONFIG_NAME",
    "ConfigError",
    "RelayConfig",
    "load_config",
]
