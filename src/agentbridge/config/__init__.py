"""Configuration models and parser for agentbridge.yaml."""

from agentbridge.config.models import BridgeConfig, CodexSettings, TraeSettings
from agentbridge.config.parser import DEFAULT_CONFIG_NAME, ConfigError, load_config

__all__ = [
    "DEFAULT_CONFIG_NAME",
    "BridgeConfig",
    "CodexSettings",
    "ConfigError",
    "TraeSettings",
    "load_config",
]
