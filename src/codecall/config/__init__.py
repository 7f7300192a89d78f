"""Configuration model and parser for codecall.yaml."""

from codecall.config.models import OrchestratorConfig
from codecall.config.parser import ConfigError, load_config

__all__ = [
    "ConfigError",
    "OrchestratorConfig",
    "load_config",
]
