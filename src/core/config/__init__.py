"""Config module: loading and managing configuration."""

from src.core.config.loader import (
    get_config,
    get_section,
    reload_config,
)
from src.core.config.settings import OrchestratorSettings, load_settings

__all__ = [
    "get_config",
    "get_section",
    "reload_config",
    "OrchestratorSettings",
    "load_settings",
]
