"""Configuration module for mcphub."""

from mcphub.config.loader import inject_env, load_settings
from mcphub.config.schema import HubSettings, ServerConfig
from mcphub.config.validation import safe_parse_server_config, validate_server_config

__all__ = [
    "HubSettings",
    "ServerConfig",
    "inject_env",
    "load_settings",
    "safe_parse_server_config",
    "validate_server_config",
]
