"""Settings loading and key-conversion utilities."""

import os
import re
from pathlib import Path
from typing import Any

from loguru import logger

ENV_PLACEHOLDER = re.compile(r"\$\{env:([\w]+)\}")


def get_settings_dir() -> Path:
    """Get the default settings directory (~/.mcphub)."""
    return Path.home() / ".mcphub"


def load_settings(**overrides: Any):
    """
    Load hub settings.

    Priority (highest first):
    1. Explicit keyword overrides
    2. MCPHUB_* environment variables
    3. Pydantic defaults

    Returns:
        Loaded HubSettings object.
    """
    from mcphub.config.schema import HubSettings

    # Only pass overrides that were actually given so env vars still apply
    return HubSettings(**{k: v for k, v in overrides.items() if v is not None})


def inject_env(env: dict[str, str], not_found_value: str = "") -> dict[str, str]:
    """
    Resolve ``${env:NAME}`` placeholders against the invoking environment.

    Args:
        env: Environment mapping from a server config.
        not_found_value: Substitute used when a variable is not set.

    Returns:
        A new mapping with placeholders replaced.
    """
    def _replace(match: re.Match) -> str:
        name = match.group(1)
        value = os.environ.get(name)
        if value is None:
            logger.warning(f"Environment variable {name} referenced in MCP config is not set")
            return not_found_value
        return value

    return {key: ENV_PLACEHOLDER.sub(_replace, value) for key, value in env.items()}


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
