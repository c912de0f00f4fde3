"""Tagged-union validation of server configurations.

A raw config is matched against exactly one transport shape:

- ``command`` present          -> stdio
- ``url`` present              -> sse, or streamable-http when declared so
- neither                      -> invalid

A declared ``type`` that contradicts the shape is rejected.
"""

import os
from typing import Any, Optional

from pydantic import ValidationError

from mcphub.config.schema import (
    ServerConfig,
    SseServerConfig,
    StdioServerConfig,
    StreamableHttpServerConfig,
)
from mcphub.errors import ConfigValidationError

TYPE_ERROR_MESSAGE = "Server type must match the provided configuration"

SHAPES: dict[str, type[ServerConfig]] = {
    "stdio": StdioServerConfig,
    "sse": SseServerConfig,
    "streamable-http": StreamableHttpServerConfig,
}


def _select_shape(raw: dict[str, Any]) -> tuple[Optional[str], list[tuple[str, str]]]:
    declared = raw.get("type")

    if raw.get("command") is not None:
        if declared not in (None, "stdio"):
            return None, [("type", TYPE_ERROR_MESSAGE)]
        return "stdio", []

    if raw.get("url") is not None:
        if declared == "streamable-http":
            return "streamable-http", []
        if declared not in (None, "sse"):
            return None, [("type", TYPE_ERROR_MESSAGE)]
        return "sse", []

    if declared in SHAPES:
        # Let the declared shape report its missing required field
        return declared, []

    return None, [("", "Server must define either a 'command' (stdio) or a 'url' (sse, streamable-http)")]


def _format_errors(error: ValidationError) -> list[tuple[str, str]]:
    formatted = []
    for err in error.errors():
        path = ".".join(str(part) for part in err["loc"])
        message = err["msg"]
        # Strip pydantic's "Value error, " prefix from custom validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        formatted.append((path, message))
    return formatted


def safe_parse_server_config(
    raw: Any, default_cwd: Optional[str] = None
) -> tuple[Optional[ServerConfig], list[tuple[str, str]]]:
    """
    Validate a raw server config without raising.

    Args:
        raw: Parsed JSON value for one server.
        default_cwd: Working directory applied to stdio configs lacking one.

    Returns:
        ``(config, [])`` on success, ``(None, errors)`` otherwise.
    """
    if not isinstance(raw, dict):
        return None, [("", "Server configuration must be an object")]

    shape, errors = _select_shape(raw)
    if shape is None:
        return None, errors

    try:
        config = SHAPES[shape].model_validate(raw)
    except ValidationError as e:
        return None, _format_errors(e)

    if isinstance(config, StdioServerConfig) and config.cwd is None:
        config = config.model_copy(update={"cwd": default_cwd or os.getcwd()})

    return config, []


def validate_server_config(raw: Any, default_cwd: Optional[str] = None) -> ServerConfig:
    """
    Validate a raw server config.

    Raises:
        ConfigValidationError listing every violation.
    """
    config, errors = safe_parse_server_config(raw, default_cwd)
    if config is None:
        raise ConfigValidationError(errors, prefix="Invalid MCP server configuration")
    return config
