"""Runtime data model shared by the config, connection and hub layers."""

from __future__ import annotations

import copy
import json
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Optional

if TYPE_CHECKING:
    from mcp import ClientSession

    from mcphub.connection.base import SessionRunner


ConfigSource = Literal["global", "project"]
ConnectionStatus = Literal["connecting", "connected", "disconnected"]
ErrorLevel = Literal["error", "warn", "info"]

CONFIG_SOURCES: tuple[ConfigSource, ...] = ("global", "project")

MAX_ERROR_HISTORY = 100
MAX_ERROR_LENGTH = 1000
TRUNCATION_MARKER = "...(error message truncated)"


@dataclass
class ErrorEntry:
    """One entry of a connection's error history."""

    message: str
    level: ErrorLevel = "error"
    timestamp: float = field(default_factory=lambda: time.time() * 1000)


@dataclass
class McpTool:
    name: str
    description: Optional[str] = None
    input_schema: Optional[dict[str, Any]] = None
    always_allow: bool = False


@dataclass
class McpResource:
    uri: str
    name: str
    mime_type: Optional[str] = None
    description: Optional[str] = None


@dataclass
class McpResourceTemplate:
    uri_template: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = None


@dataclass
class McpServer:
    """Observable state of one server, keyed by (name, source).

    ``config`` is the JSON-serialized config snapshot the connection was
    created from; it is patched in place when only timeout or always-allow
    change.
    """

    name: str
    config: str
    status: ConnectionStatus = "connecting"
    source: ConfigSource = "global"
    disabled: bool = False
    error: str = ""
    error_history: list[ErrorEntry] = field(default_factory=list)
    tools: Optional[list[McpTool]] = None
    resources: Optional[list[McpResource]] = None
    resource_templates: Optional[list[McpResourceTemplate]] = None
    project_path: Optional[str] = None

    def config_dict(self) -> dict[str, Any]:
        return json.loads(self.config)

    def snapshot(self) -> "McpServer":
        """Detached copy safe to hand to callers."""
        return copy.deepcopy(self)


@dataclass
class McpConnection:
    """A live record: server state plus the session that backs it."""

    server: McpServer
    session: Optional["ClientSession"] = None
    runner: Optional["SessionRunner"] = None


@dataclass
class ConfigChangeEvent:
    """Emitted by the config manager with the full map for one source."""

    source: ConfigSource
    configs: dict[str, dict[str, Any]]
