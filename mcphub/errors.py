"""Error taxonomy for mcphub."""

from __future__ import annotations


class McpHubError(Exception):
    """Base class for every error raised by mcphub."""


# ── Configuration ─────────────────────────────────────────────────


class ConfigError(McpHubError):
    """Raised when a configuration file cannot be used."""


class ConfigNotFoundError(ConfigError):
    """Raised when a configuration source is unavailable.

    The project source is unavailable when no project root is known; a
    configuration file that cannot be read is reported the same way.
    """


class ConfigSyntaxError(ConfigError):
    """Raised when a configuration file is not valid JSON."""


class ConfigValidationError(ConfigError):
    """Raised when a configuration does not match the expected shape.

    ``errors`` holds one ``(field_path, message)`` pair per violation.
    """

    def __init__(self, errors: list[tuple[str, str]], prefix: str = "Invalid MCP settings") -> None:
        self.errors = list(errors)
        details = ", ".join(f"{path}: {message}" if path else message for path, message in self.errors)
        super().__init__(f"{prefix}: {details}")


# ── Connections ───────────────────────────────────────────────────


class ConnectionNotFoundError(McpHubError):
    """Raised when no live connection matches a server name."""


class ServerDisabledError(McpHubError):
    """Raised when an operation targets a disabled server."""


class UnsupportedTransportError(McpHubError):
    """Raised when no registered handler supports a transport type."""


class TransportError(McpHubError):
    """Raised when a transport reports an error or closes unexpectedly."""


class McpTimeoutError(McpHubError):
    """Base class for deadline failures."""


class ConnectTimeoutError(McpTimeoutError):
    """Raised when establishing a connection exceeds its deadline."""


class CallTimeoutError(McpTimeoutError):
    """Raised when a tool call or resource read exceeds its deadline."""


class TimeoutRangeError(McpHubError, ValueError):
    """Raised when a timeout lies outside [0, 3600] seconds."""
