"""Configuration schema for mcphub."""

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcphub import __version__
from mcphub.config.loader import get_settings_dir, snake_to_camel

MIN_TIMEOUT = 0
MAX_TIMEOUT = 3600
DEFAULT_TIMEOUT = 60


class BaseServerConfig(BaseModel):
    """Fields shared by every transport shape."""

    model_config = ConfigDict(alias_generator=snake_to_camel, populate_by_name=True)

    disabled: Optional[bool] = None
    timeout: Optional[float] = Field(default=None, ge=MIN_TIMEOUT, le=MAX_TIMEOUT)
    always_allow: Optional[List[str]] = None
    watch_paths: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        """On-disk (camelCase) representation without unset fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


class StdioServerConfig(BaseServerConfig):
    """Local subprocess speaking over stdin/stdout."""

    type: Literal["stdio"] = "stdio"
    command: str = Field(min_length=1)
    args: Optional[List[str]] = None
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None

    # Must not carry SSE fields
    url: None = None
    headers: None = None

    @field_validator("command")
    @classmethod
    def _command_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Command cannot be empty")
        return value


class _UrlServerConfig(BaseServerConfig):
    url: str
    headers: Optional[Dict[str, str]] = None

    # Must not carry stdio fields
    command: None = None
    args: None = None
    cwd: None = None
    env: None = None

    @field_validator("url")
    @classmethod
    def _url_is_valid(cls, value: str) -> str:
        try:
            parsed = httpx.URL(value)
        except (httpx.InvalidURL, TypeError) as e:
            raise ValueError("URL must be a valid URL format") from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise ValueError("URL must be a valid URL format")
        return value


class SseServerConfig(_UrlServerConfig):
    """Persistent Server-Sent-Events stream."""

    type: Literal["sse"] = "sse"


class StreamableHttpServerConfig(_UrlServerConfig):
    """Streamable HTTP session."""

    type: Literal["streamable-http"] = "streamable-http"
    session_id: Optional[str] = None


ServerConfig = Union[StdioServerConfig, SseServerConfig, StreamableHttpServerConfig]


class McpSettingsFile(BaseModel):
    """Outer shape of a configuration file."""

    mcpServers: Dict[str, Any]


class HubSettings(BaseSettings):
    """Hub-level settings, overridable through MCPHUB_* environment variables."""

    model_config = SettingsConfigDict(env_prefix="MCPHUB_", extra="ignore")

    # Config file locations
    settings_dir: Path = Field(default_factory=get_settings_dir)
    project_root: Optional[Path] = None
    project_config_dir: str = ".mcphub"
    global_settings_file: str = "mcp_settings.json"
    project_settings_file: str = "mcp.json"

    # File watching (disable in tests and headless batch runs)
    watch_files: bool = True
    watch_stability_threshold: float = 0.5
    watch_poll_interval: float = 0.1

    # Timeouts (seconds)
    default_timeout: float = DEFAULT_TIMEOUT
    connect_timeout_cap: float = 120.0
    close_timeout: float = 5.0

    # Identity announced during the protocol handshake
    client_name: str = "mcphub"
    client_version: str = __version__
