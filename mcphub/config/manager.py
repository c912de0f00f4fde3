"""Configuration manager: the two config sources on disk."""

from __future__ import annotations

import inspect
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger
from pydantic import ValidationError

from mcphub.config.schema import HubSettings, McpSettingsFile, ServerConfig
from mcphub.config.validation import safe_parse_server_config, validate_server_config
from mcphub.connection.file_watcher import FileWatcher
from mcphub.errors import (
    ConfigError,
    ConfigNotFoundError,
    ConfigSyntaxError,
    ConfigValidationError,
)
from mcphub.types import CONFIG_SOURCES, ConfigChangeEvent, ConfigSource

ConfigChangeListener = Callable[[ConfigChangeEvent], Union[None, Awaitable[None]]]

EMPTY_SETTINGS: dict[str, Any] = {"mcpServers": {}}


def write_settings_file(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


class ConfigManager:
    """
    Resolves, reads, validates and persists the global and project
    configuration files, and tells listeners when either changes.

    The global file is created with an empty server map on first access.
    The project source exists only when a project root is configured; its
    directory is created on first access, and a missing config file reads
    as an empty map.
    """

    def __init__(self, settings: HubSettings, file_watcher: Optional[FileWatcher] = None):
        self.settings = settings
        self._file_watcher = file_watcher or FileWatcher(
            stability_threshold=settings.watch_stability_threshold,
            poll_interval=settings.watch_poll_interval,
            enabled=settings.watch_files,
        )
        self._paths: dict[ConfigSource, Path] = {}
        self._listeners: list[ConfigChangeListener] = []

    @property
    def default_cwd(self) -> Optional[str]:
        """Working directory given to stdio servers that declare none."""
        root = self.settings.project_root
        return str(root) if root else None

    # ── Paths ─────────────────────────────────────────────────────

    def get_config_path(self, source: ConfigSource) -> Path:
        """
        Resolve (and cache) the file backing ``source``.

        Raises:
            ConfigNotFoundError for the project source when no project root is set.
        """
        cached = self._paths.get(source)
        if cached is not None:
            return cached

        if source == "global":
            path = Path(self.settings.settings_dir).expanduser() / self.settings.global_settings_file
            self.ensure_config_file(path)
        elif source == "project":
            root = self.settings.project_root
            if root is None:
                raise ConfigNotFoundError("No project root is set; project MCP settings are unavailable")
            path = Path(root).expanduser() / self.settings.project_config_dir / self.settings.project_settings_file
            # The directory must exist for its watch to be armed
            path.parent.mkdir(parents=True, exist_ok=True)
        else:
            raise ConfigNotFoundError(f"Unknown config source: {source}")

        self._paths[source] = path
        return path

    @staticmethod
    def ensure_config_file(path: Path) -> None:
        """Create ``path`` with an empty server map if it does not exist."""
        if path.exists():
            return
        write_settings_file(path, EMPTY_SETTINGS)
        logger.info(f"Created MCP settings file at {path}")

    # ── Reading and validation ────────────────────────────────────

    def read_config(self, path: Path) -> dict[str, Any]:
        """
        Parse a config file into its server-name to raw-config map.

        Raises:
            ConfigNotFoundError if the file cannot be read.
            ConfigSyntaxError if it is not valid JSON.
            ConfigValidationError if the outer shape is wrong.
        """
        return dict(self._read_document(path)["mcpServers"])

    def _read_document(self, path: Path) -> dict[str, Any]:
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigNotFoundError(f"Cannot read MCP settings at {path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigSyntaxError(f"Invalid JSON syntax in MCP settings at {path}: {e}") from e

        try:
            McpSettingsFile.model_validate(data)
        except ValidationError as e:
            errors = [(".".join(str(p) for p in err["loc"]), err["msg"]) for err in e.errors()]
            raise ConfigValidationError(errors) from e

        return data

    def get_all_servers_from_config(self, source: ConfigSource) -> dict[str, Any]:
        """Current raw configs of ``source``; a missing project file reads as empty."""
        path = self.get_config_path(source)
        if source == "project" and not path.exists():
            return {}
        return self.read_config(path)

    def validate_server_config(self, raw: Any) -> ServerConfig:
        return validate_server_config(raw, self.default_cwd)

    # ── Mutation ──────────────────────────────────────────────────

    async def update_server_config(
        self,
        name: str,
        updates: dict[str, Any],
        source: ConfigSource,
    ) -> dict[str, Any]:
        """
        Merge ``updates`` (on-disk keys) into one server's config and persist.

        The merged entry is validated before anything is written. Listeners
        are notified with the freshly written map before this returns.

        Raises:
            ConfigError if the server is not in ``source``.
            ConfigValidationError if the merged config is invalid.
        """
        path = self.get_config_path(source)
        if not path.exists():
            self.ensure_config_file(path)

        document = self._read_document(path)
        servers = document["mcpServers"]
        if name not in servers:
            raise ConfigError(f"Server \"{name}\" not found in {source} MCP settings")

        merged = {**servers[name], **updates}
        self.validate_server_config(merged)

        servers[name] = merged
        write_settings_file(path, document)
        logger.debug(f"[{name}] updated {source} config: {sorted(updates)}")

        await self._notify(source, dict(servers))
        return merged

    async def delete_server_config(self, name: str, source: ConfigSource) -> None:
        """
        Remove one server from ``source`` and persist.

        Raises:
            ConfigError if the server is not in ``source``.
        """
        path = self.get_config_path(source)
        if not path.exists():
            raise ConfigError(f"Server \"{name}\" not found in {source} MCP settings")

        document = self._read_document(path)
        servers = document["mcpServers"]
        if name not in servers:
            raise ConfigError(f"Server \"{name}\" not found in {source} MCP settings")

        del servers[name]
        write_settings_file(path, document)
        logger.info(f"[{name}] removed from {source} MCP settings")

        await self._notify(source, dict(servers))

    # ── Change notification ───────────────────────────────────────

    def on_config_change(self, listener: ConfigChangeListener) -> Callable[[], None]:
        """Subscribe to change events; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _notify(self, source: ConfigSource, configs: dict[str, Any]) -> None:
        event = ConfigChangeEvent(source=source, configs=configs)
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Config change listener failed for {source}: {e}")

    def watch_config_files(self) -> None:
        """Arm one watcher per available source. Requires a running event loop."""
        for source in CONFIG_SOURCES:
            try:
                path = self.get_config_path(source)
            except ConfigNotFoundError:
                continue

            async def _on_change(source: ConfigSource = source) -> None:
                await self._handle_file_change(source)

            self._file_watcher.setup_watchers(source, [str(path)], _on_change)

    async def _handle_file_change(self, source: ConfigSource) -> None:
        path = self.get_config_path(source)
        try:
            configs = self.read_config(path)
        except ConfigError as e:
            logger.error(f"Ignoring change to {source} MCP settings: {e}")
            return

        invalid = []
        for name, raw in configs.items():
            config, errors = safe_parse_server_config(raw, self.default_cwd)
            if config is None:
                details = ", ".join(f"{p}: {m}" if p else m for p, m in errors)
                invalid.append(f"{name} ({details})")

        # One bad entry holds back the whole file
        if invalid:
            logger.error(f"Ignoring change to {source} MCP settings, invalid servers: {'; '.join(invalid)}")
            return

        logger.info(f"{source.capitalize()} MCP settings changed, reconciling")
        await self._notify(source, configs)

    def dispose(self) -> None:
        self._file_watcher.dispose()
        self._listeners.clear()
