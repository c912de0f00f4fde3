"""Reconciliation of live connections against configuration snapshots."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from mcphub.config.schema import ServerConfig
from mcphub.config.validation import safe_parse_server_config
from mcphub.connection.factory import ConnectionFactory
from mcphub.errors import ConfigError, ConfigNotFoundError
from mcphub.types import CONFIG_SOURCES, ConfigSource, McpConnection

if TYPE_CHECKING:
    from mcphub.config.manager import ConfigManager

# Changing these never requires a reconnect
PATCHABLE_FIELDS = ("alwaysAllow", "timeout")


def connection_fields(config: dict[str, Any], keep_session_id: bool = True) -> dict[str, Any]:
    """The part of an on-disk config whose change requires a reconnect."""
    relevant = {k: v for k, v in config.items() if k not in PATCHABLE_FIELDS}
    if not keep_session_id:
        relevant.pop("sessionId", None)
    return relevant


def requires_reconnect(stored: dict[str, Any], incoming: dict[str, Any]) -> bool:
    # A session id issued by the server only counts when the incoming config pins one
    keep_session_id = "sessionId" in incoming
    return connection_fields(stored, keep_session_id) != connection_fields(incoming, keep_session_id)


class ConnectionManager:
    """
    Converges the live set of one source onto a configuration snapshot.

    Passes for the same source never overlap; entries within a pass run
    concurrently, so one hung connect does not hold up its siblings.
    """

    def __init__(
        self,
        factory: ConnectionFactory,
        config_manager: Optional["ConfigManager"] = None,
    ):
        self.factory = factory
        self._config_manager = config_manager
        self._locks: dict[ConfigSource, asyncio.Lock] = {source: asyncio.Lock() for source in CONFIG_SOURCES}
        self._initializing = 0

    @property
    def is_connecting(self) -> bool:
        return self._initializing > 0

    async def initialize_connections(self) -> None:
        """Reconcile both sources once; a missing project source is skipped."""
        if self._config_manager is None:
            return
        self._initializing += 1
        try:
            await asyncio.gather(*(self._initialize_source(source) for source in CONFIG_SOURCES))
        finally:
            self._initializing -= 1

    async def _initialize_source(self, source: ConfigSource) -> None:
        try:
            configs = self._config_manager.get_all_servers_from_config(source)
        except ConfigNotFoundError as e:
            logger.debug(f"Skipping {source} MCP servers: {e}")
            return
        except ConfigError as e:
            logger.error(f"Failed to load {source} MCP settings: {e}")
            return
        await self.update_server_connections(configs, source)

    async def update_server_connections(self, configs: dict[str, Any], source: ConfigSource) -> None:
        """
        Apply the minimal create/close/patch operations for ``source``.

        Args:
            configs: Full server-name to raw config map for the source.
            source: Which configuration scope the map belongs to.
        """
        async with self._locks[source]:
            live = {
                c.server.name: c for c in self.factory.connections if c.server.source == source
            }

            removed = [name for name in live if name not in configs]
            await asyncio.gather(*(self._close(name, source) for name in removed))

            await asyncio.gather(
                *(
                    self._reconcile_entry(name, raw, source, live.get(name))
                    for name, raw in configs.items()
                )
            )

    async def _reconcile_entry(
        self,
        name: str,
        raw: Any,
        source: ConfigSource,
        existing: Optional[McpConnection],
    ) -> None:
        config, errors = safe_parse_server_config(raw, self._default_cwd())
        if config is None:
            details = ", ".join(f"{path}: {message}" if path else message for path, message in errors)
            logger.error(f"[{name}] invalid {source} config, skipping: {details}")
            return

        try:
            if existing is None:
                if not config.disabled:
                    await self.factory.create_connection(name, config, source)
                return

            incoming = config.to_dict()
            stored = existing.server.config_dict()
            if requires_reconnect(stored, incoming):
                logger.info(f"[{name}] config changed, reconnecting ({source})")
                await self.factory.close_connection(name, source)
                if not config.disabled:
                    await self.factory.create_connection(name, config, source)
            else:
                self._patch_in_place(existing, stored, incoming, config)
        except Exception as e:
            logger.error(f"[{name}] failed to reconcile {source} connection: {e}")

    @staticmethod
    def _patch_in_place(
        connection: McpConnection,
        stored: dict[str, Any],
        incoming: dict[str, Any],
        config: ServerConfig,
    ) -> None:
        if "sessionId" in stored and "sessionId" not in incoming:
            incoming["sessionId"] = stored["sessionId"]
        connection.server.config = json.dumps(incoming)
        connection.server.disabled = bool(config.disabled)

    async def _close(self, name: str, source: ConfigSource) -> None:
        try:
            await self.factory.close_connection(name, source)
        except Exception as e:
            logger.error(f"[{name}] failed to close removed {source} connection: {e}")

    async def restart_connection(self, name: str, source: Optional[ConfigSource] = None) -> None:
        """Restart through the factory; failures are logged, not raised."""
        try:
            await self.factory.restart_connection(name, source)
        except Exception as e:
            logger.error(f"[{name}] failed to restart connection: {e}")

    def get_connection(self, name: str, source: Optional[ConfigSource] = None) -> Optional[McpConnection]:
        return self.factory.get_connection_by_server(name, source)

    async def dispose(self) -> None:
        await self.factory.dispose()

    def _default_cwd(self) -> Optional[str]:
        if self._config_manager is None:
            return None
        return self._config_manager.default_cwd
