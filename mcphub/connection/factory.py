"""Handler registry and owner of the live connection list."""

from __future__ import annotations

import asyncio
import os
from typing import Any, Mapping, Optional, Union

from loguru import logger

from mcphub.config.schema import ServerConfig
from mcphub.config.validation import validate_server_config
from mcphub.connection.base import StatusCallback, notify_status
from mcphub.connection.file_watcher import FileWatcher
from mcphub.connection.handler import ConnectionHandler
from mcphub.errors import ConnectionNotFoundError, McpHubError, UnsupportedTransportError
from mcphub.types import ConfigSource, McpConnection, McpServer

# Local development servers are restarted when their build output changes
BUILD_OUTPUT_MARKER = "build/index.js"


def infer_type(config: Union[ServerConfig, Mapping[str, Any]]) -> Optional[str]:
    """Declared transport type, else stdio for a command and sse for a url."""
    if isinstance(config, Mapping):
        declared, command, url = config.get("type"), config.get("command"), config.get("url")
    else:
        declared = getattr(config, "type", None)
        command, url = getattr(config, "command", None), getattr(config, "url", None)
    if declared:
        return declared
    if command:
        return "stdio"
    if url:
        return "sse"
    return None


class ConnectionFactory:
    """
    Dispatches connection work to the first handler that supports a
    transport type and keeps at most one record per (name, source).

    Usage::

        factory = ConnectionFactory(FileWatcher(), on_status_change=broadcast)
        factory.register_handler(StdioHandler())
        connection = await factory.create_connection("files", config, "global")
    """

    def __init__(
        self,
        file_watcher: FileWatcher,
        handlers: Optional[list[ConnectionHandler]] = None,
        on_status_change: Optional[StatusCallback] = None,
    ):
        self._file_watcher = file_watcher
        self._handlers: list[ConnectionHandler] = list(handlers or [])
        self._on_status_change = on_status_change
        self._connections: list[McpConnection] = []
        self._closed = False

    # ── Handler registry ──────────────────────────────────────────

    def register_handler(self, handler: ConnectionHandler) -> None:
        self._handlers.append(handler)

    def get_handler_for_type(self, type: Optional[str]) -> ConnectionHandler:
        for handler in self._handlers:
            if type and handler.supports(type):
                return handler
        raise UnsupportedTransportError(f"Unsupported connection type: {type}")

    # ── Live connections ──────────────────────────────────────────

    @property
    def connections(self) -> list[McpConnection]:
        """Shallow copy of the live list; the records themselves are live."""
        return list(self._connections)

    def get_connection_by_server(
        self, name: str, source: Optional[ConfigSource] = None
    ) -> Optional[McpConnection]:
        """Find a record; without a source, a project server shadows a global one."""
        if source is not None:
            for connection in self._connections:
                if connection.server.name == name and connection.server.source == source:
                    return connection
            return None
        for preferred in ("project", "global"):
            for connection in self._connections:
                if connection.server.name == name and connection.server.source == preferred:
                    return connection
        return None

    def get_active_servers(self) -> list[McpServer]:
        return [c.server.snapshot() for c in self._connections if not c.server.disabled]

    def get_all_servers(self) -> list[McpServer]:
        return [c.server.snapshot() for c in self._connections]

    def get_server_names(self, source: ConfigSource) -> list[str]:
        return [c.server.name for c in self._connections if c.server.source == source]

    # ── Lifecycle ─────────────────────────────────────────────────

    async def create_connection(
        self,
        name: str,
        config: ServerConfig,
        source: ConfigSource,
        on_status_change: Optional[StatusCallback] = None,
    ) -> McpConnection:
        """
        Open a connection through the matching handler and record it.

        Transport failures do not raise; they leave the returned record
        ``"disconnected"`` with the error attached.

        Raises:
            UnsupportedTransportError if no handler supports the type.
            ValueError if the config lacks the transport's required field.
        """
        if self._closed:
            raise McpHubError("Connection factory has been disposed")

        type = infer_type(config)
        handler = self.get_handler_for_type(type)

        def _status_changed(server: McpServer) -> None:
            if self._closed:
                return
            notify_status(self._on_status_change, server)
            notify_status(on_status_change, server)

        connection = await handler.create_connection(name, config, source, _status_changed)

        stale = [
            c for c in self._connections
            if c.server.name == name and c.server.source == source
        ]
        self._connections = [c for c in self._connections if c not in stale]
        for old in stale:
            if old is not connection:
                await self._close_record(old)
        self._connections.append(connection)

        if self._closed:
            # Disposed while the handshake was in flight
            await self._close_record(connection)
            self._connections.remove(connection)
            return connection

        self._setup_file_watcher(name, config, source)
        return connection

    async def close_connection(
        self,
        name: str,
        source: Optional[ConfigSource] = None,
        allow_keep: bool = False,
    ) -> None:
        """
        Close every record named ``name`` (optionally only in ``source``).

        With ``allow_keep`` the records stay in the live list so observers
        still see them while a restart recreates the connection.
        """
        matches = [
            c for c in self._connections
            if c.server.name == name and (source is None or c.server.source == source)
        ]
        for connection in matches:
            self._file_watcher.clear_watchers(self._watch_key(name, connection.server.source))
            await self._close_record(connection)

        if not allow_keep:
            self._connections = [c for c in self._connections if c not in matches]

    async def restart_connection(self, name: str, source: Optional[ConfigSource] = None) -> McpConnection:
        """
        Close and recreate a connection from its stored config.

        Raises:
            ConnectionNotFoundError if no record matches.
        """
        connection = self.get_connection_by_server(name, source)
        if connection is None:
            raise ConnectionNotFoundError(f"No connection found for server: {name}")

        source = connection.server.source
        config = validate_server_config(connection.server.config_dict())

        logger.info(f"[{name}] restarting ({source})")
        connection.server.status = "connecting"
        connection.server.error = ""
        notify_status(self._on_status_change, connection.server)

        await self.close_connection(name, source, allow_keep=True)
        return await self.create_connection(name, config, source)

    async def dispose(self) -> None:
        """Stop callback-triggered work, then close everything best-effort."""
        self._closed = True
        self._file_watcher.clear_watchers()

        connections, self._connections = self._connections, []
        results = await asyncio.gather(
            *(self._close_record(c) for c in connections), return_exceptions=True
        )
        for connection, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.error(f"[{connection.server.name}] failed to close during dispose: {result}")

    @property
    def disposed(self) -> bool:
        return self._closed

    # ── Internals ─────────────────────────────────────────────────

    async def _close_record(self, connection: McpConnection) -> None:
        try:
            handler = self.get_handler_for_type(infer_type(connection.server.config_dict()))
        except (UnsupportedTransportError, ValueError) as e:
            logger.error(f"[{connection.server.name}] cannot close connection: {e}")
            return
        await handler.close_connection(connection)

    @staticmethod
    def _watch_key(name: str, source: ConfigSource) -> str:
        return f"{source}:{name}"

    def _watch_paths(self, config: ServerConfig) -> list[str]:
        paths = list(config.watch_paths or [])
        if infer_type(config) == "stdio":
            cwd = getattr(config, "cwd", None) or os.getcwd()
            for arg in getattr(config, "args", None) or []:
                if BUILD_OUTPUT_MARKER in arg:
                    paths.append(arg if os.path.isabs(arg) else os.path.join(cwd, arg))
        return paths

    def _setup_file_watcher(self, name: str, config: ServerConfig, source: ConfigSource) -> None:
        paths = self._watch_paths(config)
        if not paths:
            return

        async def _on_file_change() -> None:
            if self._closed:
                return
            logger.info(f"[{name}] watched file changed, restarting")
            await self.restart_connection(name, source)

        self._file_watcher.setup_watchers(self._watch_key(name, source), paths, _on_file_change)
