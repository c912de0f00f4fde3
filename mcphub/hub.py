"""Supervisor: the facade over configuration, reconciliation and calls."""

from __future__ import annotations

import asyncio
import inspect
import json
import threading
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger
from mcp import types
from pydantic import AnyUrl

from mcphub.config.loader import load_settings
from mcphub.config.manager import ConfigManager
from mcphub.config.schema import MAX_TIMEOUT, MIN_TIMEOUT, HubSettings
from mcphub.connection.factory import ConnectionFactory
from mcphub.connection.file_watcher import FileWatcher
from mcphub.connection.handler import ConnectionHandler
from mcphub.connection.handlers import SseHandler, StdioHandler, StreamableHttpHandler
from mcphub.connection.manager import ConnectionManager
from mcphub.errors import (
    CallTimeoutError,
    ConfigError,
    ConnectionNotFoundError,
    McpHubError,
    ServerDisabledError,
    TimeoutRangeError,
    TransportError,
)
from mcphub.types import CONFIG_SOURCES, ConfigChangeEvent, ConfigSource, McpConnection, McpServer

ServerListObserver = Callable[[list[McpServer]], Union[None, Awaitable[None]]]


class HubLease:
    """Token for one registered owner of a hub. Releasing twice is a no-op."""

    def __init__(self, hub: "McpHub"):
        self._hub = hub
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        with self._hub._lease_lock:
            if self._released:
                return
            self._released = True
        await self._hub.unregister_client()


class McpHub:
    """
    Owns one config manager and one connection manager/factory pair.

    Every config change is reconciled and followed by a broadcast of the
    full server list to observers. The hub is disposed once the last
    registered owner releases its lease.

    Usage::

        hub = await create_hub(project_root="/path/to/project")
        lease = hub.register_client()
        result = await hub.call_tool("files", "read_file", {"path": "README.md"})
        await lease.release()
    """

    def __init__(
        self,
        settings: Optional[HubSettings] = None,
        host: Optional[ServerListObserver] = None,
        handlers: Optional[list[ConnectionHandler]] = None,
    ):
        self.settings = settings or load_settings()
        self._host = host
        self._observers: list[ServerListObserver] = []

        client_info = types.Implementation(
            name=self.settings.client_name,
            version=self.settings.client_version,
        )
        handler_options = dict(
            client_info=client_info,
            default_timeout=self.settings.default_timeout,
            close_timeout=self.settings.close_timeout,
            connect_timeout_cap=self.settings.connect_timeout_cap,
        )

        self._file_watcher = FileWatcher(
            stability_threshold=self.settings.watch_stability_threshold,
            poll_interval=self.settings.watch_poll_interval,
            enabled=self.settings.watch_files,
        )
        self.config_manager = ConfigManager(self.settings)
        self.factory = ConnectionFactory(
            self._file_watcher,
            handlers=handlers if handlers is not None else [
                StdioHandler(**handler_options),
                SseHandler(**handler_options),
                StreamableHttpHandler(**handler_options),
            ],
            on_status_change=self._on_status_change,
        )
        self.connection_manager = ConnectionManager(self.factory, self.config_manager)
        self._unsubscribe_config = self.config_manager.on_config_change(self._on_config_change)

        self._lease_lock = threading.Lock()
        self._lease_count = 0
        self._disposed = False
        self._pending_notify: Optional[asyncio.Task] = None
        self._notify_dirty = False

    async def start(self) -> None:
        """Connect every configured server and start watching the config files."""
        await self.connection_manager.initialize_connections()
        self.config_manager.watch_config_files()
        await self.notify_servers_changed()

    @property
    def is_connecting(self) -> bool:
        return self.connection_manager.is_connecting

    @property
    def disposed(self) -> bool:
        return self._disposed

    def get_config_path(self, source: ConfigSource) -> str:
        return str(self.config_manager.get_config_path(source))

    # ── Server lists ──────────────────────────────────────────────

    def get_servers(self) -> list[McpServer]:
        """Enabled servers only."""
        return [s for s in self.get_all_servers() if not s.disabled]

    def get_all_servers(self) -> list[McpServer]:
        """
        Every configured server of both sources, global first.

        Entries come from the config files so that disabled servers are
        listed too; live connections overlay their status, error and
        capabilities. A source whose file cannot be read falls back to its
        live records.
        """
        live: dict[ConfigSource, dict[str, McpServer]] = {source: {} for source in CONFIG_SOURCES}
        for server in self.factory.get_all_servers():
            live[server.source][server.name] = server

        servers: list[McpServer] = []
        on_disk: dict[ConfigSource, dict[str, Any]] = {}
        for source in CONFIG_SOURCES:
            try:
                configs = self.config_manager.get_all_servers_from_config(source)
            except ConfigError as e:
                logger.debug(f"Cannot read {source} MCP settings, listing live servers only: {e}")
                servers.extend(live[source].values())
                continue

            on_disk[source] = configs
            for name, raw in configs.items():
                disabled = bool(raw.get("disabled")) if isinstance(raw, dict) else False
                server = live[source].get(name)
                if server is None:
                    server = McpServer(
                        name=name,
                        config=json.dumps(raw),
                        status="disconnected",
                        source=source,
                    )
                server.disabled = disabled
                servers.append(server)

        return self._enrich(servers, on_disk)

    def _enrich(self, servers: list[McpServer], on_disk: dict[ConfigSource, dict[str, Any]]) -> list[McpServer]:
        """Recompute each tool's always-allow flag from the on-disk config."""
        for server in servers:
            raw = on_disk.get(server.source, {}).get(server.name)
            always_allow = set(raw.get("alwaysAllow") or []) if isinstance(raw, dict) else set()
            for tool in server.tools or []:
                tool.always_allow = tool.name in always_allow

            if server.source == "project" and self.settings.project_root:
                server.project_path = str(self.settings.project_root)
        return servers

    # ── Calls ─────────────────────────────────────────────────────

    async def call_tool(
        self,
        server_name: str,
        tool_name: str,
        arguments: Optional[dict[str, Any]] = None,
        source: Optional[ConfigSource] = None,
    ) -> types.CallToolResult:
        """
        Call a tool, bounded by the server's configured timeout.

        Raises:
            ConnectionNotFoundError, ServerDisabledError, TransportError,
            CallTimeoutError.
        """
        connection = self._resolve(server_name, source)
        return await self._with_timeout(
            connection.session.call_tool(tool_name, arguments or {}),
            self._timeout_for(connection),
            f"callTool:{tool_name}",
        )

    async def read_resource(
        self,
        server_name: str,
        uri: str,
        source: Optional[ConfigSource] = None,
    ) -> types.ReadResourceResult:
        """Read a resource, bounded by the server's configured timeout."""
        connection = self._resolve(server_name, source)
        return await self._with_timeout(
            connection.session.read_resource(AnyUrl(uri)),
            self._timeout_for(connection),
            f"readResource:{uri}",
        )

    def _resolve(self, server_name: str, source: Optional[ConfigSource]) -> McpConnection:
        # Disabled servers have no live record, so ask the config first
        if self._disabled_in_config(server_name, source):
            raise ServerDisabledError(f"Server \"{server_name}\" is disabled")
        connection = self.factory.get_connection_by_server(server_name, source)
        if connection is None:
            raise ConnectionNotFoundError(f"Server not found: {server_name}")
        if connection.session is None or connection.server.status != "connected":
            raise TransportError(f"Server \"{server_name}\" is not connected")
        return connection

    def _config_entry(
        self, server_name: str, source: Optional[ConfigSource]
    ) -> tuple[Optional[ConfigSource], Any]:
        """First source (project shadows global) whose config file names the server, with its entry."""
        candidates: tuple[ConfigSource, ...] = (source,) if source else ("project", "global")
        for candidate in candidates:
            try:
                configs = self.config_manager.get_all_servers_from_config(candidate)
            except ConfigError:
                continue
            if server_name in configs:
                return candidate, configs[server_name]
        return None, None

    def _disabled_in_config(self, server_name: str, source: Optional[ConfigSource]) -> bool:
        _, raw = self._config_entry(server_name, source)
        return isinstance(raw, dict) and bool(raw.get("disabled"))

    def _source_for(self, server_name: str, source: Optional[ConfigSource]) -> ConfigSource:
        """The explicit source, else the live server's, else the file naming it, else global."""
        if source is not None:
            return source
        connection = self.factory.get_connection_by_server(server_name)
        if connection is not None:
            return connection.server.source
        found, _ = self._config_entry(server_name, None)
        return found or "global"

    def _timeout_for(self, connection: McpConnection) -> float:
        # Zero means "use the default"
        return connection.server.config_dict().get("timeout") or self.settings.default_timeout

    @staticmethod
    async def _with_timeout(awaitable: Awaitable, timeout: float, operation: str) -> Any:
        """Race ``awaitable`` against a timer without cancelling it on expiry."""
        task = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.add_done_callback(_consume_result)
            raise
        if task in done:
            return task.result()
        task.add_done_callback(_consume_result)
        raise CallTimeoutError(f"Operation \"{operation}\" timed out after {timeout:g}s")

    # ── Config mutation ───────────────────────────────────────────

    async def toggle_tool_always_allow(
        self,
        server_name: str,
        source: ConfigSource,
        tool_name: str,
        should_allow: bool,
    ) -> None:
        raw = self.config_manager.get_all_servers_from_config(source).get(server_name)
        if not isinstance(raw, dict):
            raise ConfigError(f"Server \"{server_name}\" not found in {source} MCP settings")

        always_allow = list(raw.get("alwaysAllow") or [])
        if should_allow and tool_name not in always_allow:
            always_allow.append(tool_name)
        elif not should_allow and tool_name in always_allow:
            always_allow.remove(tool_name)

        await self.config_manager.update_server_config(server_name, {"alwaysAllow": always_allow}, source)

    async def toggle_server_disabled(
        self,
        server_name: str,
        disabled: bool,
        source: Optional[ConfigSource] = None,
    ) -> None:
        await self.config_manager.update_server_config(
            server_name, {"disabled": disabled}, self._source_for(server_name, source)
        )

    async def update_server_timeout(
        self,
        server_name: str,
        timeout: float,
        source: Optional[ConfigSource] = None,
    ) -> None:
        """
        Raises:
            TimeoutRangeError if ``timeout`` is outside [0, 3600]; nothing is written.
        """
        if not MIN_TIMEOUT <= timeout <= MAX_TIMEOUT:
            raise TimeoutRangeError(
                f"Timeout must be between {MIN_TIMEOUT} and {MAX_TIMEOUT} seconds, got {timeout}"
            )
        await self.config_manager.update_server_config(
            server_name, {"timeout": timeout}, self._source_for(server_name, source)
        )

    async def delete_server(self, server_name: str, source: Optional[ConfigSource] = None) -> None:
        await self.config_manager.delete_server_config(server_name, self._source_for(server_name, source))

    async def restart_connection(self, server_name: str, source: Optional[ConfigSource] = None) -> None:
        await self.connection_manager.restart_connection(server_name, source)
        await self.notify_servers_changed()

    async def _on_config_change(self, event: ConfigChangeEvent) -> None:
        if self._disposed:
            return
        await self.connection_manager.update_server_connections(event.configs, event.source)
        await self.notify_servers_changed()

    # ── Observers ─────────────────────────────────────────────────

    def subscribe(self, observer: ServerListObserver) -> Callable[[], None]:
        """Receive the enriched server list after every change; returns an unsubscribe function."""
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def detach_host(self) -> None:
        """The host went away; later notifications skip it."""
        self._host = None

    async def notify_servers_changed(self) -> None:
        if self._disposed:
            return
        servers = self.get_all_servers()
        targets = list(self._observers)
        if self._host is not None:
            targets.insert(0, self._host)
        for target in targets:
            try:
                result = target(servers)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Server list observer failed: {e}")

    def _on_status_change(self, server: McpServer) -> None:
        if self._disposed:
            return
        if self._pending_notify is not None and not self._pending_notify.done():
            self._notify_dirty = True
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._pending_notify = loop.create_task(self._flush_notify())

    async def _flush_notify(self) -> None:
        # A burst of status changes becomes one broadcast
        while True:
            self._notify_dirty = False
            await asyncio.sleep(0)
            await self.notify_servers_changed()
            if not self._notify_dirty:
                return

    # ── Ownership ─────────────────────────────────────────────────

    def register_client(self) -> HubLease:
        with self._lease_lock:
            if self._disposed:
                raise McpHubError("MCP hub has been disposed")
            self._lease_count += 1
        return HubLease(self)

    async def unregister_client(self) -> None:
        with self._lease_lock:
            if self._lease_count == 0:
                return
            self._lease_count -= 1
            remaining = self._lease_count
        if remaining == 0:
            await self.dispose()

    @property
    def client_count(self) -> int:
        with self._lease_lock:
            return self._lease_count

    async def dispose(self) -> None:
        """
        Close every connection and watcher once no lease is outstanding.

        A second call is a no-op.
        """
        if self._disposed:
            logger.debug("MCP hub already disposed")
            return
        with self._lease_lock:
            active = self._lease_count
            if active == 0:
                self._disposed = True
        if active > 0:
            logger.info(f"Cannot dispose MCP hub, still has {active} active clients")
            return

        self._unsubscribe_config()
        pending = self._pending_notify
        if pending is not None and not pending.done():
            pending.cancel()

        try:
            self.config_manager.dispose()
        except Exception as e:
            logger.error(f"Failed to dispose config manager: {e}")
        try:
            await self.connection_manager.dispose()
        except Exception as e:
            logger.error(f"Failed to close MCP connections: {e}")
        self._file_watcher.dispose()

        self._observers.clear()
        self._host = None
        logger.info("MCP hub disposed")


def _consume_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Timed-out operation finished with error: {error}")


async def create_hub(
    settings: Optional[HubSettings] = None,
    host: Optional[ServerListObserver] = None,
    **overrides: Any,
) -> McpHub:
    """Build a hub from settings (or overrides) and start it."""
    hub = McpHub(settings or load_settings(**overrides), host=host)
    await hub.start()
    return hub
