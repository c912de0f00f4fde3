"""Behaviour shared by every transport handler.

Handlers compose these free functions and the ``SessionRunner`` rather
than inheriting from a common base class.
"""

from __future__ import annotations

import asyncio
from contextlib import AbstractAsyncContextManager
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from mcp import ClientSession, types

from mcphub.errors import ConnectTimeoutError
from mcphub.types import (
    MAX_ERROR_HISTORY,
    MAX_ERROR_LENGTH,
    TRUNCATION_MARKER,
    ErrorEntry,
    ErrorLevel,
    McpConnection,
    McpResource,
    McpResourceTemplate,
    McpServer,
    McpTool,
)

StatusCallback = Callable[[McpServer], None]
TransportOpener = Callable[[], AbstractAsyncContextManager]
MessageHandler = Callable[[Any], Awaitable[None]]
LoggingCallback = Callable[[types.LoggingMessageNotificationParams], Awaitable[None]]


# ── Status and error bookkeeping ──────────────────────────────────


def unwrap_error(error: BaseException) -> BaseException:
    """First leaf of a task-group exception group."""
    while isinstance(error, BaseExceptionGroup) and error.exceptions:
        error = error.exceptions[0]
    return error


def describe_error(error: BaseException) -> str:
    """Human-readable message, unwrapping task-group exception groups."""
    error = unwrap_error(error)
    message = str(error)
    return message if message else f"{type(error).__name__}: Connection closed or timed out"


def truncate_error(message: str) -> str:
    if len(message) > MAX_ERROR_LENGTH:
        return message[:MAX_ERROR_LENGTH] + TRUNCATION_MARKER
    return message


def append_error_message(connection: McpConnection, error: str, level: ErrorLevel = "error") -> None:
    """Record ``error`` as the current error and append it to the bounded history."""
    server = connection.server
    truncated = truncate_error(error)
    server.error_history.append(ErrorEntry(message=truncated, level=level))
    if len(server.error_history) > MAX_ERROR_HISTORY:
        del server.error_history[:-MAX_ERROR_HISTORY]
    server.error = truncated


def notify_status(on_status_change: Optional[StatusCallback], server: McpServer) -> None:
    if on_status_change is None:
        return
    try:
        on_status_change(server)
    except Exception as e:
        logger.error(f"[{server.name}] status change callback failed: {e}")


def mark_disconnected(
    connection: McpConnection,
    error: Optional[str],
    on_status_change: Optional[StatusCallback],
) -> None:
    connection.server.status = "disconnected"
    if error:
        append_error_message(connection, error)
    notify_status(on_status_change, connection.server)


# ── Capability fetching (each list is best-effort) ────────────────


async def fetch_tools_list(connection: McpConnection) -> list[McpTool]:
    try:
        result = await connection.session.list_tools()
        return [
            McpTool(
                name=tool.name,
                description=tool.description,
                input_schema=tool.inputSchema,
                always_allow=False,
            )
            for tool in result.tools
        ]
    except Exception as e:
        logger.debug(f"Failed to fetch tools list for {connection.server.name}: {e}")
        return []


async def fetch_resources_list(connection: McpConnection) -> list[McpResource]:
    try:
        result = await connection.session.list_resources()
        return [
            McpResource(
                uri=str(resource.uri),
                name=resource.name,
                mime_type=resource.mimeType,
                description=resource.description,
            )
            for resource in result.resources
        ]
    except Exception as e:
        logger.debug(f"Failed to fetch resources list for {connection.server.name}: {e}")
        return []


async def fetch_resource_templates_list(connection: McpConnection) -> list[McpResourceTemplate]:
    try:
        result = await connection.session.list_resource_templates()
        return [
            McpResourceTemplate(
                uri_template=template.uriTemplate,
                name=template.name,
                description=template.description,
                mime_type=template.mimeType,
            )
            for template in result.resourceTemplates
        ]
    except Exception as e:
        logger.debug(f"Failed to fetch resource templates list for {connection.server.name}: {e}")
        return []


async def fetch_capabilities(connection: McpConnection) -> None:
    connection.server.tools = await fetch_tools_list(connection)
    connection.server.resources = await fetch_resources_list(connection)
    connection.server.resource_templates = await fetch_resource_templates_list(connection)


# ── Cleanup ───────────────────────────────────────────────────────


async def close_connection(connection: McpConnection) -> None:
    """Close the session and the transport independently; never raises."""
    runner = connection.runner
    if runner is None:
        return

    try:
        await runner.close_session()
    except Exception as e:
        logger.error(f"Error disconnecting client for {connection.server.name}: {e}")

    try:
        await runner.close_transport()
    except Exception as e:
        logger.error(f"Error closing transport for {connection.server.name}: {e}")


# ── Session runner ────────────────────────────────────────────────


def connect_timeout(
    configured: Optional[float],
    default: float,
    cap: Optional[float] = None,
) -> float:
    """Handshake deadline: the server's timeout (0 means default), at most ``cap``."""
    timeout = configured or default
    if cap is not None:
        timeout = min(timeout, cap)
    return timeout


class SessionRunner:
    """
    Owns one transport and its ``ClientSession`` inside a dedicated task.

    The MCP SDK's transports are anyio task-group context managers that
    must be exited by the task that entered them, so the runner task enters
    both, signals readiness, and then parks until asked to close.

    Usage::

        runner = SessionRunner("files", lambda: sse_client(url), client_info=info)
        session = await runner.start(timeout=60)
        ...
        await runner.close_session()
        await runner.close_transport()
    """

    def __init__(
        self,
        name: str,
        open_transport: TransportOpener,
        *,
        client_info: Optional[types.Implementation] = None,
        message_handler: Optional[MessageHandler] = None,
        logging_callback: Optional[LoggingCallback] = None,
        on_lost: Optional[Callable[[Optional[BaseException]], None]] = None,
        close_timeout: float = 5.0,
    ):
        self.name = name
        self._open_transport = open_transport
        self._client_info = client_info
        self._message_handler = message_handler
        self._logging_callback = logging_callback
        self._on_lost = on_lost
        self._close_timeout = close_timeout

        self.session: Optional[ClientSession] = None
        self.extras: tuple = ()

        self._ready: Optional[asyncio.Future] = None
        self._task: Optional[asyncio.Task] = None
        self._session_released = asyncio.Event()
        self._session_exited = asyncio.Event()
        self._transport_released = asyncio.Event()
        self._closing = False

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, timeout: float) -> ClientSession:
        """
        Open the transport and complete the protocol handshake.

        Raises:
            ConnectTimeoutError if the handshake does not finish in time;
            whatever the transport raised if it failed first.
        """
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._task = asyncio.create_task(self._run(), name=f"mcp-session-{self.name}")

        try:
            return await asyncio.wait_for(asyncio.shield(self._ready), timeout)
        except asyncio.TimeoutError as e:
            await self.abort()
            raise ConnectTimeoutError(
                f"Connection to server \"{self.name}\" timed out after {timeout:g}s"
            ) from e
        except BaseException:
            await self.abort()
            raise

    def fail(self, error: BaseException) -> bool:
        """Fail a pending handshake from outside the runner. Returns False once connected."""
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
            return True
        return False

    async def _run(self) -> None:
        lost: Optional[BaseException] = None
        try:
            async with self._open_transport() as streams:
                read_stream, write_stream = streams[0], streams[1]
                self.extras = tuple(streams[2:])
                try:
                    async with ClientSession(
                        read_stream,
                        write_stream,
                        message_handler=self._message_handler,
                        logging_callback=self._logging_callback,
                        client_info=self._client_info,
                    ) as session:
                        await session.initialize()
                        self.session = session
                        if self._ready.done():
                            # Handshake was abandoned (failed from outside)
                            return
                        self._ready.set_result(session)
                        await self._session_released.wait()
                finally:
                    self._session_exited.set()
                await self._transport_released.wait()
        except Exception as e:
            if self._ready is not None and not self._ready.done():
                self._ready.set_exception(e)
                return
            lost = e
        finally:
            self._session_exited.set()
            self.session = None

        if not self._closing and self._on_lost is not None:
            self._on_lost(lost)

    async def close_session(self) -> None:
        self._closing = True
        self._session_released.set()
        if not self.running:
            return
        await asyncio.wait_for(self._session_exited.wait(), self._close_timeout)

    async def close_transport(self) -> None:
        self._closing = True
        self._session_released.set()
        self._transport_released.set()
        if not self.running:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.name}] transport did not close in {self._close_timeout:g}s, cancelling")
            await self.abort()

    async def abort(self) -> None:
        """Cancel the runner task outright."""
        self._closing = True
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"[{self.name}] runner ended with error during abort: {e}")


# ── Server logs ───────────────────────────────────────────────────


def server_logging_callback(name: str) -> LoggingCallback:
    """Forward a server's log notifications to loguru at a matching level."""

    levels = {
        "debug": "DEBUG",
        "info": "INFO",
        "notice": "INFO",
        "warning": "WARNING",
    }

    async def _log(params: types.LoggingMessageNotificationParams) -> None:
        level = levels.get(params.level, "ERROR")
        logger.log(level, f"[{name}] {params.logger or 'server'}: {params.data}")

    return _log
