"""Stdio connection handler.

Launches the server as a local subprocess and speaks the protocol over its
stdin/stdout pipes. Stderr is captured from the moment the process starts,
because output emitted before the handshake completes is often the only
clue when the handshake fails.

The transport is built here on ``asyncio.create_subprocess_exec`` rather
than taken from ``mcp.client.stdio.stdio_client``. The SDK client hands
stderr to a file object and hides the process, so it offers neither the
early stderr lines nor the exit code; both end up in the error recorded
for a failed handshake. The price is owning the line framing and the
terminate/kill sequence on close.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

import anyio
from loguru import logger
from mcp import types
from mcp.shared.message import SessionMessage

from mcphub.config.loader import inject_env
from mcphub.config.schema import DEFAULT_TIMEOUT, ServerConfig
from mcphub.connection.base import (
    SessionRunner,
    StatusCallback,
    append_error_message,
    close_connection,
    connect_timeout,
    describe_error,
    fetch_capabilities,
    mark_disconnected,
    notify_status,
    server_logging_callback,
)
from mcphub.errors import TransportError
from mcphub.types import ConfigSource, McpConnection, McpServer

STDOUT_BUFFER_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_LINES = 20
TERMINATE_GRACE_SECONDS = 2.0

_INFO_PATTERN = re.compile(r"INFO", re.IGNORECASE)


@dataclass
class StdioParameters:
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None


def build_environment(explicit: Optional[dict[str, str]]) -> dict[str, str]:
    """Explicit variables (placeholders resolved) plus the invoking PATH."""
    env: dict[str, str] = {}
    path = os.environ.get("PATH")
    if path:
        env["PATH"] = path
    if explicit:
        env.update(inject_env(explicit))
    return env


async def terminate_process(name: str, process: asyncio.subprocess.Process) -> None:
    """Terminate gracefully, falling back to kill."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
        await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"[{name}] process did not terminate gracefully, killing")
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
    except ProcessLookupError:
        pass


async def _pump_stderr(
    name: str,
    stream: asyncio.StreamReader,
    tail: deque,
) -> None:
    while True:
        chunk = await stream.readline()
        if not chunk:
            return
        line = chunk.decode("utf-8", errors="replace").rstrip()
        if not line:
            continue
        tail.append(line)
        if _INFO_PATTERN.search(line):
            logger.info(f"Server \"{name}\" info: {line}")
        else:
            logger.error(f"Server \"{name}\" stderr: {line}")


async def _read_stdout(
    name: str,
    stream: asyncio.StreamReader,
    sink: anyio.abc.ObjectSendStream,
) -> None:
    async with sink:
        while True:
            chunk = await stream.readline()
            if not chunk:
                return
            line = chunk.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                message = types.JSONRPCMessage.model_validate_json(line)
            except Exception as e:
                logger.debug(f"[{name}] unparseable stdout line: {line[:200]}")
                await sink.send(e)
                continue
            await sink.send(SessionMessage(message))


async def _write_stdin(
    process: asyncio.subprocess.Process,
    source: anyio.abc.ObjectReceiveStream,
) -> None:
    async with source:
        async for session_message in source:
            payload = session_message.message.model_dump_json(by_alias=True, exclude_none=True)
            process.stdin.write((payload + "\n").encode("utf-8"))
            await process.stdin.drain()


class StdioTransport:
    """Handle on the running subprocess, exposed as the transport's extra."""

    def __init__(self, name: str):
        self.name = name
        self.process: Optional[asyncio.subprocess.Process] = None
        self.stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self.terminating = False

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    def stderr_excerpt(self) -> str:
        return "\n".join(self.stderr_tail)


@asynccontextmanager
async def open_stdio_transport(
    name: str,
    params: StdioParameters,
    on_exit: Optional[Callable[[Optional[int]], None]] = None,
) -> AsyncIterator[tuple]:
    """
    Launch the subprocess and yield ``(read_stream, write_stream, transport)``.

    ``on_exit`` fires with the exit code when the process ends on its own,
    not when this context terminates it.
    """
    transport = StdioTransport(name)
    process = await asyncio.create_subprocess_exec(
        params.command,
        *params.args,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=params.env,
        cwd=params.cwd,
        limit=STDOUT_BUFFER_LIMIT,
    )
    transport.process = process
    logger.debug(f"[{name}] started process {params.command} (pid {process.pid})")

    # Stderr is pumped before anything else touches the process
    stderr_task = asyncio.create_task(_pump_stderr(name, process.stderr, transport.stderr_tail))

    read_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_reader = anyio.create_memory_object_stream(0)

    stdout_task = asyncio.create_task(_read_stdout(name, process.stdout, read_writer))
    stdin_task = asyncio.create_task(_write_stdin(process, write_reader))

    async def _watch_exit() -> None:
        code = await process.wait()
        # Let the stderr pump drain so the excerpt is complete
        try:
            await asyncio.wait_for(asyncio.shield(stderr_task), timeout=0.5)
        except (asyncio.TimeoutError, Exception):
            pass
        if not transport.terminating and on_exit is not None:
            on_exit(code)

    exit_task = asyncio.create_task(_watch_exit())

    try:
        yield read_stream, write_stream, transport
    finally:
        transport.terminating = True
        for stream in (read_stream, write_stream):
            await stream.aclose()
        if process.stdin and not process.stdin.is_closing():
            process.stdin.close()
        await terminate_process(name, process)
        # Drain what the process wrote to stderr before it went away
        await asyncio.wait({stderr_task}, timeout=0.5)
        for task in (stdin_task, stdout_task, exit_task, stderr_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(stdin_task, stdout_task, exit_task, stderr_task, return_exceptions=True)


class StdioHandler:
    """Creates and manages MCP connections over a subprocess's stdio."""

    def __init__(
        self,
        client_info: Optional[types.Implementation] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        close_timeout: float = 5.0,
        connect_timeout_cap: Optional[float] = None,
    ):
        self._client_info = client_info
        self._default_timeout = default_timeout
        self._close_timeout = close_timeout
        self._connect_timeout_cap = connect_timeout_cap

    def supports(self, type: str) -> bool:
        return type == "stdio"

    async def create_connection(
        self,
        name: str,
        config: ServerConfig,
        source: ConfigSource,
        on_status_change: Optional[StatusCallback] = None,
    ) -> McpConnection:
        command = getattr(config, "command", None)
        if not command:
            raise ValueError(f"Server \"{name}\" of type \"stdio\" must have a \"command\" property")

        params = StdioParameters(
            command=command,
            args=list(config.args or []),
            env=build_environment(config.env),
            cwd=config.cwd,
        )

        connection = McpConnection(
            server=McpServer(
                name=name,
                config=config.model_dump_json(by_alias=True, exclude_none=True),
                status="connecting",
                disabled=bool(config.disabled),
                source=source,
            )
        )

        def _on_exit(code: Optional[int]) -> None:
            message = f"Process exited with code {code}" if code else None
            runner = connection.runner
            if runner is None or runner.closing:
                return
            if runner.fail(TransportError(message or "Process exited")):
                return
            if connection.server.status != "connected":
                # A failed handshake is reported by create_connection
                return
            logger.info(f"[{name}] transport closed with code {code}")
            mark_disconnected(connection, message, on_status_change)

        def _on_lost(error: Optional[BaseException]) -> None:
            if error is not None:
                logger.error(f"[{name}] transport error: {describe_error(error)}")
            mark_disconnected(connection, describe_error(error) if error else None, on_status_change)

        async def _on_message(message) -> None:
            if isinstance(message, Exception):
                logger.error(f"[{name}] transport error: {describe_error(message)}")

        runner = SessionRunner(
            name,
            lambda: open_stdio_transport(name, params, on_exit=_on_exit),
            client_info=self._client_info,
            message_handler=_on_message,
            logging_callback=server_logging_callback(name),
            on_lost=_on_lost,
            close_timeout=self._close_timeout,
        )
        connection.runner = runner

        notify_status(on_status_change, connection.server)

        try:
            connection.session = await runner.start(
                connect_timeout(config.timeout, self._default_timeout, self._connect_timeout_cap)
            )
            connection.server.status = "connected"
            notify_status(on_status_change, connection.server)
            await fetch_capabilities(connection)
        except Exception as e:
            message = describe_error(e)
            transport = runner.extras[0] if runner.extras else None
            if isinstance(transport, StdioTransport):
                code = transport.returncode
                # Negative codes are signals, usually our own terminate
                if code and code > 0 and f"code {code}" not in message:
                    message = f"Process exited with code {code}: {message}"
                if transport.stderr_tail:
                    message = f"{message}\n{transport.stderr_excerpt()}"
            connection.server.status = "disconnected"
            append_error_message(connection, message)
            notify_status(on_status_change, connection.server)

        return connection

    async def close_connection(self, connection: McpConnection) -> None:
        await close_connection(connection)
