"""Streamable HTTP connection handler."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Optional

import httpx
from loguru import logger
from mcp import types
from mcp.client.streamable_http import streamablehttp_client

from mcphub.config.schema import DEFAULT_TIMEOUT, ServerConfig
from mcphub.connection.base import (
    SessionRunner,
    StatusCallback,
    append_error_message,
    close_connection,
    connect_timeout,
    describe_error,
    fetch_capabilities,
    fetch_resources_list,
    mark_disconnected,
    notify_status,
    server_logging_callback,
    unwrap_error,
)
from mcphub.connection.http import create_http_client
from mcphub.errors import McpTimeoutError
from mcphub.types import ConfigSource, McpConnection, McpServer

SESSION_ID_HEADER = "mcp-session-id"


@dataclass
class ReconnectionPolicy:
    """Bounded retries with growing delay, applied to connection establishment."""

    initial_delay: float = 1.0
    max_delay: float = 30.0
    growth_factor: float = 1.5
    max_retries: int = 2

    def delay(self, attempt: int) -> float:
        return min(self.initial_delay * (self.growth_factor ** attempt), self.max_delay)


def is_retryable(error: BaseException) -> bool:
    """Network failures and 5xx responses are worth another attempt."""
    error = unwrap_error(error)
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return isinstance(error, (httpx.TransportError, ConnectionError))


class StreamableHttpHandler:
    """
    Connects to servers over the streamable HTTP transport.

    Any session id the server issues is written back into the record's
    stored config, so a restart from that config resumes the session.
    """

    def __init__(
        self,
        client_info: Optional[types.Implementation] = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        close_timeout: float = 5.0,
        connect_timeout_cap: Optional[float] = None,
        reconnection: Optional[ReconnectionPolicy] = None,
    ):
        self._client_info = client_info
        self._default_timeout = default_timeout
        self._close_timeout = close_timeout
        self._connect_timeout_cap = connect_timeout_cap
        self._reconnection = reconnection or ReconnectionPolicy()
        self._background: set[asyncio.Task] = set()

    def supports(self, type: str) -> bool:
        return type == "streamable-http"

    async def create_connection(
        self,
        name: str,
        config: ServerConfig,
        source: ConfigSource,
        on_status_change: Optional[StatusCallback] = None,
    ) -> McpConnection:
        url = getattr(config, "url", None)
        if not url:
            raise ValueError(f"Server \"{name}\" of type \"streamable-http\" must have a \"url\" property")

        headers = dict(config.headers or {})
        session_id = getattr(config, "session_id", None)
        if session_id:
            headers[SESSION_ID_HEADER] = session_id

        connection = McpConnection(
            server=McpServer(
                name=name,
                config=config.model_dump_json(by_alias=True, exclude_none=True),
                status="connecting",
                disabled=bool(config.disabled),
                source=source,
            )
        )

        async def _refresh_resources() -> None:
            connection.server.resources = await fetch_resources_list(connection)
            notify_status(on_status_change, connection.server)

        async def _on_message(message) -> None:
            if isinstance(message, Exception):
                logger.error(f"[{name}] transport error: {describe_error(message)}")
                return
            if isinstance(message, types.ServerNotification) and isinstance(
                message.root, types.ResourceListChangedNotification
            ):
                logger.debug(f"[{name}] resource list changed, refetching")
                # Requests cannot be awaited from inside the session's receive loop
                task = asyncio.create_task(_refresh_resources())
                self._background.add(task)
                task.add_done_callback(self._background.discard)

        def _on_lost(error: Optional[BaseException]) -> None:
            if error is not None:
                logger.error(f"[{name}] transport error: {describe_error(error)}")
            mark_disconnected(connection, describe_error(error) if error else None, on_status_change)

        def _new_runner() -> SessionRunner:
            return SessionRunner(
                name,
                lambda: streamablehttp_client(url, headers=headers, httpx_client_factory=create_http_client),
                client_info=self._client_info,
                message_handler=_on_message,
                logging_callback=server_logging_callback(name),
                on_lost=_on_lost,
                close_timeout=self._close_timeout,
            )

        notify_status(on_status_change, connection.server)

        timeout = connect_timeout(config.timeout, self._default_timeout, self._connect_timeout_cap)
        policy = self._reconnection
        try:
            for attempt in range(policy.max_retries + 1):
                runner = _new_runner()
                connection.runner = runner
                try:
                    connection.session = await runner.start(timeout)
                    break
                except McpTimeoutError:
                    raise
                except Exception as e:
                    if attempt >= policy.max_retries or not is_retryable(e):
                        raise
                    delay = policy.delay(attempt)
                    logger.warning(
                        f"[{name}] connect attempt {attempt + 1}/{policy.max_retries + 1} failed: "
                        f"{describe_error(e)}, retrying in {delay:g}s"
                    )
                    await asyncio.sleep(delay)

            self._store_session_id(connection)
            connection.server.status = "connected"
            notify_status(on_status_change, connection.server)
            await fetch_capabilities(connection)
        except Exception as e:
            logger.error(f"[{name}] failed to connect: {describe_error(e)}")
            connection.server.status = "disconnected"
            append_error_message(connection, describe_error(e))
            notify_status(on_status_change, connection.server)

        return connection

    async def close_connection(self, connection: McpConnection) -> None:
        await close_connection(connection)

    @staticmethod
    def _store_session_id(connection: McpConnection) -> None:
        runner = connection.runner
        get_session_id = runner.extras[0] if runner and runner.extras else None
        if not callable(get_session_id):
            return
        session_id = get_session_id()
        if not session_id:
            return
        stored = connection.server.config_dict()
        if stored.get("sessionId") != session_id:
            stored["sessionId"] = session_id
            connection.server.config = json.dumps(stored)
            logger.debug(f"[{connection.server.name}] stored session id {session_id}")
