"""SSE connection handler."""

from __future__ import annotations

from typing import Optional

from loguru import logger
from mcp import types
from mcp.client.sse import sse_client

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
from mcphub.connection.http import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_SSE_READ_TIMEOUT,
    create_http_client,
    has_credentials,
)
from mcphub.types import ConfigSource, McpConnection, McpServer


class SseHandler:
    """
    Connects to servers over a persistent Server-Sent-Events stream.

    A dropped stream marks the connection disconnected; reconnecting is
    left to an explicit restart, a config change or a watched file change.
    """

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
        return type == "sse"

    async def create_connection(
        self,
        name: str,
        config: ServerConfig,
        source: ConfigSource,
        on_status_change: Optional[StatusCallback] = None,
    ) -> McpConnection:
        url = getattr(config, "url", None)
        if not url:
            raise ValueError(f"Server \"{name}\" of type \"sse\" must have a \"url\" property")

        headers = dict(config.headers or {})
        with_credentials = has_credentials(headers)
        logger.debug(f"[{name}] opening SSE stream to {url} (credentials: {with_credentials})")

        connection = McpConnection(
            server=McpServer(
                name=name,
                config=config.model_dump_json(by_alias=True, exclude_none=True),
                status="connecting",
                disabled=bool(config.disabled),
                source=source,
            )
        )

        def _open():
            return sse_client(
                url,
                headers=headers,
                timeout=DEFAULT_HTTP_TIMEOUT,
                sse_read_timeout=DEFAULT_SSE_READ_TIMEOUT,
                httpx_client_factory=create_http_client,
            )

        def _on_lost(error: Optional[BaseException]) -> None:
            if error is not None:
                logger.error(f"[{name}] transport error: {describe_error(error)}")
            mark_disconnected(connection, describe_error(error) if error else None, on_status_change)

        async def _on_message(message) -> None:
            if isinstance(message, Exception):
                # The stream is gone; no automatic reconnect
                logger.error(f"[{name}] transport error: {describe_error(message)}")
                mark_disconnected(connection, describe_error(message), on_status_change)

        runner = SessionRunner(
            name,
            _open,
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
            logger.error(f"[{name}] failed to connect: {describe_error(e)}")
            connection.server.status = "disconnected"
            append_error_message(connection, describe_error(e))
            notify_status(on_status_change, connection.server)

        return connection

    async def close_connection(self, connection: McpConnection) -> None:
        await close_connection(connection)
