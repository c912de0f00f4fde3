"""Tests for the helpers shared by transport handlers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mcphub.connection.base import (
    SessionRunner,
    append_error_message,
    close_connection,
    connect_timeout,
    describe_error,
    fetch_capabilities,
    mark_disconnected,
    notify_status,
    truncate_error,
)
from mcphub.errors import ConnectTimeoutError
from mcphub.types import MAX_ERROR_HISTORY, TRUNCATION_MARKER, McpConnection, McpServer


@pytest.fixture
def connection():
    return McpConnection(server=McpServer(name="files", config='{"command": "node"}'))


def test_truncate_error():
    assert truncate_error("short") == "short"

    truncated = truncate_error("x" * 1500)
    assert truncated == "x" * 1000 + TRUNCATION_MARKER


def test_error_history_is_bounded(connection):
    for i in range(150):
        append_error_message(connection, f"error {i}")

    history = connection.server.error_history
    assert len(history) == MAX_ERROR_HISTORY
    assert history[0].message == "error 50"
    assert history[-1].message == "error 149"
    assert connection.server.error == "error 149"


def test_error_history_entries_are_truncated(connection):
    append_error_message(connection, "y" * 5000, level="warn")

    entry = connection.server.error_history[0]
    assert entry.level == "warn"
    assert entry.message.endswith(TRUNCATION_MARKER)
    assert len(entry.message) == 1000 + len(TRUNCATION_MARKER)
    assert entry.timestamp > 0


def test_describe_error_unwraps_groups():
    group = ExceptionGroup("unhandled errors in a TaskGroup", [ConnectionError("refused")])
    assert describe_error(group) == "refused"


def test_describe_error_empty_message():
    assert describe_error(EOFError()) == "EOFError: Connection closed or timed out"


def test_notify_status_swallows_callback_errors(connection):
    callback = MagicMock(side_effect=RuntimeError("observer broke"))

    notify_status(callback, connection.server)

    callback.assert_called_once_with(connection.server)


def test_mark_disconnected(connection):
    seen = []
    connection.server.status = "connected"

    mark_disconnected(connection, "Process exited with code 1", lambda s: seen.append(s.status))

    assert connection.server.status == "disconnected"
    assert connection.server.error == "Process exited with code 1"
    assert seen == ["disconnected"]


@pytest.mark.asyncio
async def test_fetch_capabilities_is_best_effort(connection, fake_session_cls):
    connection.session = fake_session_cls(tool_names=["echo"])

    await fetch_capabilities(connection)

    assert [t.name for t in connection.server.tools] == ["echo"]
    assert connection.server.tools[0].always_allow is False
    # list_resources fails on the fake session
    assert connection.server.resources == []
    assert connection.server.resource_templates == []


@pytest.mark.asyncio
async def test_close_connection_closes_transport_even_if_session_fails(connection):
    runner = MagicMock()
    runner.close_session = AsyncMock(side_effect=RuntimeError("session close failed"))
    runner.close_transport = AsyncMock()
    connection.runner = runner

    await close_connection(connection)

    runner.close_transport.assert_awaited_once()


@pytest.mark.asyncio
async def test_close_connection_swallows_transport_errors(connection):
    runner = MagicMock()
    runner.close_session = AsyncMock()
    runner.close_transport = AsyncMock(side_effect=OSError("pipe closed"))
    connection.runner = runner

    await close_connection(connection)

    runner.close_session.assert_awaited_once()


@pytest.mark.asyncio
async def test_close_connection_without_runner(connection):
    await close_connection(connection)


class _HangingTransport:
    async def __aenter__(self):
        await asyncio.sleep(10)

    async def __aexit__(self, *exc):
        return False


class _FailingTransport:
    async def __aenter__(self):
        raise ConnectionError("refused")

    async def __aexit__(self, *exc):
        return False


@pytest.mark.asyncio
async def test_session_runner_connect_timeout():
    runner = SessionRunner("slow", _HangingTransport)

    with pytest.raises(ConnectTimeoutError, match="timed out after 0.1s"):
        await runner.start(timeout=0.1)

    assert not runner.running


@pytest.mark.asyncio
async def test_session_runner_transport_failure():
    runner = SessionRunner("down", _FailingTransport)

    with pytest.raises(ConnectionError, match="refused"):
        await runner.start(timeout=1)

    assert not runner.running


@pytest.mark.asyncio
async def test_session_runner_fail_from_outside():
    runner = SessionRunner("exiting", _HangingTransport)

    async def _fail_soon():
        await asyncio.sleep(0.05)
        assert runner.fail(ConnectionError("Process exited with code 2"))

    failer = asyncio.create_task(_fail_soon())
    with pytest.raises(ConnectionError, match="code 2"):
        await runner.start(timeout=5)
    await failer

    assert runner.fail(ConnectionError("again")) is False


def test_connect_timeout():
    assert connect_timeout(15, 60) == 15
    # Zero means "use the default"
    assert connect_timeout(0, 60) == 60
    assert connect_timeout(None, 60) == 60
    assert connect_timeout(3600, 60, cap=120) == 120
    assert connect_timeout(None, 60, cap=30) == 30
