"""Test configuration and shared fixtures."""

import asyncio
import json
import sys
from pathlib import Path

import pytest
from mcp import types

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from mcphub.config.schema import HubSettings  # noqa: E402
from mcphub.connection.base import append_error_message, fetch_capabilities, notify_status  # noqa: E402
from mcphub.types import McpConnection, McpServer  # noqa: E402


class FakeSession:
    """Stands in for mcp.ClientSession; resource listing is unsupported."""

    def __init__(self, tool_names=("echo", "search"), delay: float = 0.0):
        self.tool_names = list(tool_names)
        self.delay = delay
        self.calls = []

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if self.delay:
            await asyncio.sleep(self.delay)
        return types.CallToolResult(content=[types.TextContent(type="text", text=f"{name} ok")])

    async def read_resource(self, uri):
        if self.delay:
            await asyncio.sleep(self.delay)
        return types.ReadResourceResult(
            contents=[types.TextResourceContents(uri=uri, text="hello", mimeType="text/plain")]
        )

    async def list_tools(self):
        return types.ListToolsResult(
            tools=[types.Tool(name=n, inputSchema={"type": "object"}) for n in self.tool_names]
        )

    async def list_resources(self):
        raise RuntimeError("Method not found")

    async def list_resource_templates(self):
        return types.ListResourceTemplatesResult(resourceTemplates=[])


class FakeHandler:
    """In-process handler that records every create and close."""

    def __init__(self, supported=("stdio", "sse", "streamable-http"), fail=False, session_factory=FakeSession):
        self.supported = set(supported)
        self.fail = fail
        self.session_factory = session_factory
        self.created = []
        self.closed = []

    def supports(self, type):
        return type in self.supported

    async def create_connection(self, name, config, source, on_status_change=None):
        connection = McpConnection(
            server=McpServer(
                name=name,
                config=config.model_dump_json(by_alias=True, exclude_none=True),
                status="connecting",
                disabled=bool(config.disabled),
                source=source,
            )
        )
        notify_status(on_status_change, connection.server)
        self.created.append((name, source))

        if self.fail:
            connection.server.status = "disconnected"
            append_error_message(connection, "Connection refused")
        else:
            connection.session = self.session_factory()
            connection.server.status = "connected"
            await fetch_capabilities(connection)

        notify_status(on_status_change, connection.server)
        return connection

    async def close_connection(self, connection):
        self.closed.append((connection.server.name, connection.server.source))


@pytest.fixture(scope="session")
def project_path():
    """Return the project root path."""
    return Path(__file__).parent.parent


@pytest.fixture
def fake_handler():
    return FakeHandler()


@pytest.fixture
def fake_handler_cls():
    return FakeHandler


@pytest.fixture
def fake_session_cls():
    return FakeSession


@pytest.fixture
def settings(tmp_path):
    """Hub settings rooted in a temporary directory, with file watching off."""
    return HubSettings(
        settings_dir=tmp_path / "global",
        project_root=tmp_path / "project",
        watch_files=False,
    )


@pytest.fixture
def write_config():
    """Write an ``mcpServers`` document and return its path."""

    def _write(path: Path, servers: dict) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"mcpServers": servers}, indent=2), encoding="utf-8")
        return path

    return _write
