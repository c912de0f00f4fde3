"""Tests for server config validation."""

import os

import pytest

from mcphub.config.schema import SseServerConfig, StdioServerConfig, StreamableHttpServerConfig
from mcphub.config.validation import (
    TYPE_ERROR_MESSAGE,
    safe_parse_server_config,
    validate_server_config,
)
from mcphub.errors import ConfigValidationError


def test_command_is_stdio():
    config = validate_server_config({"command": "node", "args": ["server.js"]}, default_cwd="/work")

    assert isinstance(config, StdioServerConfig)
    assert config.type == "stdio"
    assert config.args == ["server.js"]
    assert config.cwd == "/work"


def test_stdio_cwd_falls_back_to_process_cwd():
    config = validate_server_config({"command": "node"})
    assert config.cwd == os.getcwd()


def test_explicit_cwd_is_kept():
    config = validate_server_config({"command": "node", "cwd": "/srv"}, default_cwd="/work")
    assert config.cwd == "/srv"


def test_url_is_sse():
    config = validate_server_config({"url": "https://example.com/sse", "headers": {"X-Key": "1"}})

    assert isinstance(config, SseServerConfig)
    assert config.type == "sse"
    assert config.headers == {"X-Key": "1"}


def test_streamable_http_requires_declared_type():
    config = validate_server_config(
        {"type": "streamable-http", "url": "http://localhost:8000/mcp", "sessionId": "abc"}
    )

    assert isinstance(config, StreamableHttpServerConfig)
    assert config.session_id == "abc"


def test_type_contradicting_shape_fails():
    config, errors = safe_parse_server_config({"type": "sse", "command": "node"})

    assert config is None
    assert ("type", TYPE_ERROR_MESSAGE) in errors


def test_url_with_stdio_type_fails():
    config, errors = safe_parse_server_config({"type": "stdio", "url": "http://localhost"})

    assert config is None
    assert errors[0][1] == TYPE_ERROR_MESSAGE


def test_command_and_url_together_fail():
    config, errors = safe_parse_server_config({"command": "node", "url": "http://localhost"})

    assert config is None
    assert any(path == "url" for path, _ in errors)


def test_neither_command_nor_url_fails():
    config, errors = safe_parse_server_config({"args": ["x"]})

    assert config is None
    assert "command" in errors[0][1]


def test_declared_type_reports_missing_field():
    config, errors = safe_parse_server_config({"type": "sse"})

    assert config is None
    assert any(path == "url" for path, _ in errors)


def test_invalid_url():
    config, errors = safe_parse_server_config({"url": "not a url"})

    assert config is None
    assert ("url", "URL must be a valid URL format") in errors


def test_blank_command():
    config, errors = safe_parse_server_config({"command": "   "})

    assert config is None
    assert ("command", "Command cannot be empty") in errors


@pytest.mark.parametrize("timeout", [-1, 3601])
def test_timeout_out_of_range(timeout):
    config, errors = safe_parse_server_config({"command": "node", "timeout": timeout})

    assert config is None
    assert errors[0][0] == "timeout"


def test_non_object_config():
    config, errors = safe_parse_server_config(["node"])

    assert config is None
    assert errors == [("", "Server configuration must be an object")]


def test_validate_raises_with_field_messages():
    with pytest.raises(ConfigValidationError) as exc_info:
        validate_server_config({"url": "ftp://example.com"})

    assert str(exc_info.value).startswith("Invalid MCP server configuration: ")
    assert "url: URL must be a valid URL format" in str(exc_info.value)
    assert exc_info.value.errors == [("url", "URL must be a valid URL format")]


def test_camel_case_round_trip():
    raw = {"command": "node", "alwaysAllow": ["echo"], "watchPaths": ["/tmp/x"], "timeout": 30}
    config = validate_server_config(raw, default_cwd="/work")

    assert config.always_allow == ["echo"]
    assert config.watch_paths == ["/tmp/x"]

    dumped = config.to_dict()
    assert dumped["alwaysAllow"] == ["echo"]
    assert dumped["watchPaths"] == ["/tmp/x"]
    assert "url" not in dumped
    assert "disabled" not in dumped
