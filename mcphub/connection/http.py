"""HTTP client construction for the SSE and streamable-HTTP transports."""

from typing import Optional

import httpx

DEFAULT_HTTP_TIMEOUT = 30.0
DEFAULT_SSE_READ_TIMEOUT = 300.0


def create_http_client(
    headers: Optional[dict[str, str]] = None,
    timeout: Optional[httpx.Timeout] = None,
    auth: Optional[httpx.Auth] = None,
) -> httpx.AsyncClient:
    """httpx client factory handed to the MCP SDK transports."""
    return httpx.AsyncClient(
        headers=headers,
        timeout=timeout or httpx.Timeout(DEFAULT_HTTP_TIMEOUT, read=DEFAULT_SSE_READ_TIMEOUT),
        auth=auth,
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        follow_redirects=True,
    )


def has_credentials(headers: Optional[dict[str, str]]) -> bool:
    """Whether the configured headers carry an Authorization header."""
    return any(key.lower() == "authorization" for key in (headers or {}))
