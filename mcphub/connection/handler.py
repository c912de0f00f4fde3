"""Connection handler capability."""

from typing import Optional, Protocol, runtime_checkable

from mcphub.config.schema import ServerConfig
from mcphub.connection.base import StatusCallback
from mcphub.types import ConfigSource, McpConnection


@runtime_checkable
class ConnectionHandler(Protocol):
    """
    Opens and closes connections of one transport kind.

    ``create_connection`` never raises for transport failures: the returned
    connection carries status ``"disconnected"`` and the error instead. It
    does raise for configs missing the transport's required fields.
    ``close_connection`` is best-effort and never raises.
    """

    def supports(self, type: str) -> bool:
        ...

    async def create_connection(
        self,
        name: str,
        config: ServerConfig,
        source: ConfigSource,
        on_status_change: Optional[StatusCallback] = None,
    ) -> McpConnection:
        ...

    async def close_connection(self, connection: McpConnection) -> None:
        ...
