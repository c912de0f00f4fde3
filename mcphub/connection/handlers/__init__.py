"""Transport handlers, one per connection kind."""

from mcphub.connection.handlers.sse import SseHandler
from mcphub.connection.handlers.stdio import StdioHandler
from mcphub.connection.handlers.streamable_http import ReconnectionPolicy, StreamableHttpHandler

__all__ = ["SseHandler", "StdioHandler", "StreamableHttpHandler", "ReconnectionPolicy"]
