"""Connection layer: transport handlers, the factory and the reconciler."""

from mcphub.connection.factory import ConnectionFactory
from mcphub.connection.file_watcher import FileWatcher
from mcphub.connection.handler import ConnectionHandler
from mcphub.connection.manager import ConnectionManager

__all__ = ["ConnectionFactory", "ConnectionHandler", "ConnectionManager", "FileWatcher"]
