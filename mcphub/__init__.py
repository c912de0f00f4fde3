"""
mcphub - supervisor for configuration-driven MCP server connections.
"""

__version__ = "0.1.0"


def __getattr__(name):
    """Lazy imports so that importing the package does not pull in the MCP SDK."""
    if name in ("McpHub", "HubLease", "create_hub"):
        from mcphub import hub as _hub
        return getattr(_hub, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["__version__", "McpHub", "HubLease", "create_hub"]
