"""mcps: keep MCP server connections alive in a local broker daemon."""

__version__ = "0.1.0"
