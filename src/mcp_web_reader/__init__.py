"""
MCP Web URL Reader - single-tool MCP gateway over Streamable HTTP.

This package admits and tracks MCP client sessions over HTTP, binds each
session to its own JSON-RPC handler and capability registry, and exposes the
`read_web_url` tool, which fetches a URL through curl behind a server-side
prefix.
"""

__version__ = "0.1.0"
