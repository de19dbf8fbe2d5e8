"""
MCP Tools package for the MCP Web URL Reader.

Modules:
- web: `read_web_url`, prefix-resolved URL fetching
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from mcp_web_reader.routing import CapabilityRegistry
from mcp_web_reader.tools.web import READ_WEB_URL, ReadWebUrlParams, make_read_web_url

if TYPE_CHECKING:
    from mcp_web_reader.config import FetchConfig
    from mcp_web_reader.fetcher import Fetcher


def create_capability_registry(config: FetchConfig, fetcher: Fetcher) -> CapabilityRegistry:
    """
    Build a fresh registry for one session.

    Called once per session at creation time; sessions never share a
    registry even though they share the prefix and the fetch backend.

    Args:
        config: Fetch configuration carrying the prefix.
        fetcher: Shared, stateless fetch backend.

    Returns:
        CapabilityRegistry with `read_web_url` registered.
    """
    registry = CapabilityRegistry()
    registry.register(make_read_web_url(config.prefix, fetcher))
    return registry


__all__ = [
    "READ_WEB_URL",
    "ReadWebUrlParams",
    "create_capability_registry",
    "make_read_web_url",
]
