"""
Tool context management for the MCP Web URL Reader.

This module defines the ToolContext dataclass that carries the context of a
single `tools/call` invocation: owning session, tool name, request ID, and
receive time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_web_reader.protocol import JSONRPCRequest


@dataclass
class ToolContext:
    """
    Encapsulates the context of a single tool call.

    This context is passed to every tool handler and carries the fields
    used for logging and progress reporting.

    Attributes:
        tool_name: Name of the invoked tool (e.g., "read_web_url").
        session_id: Identifier of the session the call belongs to.
        request_id: Request identifier from the JSON-RPC request.
        received_at: When the request was received (UTC).
        progress_token: Optional `_meta.progressToken` supplied by the client.
    """

    tool_name: str
    session_id: str | None
    request_id: str | int | None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    progress_token: str | int | None = None

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since the request was received."""
        return (datetime.now(UTC) - self.received_at).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        """
        Convert ToolContext to a dictionary of log fields.

        Returns:
            Dictionary with context information.
        """
        return {
            "tool_name": self.tool_name,
            "session_id": self.session_id,
            "request_id": self.request_id,
            "received_at": self.received_at.isoformat(),
            "progress_token": self.progress_token,
        }

    @classmethod
    def from_request(
        cls,
        request: JSONRPCRequest,
        session_id: str | None = None,
    ) -> ToolContext:
        """
        Create a ToolContext from a parsed `tools/call` request.

        Args:
            request: The parsed JSONRPCRequest.
            session_id: Identifier of the owning session.

        Returns:
            A ToolContext instance for the request.

        Example:
            >>> from mcp_web_reader.protocol import parse_request
            >>> req = parse_request({
            ...     "jsonrpc": "2.0", "id": 1, "method": "tools/call",
            ...     "params": {"name": "read_web_url", "arguments": {}},
            ... })
            >>> ToolContext.from_request(req, session_id="abc").tool_name
            'read_web_url'
        """
        meta = request.params.get("_meta")
        progress_token = meta.get("progressToken") if isinstance(meta, dict) else None
        return cls(
            tool_name=str(request.params.get("name", "")),
            session_id=session_id,
            request_id=request.id,
            progress_token=progress_token,
        )
