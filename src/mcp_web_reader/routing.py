"""
Capability registration and dispatch for the MCP Web URL Reader.

This module provides:
- ToolDefinition: A named, schema-described tool bound to an async handler
- CapabilityRegistry: Per-session registry mapping tool names to definitions
- text_result / error_result: Builders for the MCP tool result envelope

A registry is built per session by `mcp_web_reader.tools.create_capability_registry`;
there is no process-wide registry. Failures inside a tool never propagate
past `CapabilityRegistry.invoke`: they are returned as `isError` results.
Only an unknown tool name raises, because that is a protocol-level mistake.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from mcp_web_reader.errors import InternalError, NotFoundError, ToolError
from mcp_web_reader.logging import get_logger

if TYPE_CHECKING:
    from mcp_web_reader.context import ToolContext

logger = get_logger(__name__)

ToolResult = dict[str, Any]
ToolHandler = Callable[["ToolContext", Any], Awaitable[ToolResult]]


def text_result(text: str, *, is_error: bool = False) -> ToolResult:
    """
    Build a tool result holding a single text content block.

    Args:
        text: Body text or error text.
        is_error: Whether the result reports a failure.

    Returns:
        MCP CallToolResult dictionary.
    """
    result: ToolResult = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def error_result(message: str) -> ToolResult:
    """Build an `isError` tool result from a message."""
    return text_result(message, is_error=True)


def format_validation_error(tool_name: str, error: ValidationError) -> str:
    """Render pydantic validation errors as one readable line."""
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        problems.append(f"{location}: {item.get('msg', 'invalid value')}")
    return f"Invalid arguments for tool {tool_name}: " + "; ".join(problems)


@dataclass(frozen=True)
class ToolDefinition:
    """
    A tool exposed over `tools/list` and `tools/call`.

    Attributes:
        name: Tool name.
        title: Human-readable title.
        description: Description shown to clients.
        input_model: Pydantic model validating the call arguments.
        handler: Async function receiving (ctx, validated_model).
    """

    name: str
    title: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler

    def descriptor(self) -> dict[str, Any]:
        """Return the `tools/list` entry for this tool."""
        return {
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "inputSchema": self.input_model.model_json_schema(),
        }


class CapabilityRegistry:
    """
    Registry mapping tool names to tool definitions for one session.

    Example:
        >>> registry = CapabilityRegistry()
        >>> registry.register(definition)
        >>> result = await registry.invoke("read_web_url", ctx, {"url": "https://example.com"})
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether the registry has been released."""
        return self._closed

    def register(self, definition: ToolDefinition) -> None:
        """
        Register a tool definition.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """
        if definition.name in self._tools:
            raise ValueError(f"Tool '{definition.name}' is already registered")
        self._tools[definition.name] = definition

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def get_tool(self, name: str) -> ToolDefinition | None:
        """Get a tool definition by name, or None if not found."""
        return self._tools.get(name)

    def list_tools(self) -> list[dict[str, Any]]:
        """Return `tools/list` descriptors for every registered tool."""
        return [definition.descriptor() for definition in self._tools.values()]

    async def invoke(
        self,
        name: str,
        ctx: ToolContext,
        arguments: dict[str, Any] | None,
    ) -> ToolResult:
        """
        Validate arguments and invoke a tool.

        Args:
            name: Tool name to invoke.
            ctx: ToolContext for the call.
            arguments: Raw `arguments` object from the request.

        Returns:
            Tool result envelope; failures come back with `isError: true`.

        Raises:
            NotFoundError: If no tool with this name is registered.
        """
        definition = self.get_tool(name)
        if definition is None:
            raise NotFoundError(
                message=f"Tool {name} not found",
                details={"tool": name},
            )

        try:
            params = definition.input_model.model_validate(arguments or {})
        except ValidationError as e:
            message = format_validation_error(name, e)
            logger.info(
                "Rejected tool arguments",
                extra={"tool": name, "session_id": ctx.session_id, "error": message},
            )
            return error_result(message)

        logger.debug("Invoking tool", extra=ctx.to_dict())
        try:
            result = await definition.handler(ctx, params)
        except ToolError as e:
            logger.info(
                "Tool call failed",
                extra={"tool": name, "session_id": ctx.session_id, "error": e.message},
            )
            return error_result(e.message)
        except Exception as e:
            logger.exception(
                "Unexpected error in tool handler",
                extra={"tool": name, "session_id": ctx.session_id},
            )
            wrapped = InternalError(
                message=f"Internal error in tool '{name}': {e!s}",
                details={"tool": name, "exception_type": type(e).__name__},
            )
            return error_result(wrapped.message)

        logger.debug(
            "Tool call completed",
            extra={
                "tool": name,
                "session_id": ctx.session_id,
                "request_id": ctx.request_id,
                "duration_ms": round(ctx.elapsed_ms, 3),
                "is_error": bool(result.get("isError")),
            },
        )
        return result

    def close(self) -> None:
        """Release all tool definitions; the registry is unusable afterwards."""
        self._tools.clear()
        self._closed = True

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
