"""
Web namespace tools for the MCP Web URL Reader.

This module implements the `read_web_url` tool: validate an absolute
http(s) URL, join it to the server-side prefix, fetch it through the
configured backend, and return the body (or the backend's error text) as a
single text content block.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mcp_web_reader.logging import get_logger
from mcp_web_reader.routing import ToolDefinition, ToolResult, text_result
from mcp_web_reader.url_utils import resolve_prefixed_url, validate_absolute_http_url

if TYPE_CHECKING:
    from mcp_web_reader.context import ToolContext
    from mcp_web_reader.fetcher import Fetcher

logger = get_logger(__name__)

READ_WEB_URL = "read_web_url"


class ReadWebUrlParams(BaseModel):
    """Arguments of `read_web_url`."""

    model_config = ConfigDict(extra="ignore")

    url: str = Field(
        description="Absolute URL starting with http:// or https://",
        json_schema_extra={"format": "uri"},
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Reject relative, non-HTTP, or malformed URLs before any fetch."""
        return validate_absolute_http_url(v)


def make_read_web_url(prefix: str, fetcher: Fetcher) -> ToolDefinition:
    """
    Build the `read_web_url` tool bound to a prefix and fetch backend.

    Args:
        prefix: Configured URL prefix (may be empty).
        fetcher: Backend performing the retrieval.

    Returns:
        ToolDefinition ready to register.
    """

    async def handle_read_web_url(
        ctx: ToolContext, params: ReadWebUrlParams
    ) -> ToolResult:
        final_url = resolve_prefixed_url(prefix, params.url)
        logger.debug(
            "Resolved fetch target",
            extra={
                "session_id": ctx.session_id,
                "request_id": ctx.request_id,
                "url": params.url,
                "target": final_url,
            },
        )
        result = await fetcher.fetch(final_url)
        return text_result(result.body, is_error=result.error)

    return ToolDefinition(
        name=READ_WEB_URL,
        title="Web URL Reader",
        description=(
            "Fetch an absolute HTTP/HTTPS URL using curl -sL after prepending "
            "a server-side CUSTOM_PREFIX."
        ),
        input_model=ReadWebUrlParams,
        handler=handle_read_web_url,
    )
