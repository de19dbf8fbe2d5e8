"""
Per-session MCP protocol handler for the MCP Web URL Reader.

This module implements ProtocolHandler, the object bound to one session for
its whole lifetime. It interprets JSON-RPC messages POSTed by the client,
dispatches `tools/*` calls to the session's own CapabilityRegistry, and feeds
the session's server-to-client notification stream (the GET SSE channel).

Request lifecycle for a POST body:
1. Split a batch into messages (single messages are a batch of one)
2. Skip client replies; validate requests and notifications
3. Dispatch by method (initialize, ping, tools/list, tools/call, notifications)
4. Collect responses; notifications-only payloads yield HTTP 202
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from mcp_web_reader import __version__
from mcp_web_reader.context import ToolContext
from mcp_web_reader.errors import ToolError
from mcp_web_reader.logging import get_logger
from mcp_web_reader.protocol import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    PARSE_ERROR,
    JSONRPCError,
    create_internal_error,
    create_method_not_found_error,
    create_no_session_error,
    format_error_response,
    format_success_response,
    is_response_message,
    parse_request,
    tool_error_to_jsonrpc_error,
)

if TYPE_CHECKING:
    from mcp_web_reader.protocol import JSONRPCRequest
    from mcp_web_reader.routing import CapabilityRegistry

logger = get_logger(__name__)

SERVER_NAME = "mcp-web-url-reader"

# Newest first; the first entry is offered when the client asks for an unknown version
SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

DEFAULT_KEEPALIVE_SECONDS = 15.0

# Queue marker that ends the notification stream
_STREAM_END = object()

CloseCallback = Callable[["ProtocolHandler"], None]


@dataclass
class HandlerReply:
    """
    HTTP-level outcome of handling one POST body.

    Attributes:
        status_code: HTTP status to send.
        body: JSON-serializable response (object or batch), or None for no body.
    """

    status_code: int
    body: Any | None = None


def format_sse_event(message: dict[str, Any], event_id: int) -> str:
    """Encode one JSON-RPC message as a server-sent event."""
    data = json.dumps(message, separators=(",", ":"))
    return f"event: message\nid: {event_id}\ndata: {data}\n\n"


class NotificationStream:
    """
    SSE frame iterator bound to one handler's notification slot.

    The slot is claimed when the stream is created and released exactly once,
    when the stream ends for any reason. `aclose()` works even if iteration never started, so a response
    that is dropped before its body is sent still frees the slot.
    """

    def __init__(self, handler: ProtocolHandler, queue: asyncio.Queue[Any]) -> None:
        self._handler = handler
        self._queue = queue
        self._started = False
        self._released = False

    @property
    def released(self) -> bool:
        """Whether the stream has given up its slot."""
        return self._released

    def __aiter__(self) -> NotificationStream:
        return self

    async def __anext__(self) -> str:
        if self._released:
            raise StopAsyncIteration
        handler = self._handler
        if not self._started:
            self._started = True
            logger.info("Notification stream opened", extra={"session_id": handler.session_id})

        try:
            item = await asyncio.wait_for(self._queue.get(), timeout=handler.keepalive_seconds)
        except TimeoutError:
            return ": keepalive\n\n"
        except asyncio.CancelledError:
            self._release()
            raise

        if item is _STREAM_END:
            self._release()
            raise StopAsyncIteration

        try:
            handler._event_counter += 1
            return format_sse_event(item, handler._event_counter)
        except (TypeError, ValueError):
            logger.exception(
                "Notification stream failed", extra={"session_id": handler.session_id}
            )
            self._release()
            handler.close()
            raise

    async def aclose(self) -> None:
        """Detach the stream from its handler. Idempotent."""
        self._release()

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self._handler._detach_stream(self._queue)


class ProtocolHandler:
    """
    MCP protocol handler owning one session's state.

    Each handler owns exactly one CapabilityRegistry and at most one open
    notification stream. Closing the handler ends the stream, releases the
    registry, and runs the close callbacks (the gateway registers one that
    removes the session from the store).

    Attributes:
        session_id: Identifier of the owning session.
        registry: The session's capability registry.
        protocol_version: Version negotiated by `initialize`, if any.
        client_info: `clientInfo` sent by the client during `initialize`.
    """

    def __init__(
        self,
        session_id: str,
        registry: CapabilityRegistry,
        *,
        keepalive_seconds: float = DEFAULT_KEEPALIVE_SECONDS,
    ) -> None:
        self.session_id = session_id
        self.registry = registry
        self.keepalive_seconds = keepalive_seconds
        self.protocol_version: str | None = None
        self.client_info: dict[str, Any] = {}
        self.initialized = False
        self._initialize_seen = False
        self._closed = False
        self._close_callbacks: list[CloseCallback] = []
        self._stream_queue: asyncio.Queue[Any] | None = None
        self._event_counter = 0

    @property
    def closed(self) -> bool:
        """Whether the handler has been closed."""
        return self._closed

    @property
    def stream_open(self) -> bool:
        """Whether a notification stream is currently attached."""
        return self._stream_queue is not None

    def on_close(self, callback: CloseCallback) -> None:
        """Register a callback run once when the handler closes."""
        self._close_callbacks.append(callback)

    # -------------------------------------------------------------------------
    # POST handling
    # -------------------------------------------------------------------------

    async def handle_payload(self, payload: Any) -> HandlerReply:
        """
        Handle a decoded POST body (single message or batch).

        Args:
            payload: Decoded JSON body.

        Returns:
            HandlerReply with the HTTP status and JSON body to send.
        """
        if self._closed:
            error = create_no_session_error()
            return HandlerReply(400, format_error_response(None, error).to_dict())

        if isinstance(payload, list):
            if not payload:
                error = JSONRPCError(INVALID_REQUEST, "Invalid Request: Empty batch")
                return HandlerReply(400, format_error_response(None, error).to_dict())
            responses = []
            for message in payload:
                response = await self._handle_message(message)
                if response is not None:
                    responses.append(response)
            if not responses:
                return HandlerReply(202)
            return HandlerReply(200, responses)

        response = await self._handle_message(payload)
        if response is None:
            return HandlerReply(202)
        error = response.get("error")
        if error is not None and error.get("code") in (PARSE_ERROR, INVALID_REQUEST):
            return HandlerReply(400, response)
        return HandlerReply(200, response)

    async def _handle_message(self, message: Any) -> dict[str, Any] | None:
        """
        Handle one JSON-RPC message.

        Returns:
            Response dictionary, or None for notifications and client replies.
        """
        if is_response_message(message):
            logger.debug(
                "Ignoring client response message",
                extra={"session_id": self.session_id, "id": message.get("id")},
            )
            return None

        request_id = message.get("id") if isinstance(message, dict) else None
        # Classified from the raw message; an invalid notification gets no reply
        notification = isinstance(message, dict) and "method" in message and "id" not in message
        request: JSONRPCRequest | None = None

        try:
            request = parse_request(message)
            result = await self._dispatch(request)
            if request.is_notification:
                return None
            return format_success_response(request.id, result).to_dict()

        except JSONRPCError as e:
            if notification or (request is not None and request.is_notification):
                logger.warning(
                    "Error processing notification",
                    extra={
                        "session_id": self.session_id,
                        "method": message.get("method"),
                        "error": e.message,
                    },
                )
                return None
            if not isinstance(request_id, (str, int)):
                request_id = None
            return format_error_response(request_id, e).to_dict()

        except ToolError as e:
            return format_error_response(request_id, tool_error_to_jsonrpc_error(e)).to_dict()

        except Exception as e:
            logger.exception(
                "Unexpected error processing message",
                extra={"session_id": self.session_id, "request_id": request_id},
            )
            error = create_internal_error(
                message=f"Internal server error: {type(e).__name__}",
                details={"exception": str(e)},
            )
            return format_error_response(request_id, error).to_dict()

    async def _dispatch(self, request: JSONRPCRequest) -> Any:
        method = request.method

        if request.is_notification:
            if method == "notifications/initialized":
                self.initialized = True
                logger.debug("Client initialized", extra={"session_id": self.session_id})
            else:
                # notifications/cancelled is acknowledged; in-flight fetches run to completion
                logger.debug(
                    "Notification received",
                    extra={"session_id": self.session_id, "method": method},
                )
            return None

        if method == "initialize":
            return self._initialize(request.params)
        if method == "ping":
            return {}
        if method == "tools/list":
            return {"tools": self.registry.list_tools()}
        if method == "tools/call":
            return await self._call_tool(request)

        raise create_method_not_found_error(method)

    def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        if self._initialize_seen:
            raise JSONRPCError(
                code=INVALID_REQUEST,
                message="Invalid Request: Server already initialized",
            )

        requested = params.get("protocolVersion")
        if requested in SUPPORTED_PROTOCOL_VERSIONS:
            version = requested
        else:
            version = LATEST_PROTOCOL_VERSION

        client_info = params.get("clientInfo")
        self.client_info = client_info if isinstance(client_info, dict) else {}
        self.protocol_version = version
        self._initialize_seen = True

        logger.info(
            "Session initialized",
            extra={
                "session_id": self.session_id,
                "protocol_version": version,
                "client": self.client_info.get("name"),
            },
        )

        return {
            "protocolVersion": version,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
        }

    async def _call_tool(self, request: JSONRPCRequest) -> dict[str, Any]:
        name = request.params.get("name")
        if not isinstance(name, str) or not name:
            raise JSONRPCError(
                code=INVALID_PARAMS,
                message="Invalid params: 'name' must be a non-empty string",
            )
        arguments = request.params.get("arguments")
        if arguments is not None and not isinstance(arguments, dict):
            raise JSONRPCError(
                code=INVALID_PARAMS,
                message="Invalid params: 'arguments' must be an object",
            )

        ctx = ToolContext.from_request(request, session_id=self.session_id)
        self._report_progress(ctx, 0)
        result = await self.registry.invoke(name, ctx, arguments)
        self._report_progress(ctx, 1)
        return result

    def _report_progress(self, ctx: ToolContext, progress: int) -> None:
        if ctx.progress_token is None:
            return
        self.notify(
            "notifications/progress",
            {"progressToken": ctx.progress_token, "progress": progress, "total": 1},
        )

    # -------------------------------------------------------------------------
    # Notification stream (GET)
    # -------------------------------------------------------------------------

    def claim_stream(self) -> NotificationStream | None:
        """
        Attach a notification stream to this handler.

        A keepalive comment is sent when no notification arrives within
        `keepalive_seconds`. Closing the returned stream (or the client
        disconnecting) only detaches it; the session stays active.

        Returns:
            The stream, or None if the handler is closed or a stream is
            already attached.
        """
        if self._closed or self._stream_queue is not None:
            return None
        queue: asyncio.Queue[Any] = asyncio.Queue()
        self._stream_queue = queue
        return NotificationStream(self, queue)

    def _detach_stream(self, queue: asyncio.Queue[Any]) -> None:
        if self._stream_queue is queue:
            self._stream_queue = None
        logger.info("Notification stream closed", extra={"session_id": self.session_id})

    def notify(self, method: str, params: dict[str, Any]) -> bool:
        """
        Queue a server-to-client notification on the attached stream.

        Returns:
            True if queued, False if no stream is attached (message dropped).
        """
        queue = self._stream_queue
        if queue is None or self._closed:
            logger.debug(
                "No stream attached, dropping notification",
                extra={"session_id": self.session_id, "method": method},
            )
            return False
        queue.put_nowait({"jsonrpc": "2.0", "method": method, "params": params})
        return True

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """
        Close the handler. Idempotent.

        Ends the notification stream, releases the capability registry, and
        runs the close callbacks.
        """
        if self._closed:
            return
        self._closed = True

        if self._stream_queue is not None:
            self._stream_queue.put_nowait(_STREAM_END)
        self.registry.close()

        logger.info("Session handler closed", extra={"session_id": self.session_id})

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception(
                    "Error in close callback", extra={"session_id": self.session_id}
                )
