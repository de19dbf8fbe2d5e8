"""
Session gateway for the MCP Streamable HTTP endpoint.

This module turns stateless POST/GET/DELETE requests into per-session
conversations. For each request it decides whether a session exists, must
be created, or the request must be rejected, then delegates to the bound
ProtocolHandler.

Admission rules (per session ID):
- absent + POST carrying `initialize`, or POST with no session ID at all:
  create a session, then delegate (malformed payloads get HTTP 400 first,
  without a session)
- absent + any other POST: HTTP 400 with JSON-RPC error -32000
- absent + GET/DELETE: HTTP 400, plain text
- active + POST: delegate (an active ID always wins over message content)
- active + GET: attach the notification stream
- active + DELETE: remove the session, HTTP 204
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from mcp_web_reader.handler import DEFAULT_KEEPALIVE_SECONDS, ProtocolHandler
from mcp_web_reader.logging import get_logger
from mcp_web_reader.protocol import (
    INVALID_REQUEST,
    JSONRPCError,
    create_no_session_error,
    decode_payload,
    format_error_response,
    is_initialize_request,
    is_response_message,
    parse_request,
)
from mcp_web_reader.sessions import Session, SessionStore

if TYPE_CHECKING:
    from mcp_web_reader.routing import CapabilityRegistry

logger = get_logger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
SESSION_QUERY_PARAM = "sessionId"

INVALID_SESSION_TEXT = "Invalid or missing session ID"
STREAM_CONFLICT_TEXT = "Conflict: Only one SSE stream is allowed per session"

RegistryFactory = Callable[[], "CapabilityRegistry"]


def extract_session_id(request: Request) -> str | None:
    """
    Read the session ID from the request.

    The `Mcp-Session-Id` header is preferred; the `sessionId` query parameter
    is the fallback for clients that cannot set custom headers.

    Returns:
        The session ID, or None when neither source supplies a non-empty value.
    """
    value = request.headers.get(SESSION_HEADER)
    if not value:
        value = request.query_params.get(SESSION_QUERY_PARAM)
    if value is None:
        return None
    value = value.strip()
    return value or None


def validate_new_session_payload(payload: Any) -> dict[str, Any] | None:
    """
    Check a payload that would create a session.

    Only a JSON object or a non-empty array can start a session; a single
    object must also be a well-formed request or notification. Batch members
    are validated individually once the session exists.

    Returns:
        A JSON-RPC error response to send with HTTP 400, or None to admit.
    """
    if isinstance(payload, list):
        if payload:
            return None
        error = JSONRPCError(INVALID_REQUEST, "Invalid Request: Empty batch")
        return format_error_response(None, error).to_dict()
    if not isinstance(payload, dict):
        error = JSONRPCError(INVALID_REQUEST, "Invalid Request: Expected an object or array")
        return format_error_response(None, error).to_dict()
    if is_response_message(payload):
        return None
    try:
        parse_request(payload)
    except JSONRPCError as e:
        request_id = payload.get("id")
        if not isinstance(request_id, (str, int)):
            request_id = None
        return format_error_response(request_id, e).to_dict()
    return None


class SessionGateway:
    """
    HTTP-facing session state machine.

    Attributes:
        store: Session store shared by all requests.
        registry_factory: Builds a fresh CapabilityRegistry per session.
        keepalive_seconds: Idle interval before a keepalive on GET streams.
    """

    def __init__(
        self,
        store: SessionStore,
        registry_factory: RegistryFactory,
        *,
        keepalive_seconds: float = DEFAULT_KEEPALIVE_SECONDS,
    ) -> None:
        self.store = store
        self.registry_factory = registry_factory
        self.keepalive_seconds = keepalive_seconds

    def create_session(self) -> Session:
        """
        Mint an ID, build a handler with its own registry, and store it.

        The session is in the store before this method returns, so the ID is
        never handed out for a half-initialized entry.
        """
        session_id = str(uuid.uuid4())
        handler = ProtocolHandler(
            session_id,
            self.registry_factory(),
            keepalive_seconds=self.keepalive_seconds,
        )
        handler.on_close(lambda _handler: self.store.remove(session_id))

        session = Session(session_id=session_id, handler=handler)
        self.store.put(session)

        logger.info(
            "Session created",
            extra={"session_id": session_id, "active_sessions": len(self.store)},
        )
        return session

    def _lookup(self, request: Request) -> Session | None:
        session_id = extract_session_id(request)
        if session_id is None:
            return None
        return self.store.get(session_id)

    def _reject(self, request: Request) -> PlainTextResponse:
        logger.info(
            "Rejected request without valid session",
            extra={"method": request.method, "session_id": extract_session_id(request)},
        )
        return PlainTextResponse(INVALID_SESSION_TEXT, status_code=400)

    async def handle_post(self, request: Request) -> Response:
        """Admit or reject a POST, then delegate it to the session handler."""
        try:
            payload = decode_payload(await request.body())
        except JSONRPCError as e:
            return JSONResponse(format_error_response(None, e).to_dict(), status_code=400)

        session_id = extract_session_id(request)
        session = self.store.get(session_id) if session_id is not None else None

        if session is None:
            if session_id is not None and not is_initialize_request(payload):
                logger.info(
                    "Rejected POST without valid session",
                    extra={"session_id": session_id},
                )
                error = create_no_session_error()
                return JSONResponse(
                    format_error_response(None, error).to_dict(), status_code=400
                )
            rejection = validate_new_session_payload(payload)
            if rejection is not None:
                logger.info(
                    "Rejected malformed POST before session creation",
                    extra={"error": rejection["error"]["message"]},
                )
                return JSONResponse(rejection, status_code=400)
            session = self.create_session()

        with session.lease() as handler:
            reply = await handler.handle_payload(payload)

        headers = {SESSION_HEADER: session.session_id}
        if reply.body is None:
            return Response(status_code=reply.status_code, headers=headers)
        return JSONResponse(reply.body, status_code=reply.status_code, headers=headers)

    async def handle_get(self, request: Request) -> Response:
        """Open the session's server-to-client notification stream."""
        session = self._lookup(request)
        if session is None:
            return self._reject(request)

        headers = {SESSION_HEADER: session.session_id}
        stream = session.handler.claim_stream()
        if stream is None:
            return PlainTextResponse(STREAM_CONFLICT_TEXT, status_code=409, headers=headers)

        headers.update({"Cache-Control": "no-cache", "Connection": "keep-alive"})
        return StreamingResponse(
            stream,
            media_type="text/event-stream",
            headers=headers,
        )

    async def handle_delete(self, request: Request) -> Response:
        """Terminate a session."""
        session = self._lookup(request)
        if session is None:
            return self._reject(request)

        self.store.remove(session.session_id)
        return Response(status_code=204, headers={SESSION_HEADER: session.session_id})


def build_router(gateway: SessionGateway, endpoint_path: str) -> APIRouter:
    """
    Build the router exposing POST/GET/DELETE on the MCP endpoint.

    Args:
        gateway: SessionGateway handling the requests.
        endpoint_path: Path of the endpoint (e.g., "/mcp").

    Returns:
        APIRouter to include in the application.
    """
    router = APIRouter()

    @router.post(endpoint_path)
    async def mcp_post(request: Request) -> Response:
        return await gateway.handle_post(request)

    @router.get(endpoint_path)
    async def mcp_get(request: Request) -> Response:
        return await gateway.handle_get(request)

    @router.delete(endpoint_path)
    async def mcp_delete(request: Request) -> Response:
        return await gateway.handle_delete(request)

    return router
