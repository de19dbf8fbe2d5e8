"""
JSON-RPC 2.0 protocol handling for the MCP Web URL Reader.

This module implements JSON-RPC 2.0 message parsing and response formatting
for the MCP Streamable HTTP transport.

Features:
- Body decoding with parse-error reporting
- JSON-RPC 2.0 request validation (single messages; batches are split by the handler)
- JSON-RPC 2.0 response formatting (success and error)
- ToolError to JSON-RPC error code mapping
- Detection of `initialize` requests for session admission

Error Code Mapping:
- -32700: Parse error (malformed JSON)
- -32600: Invalid Request (missing/invalid jsonrpc, method, etc.)
- -32601: Method not found (unknown MCP method)
- -32602: Invalid params (bad params object, unknown tool)
- -32603: Internal error (framework failure)
- -32000: No valid session (admission rejection at the gateway)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from mcp_web_reader.errors import ToolError

# =============================================================================
# JSON-RPC Error Codes
# =============================================================================

# Standard JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# Server error range
NO_VALID_SESSION = -32000

# Only lookup failures escape the capability registry as ToolErrors
ERROR_CODE_MAP: dict[str, int] = {
    "not_found": INVALID_PARAMS,
}

# Default server error code for unmapped error codes
DEFAULT_SERVER_ERROR = -32099

INITIALIZE_METHOD = "initialize"


# =============================================================================
# Data Classes
# =============================================================================


class JSONRPCError(Exception):
    """
    Represents a JSON-RPC 2.0 error object.

    This class is both an Exception (so it can be raised) and a data container
    for JSON-RPC error information.

    Attributes:
        code: Integer error code (per JSON-RPC 2.0 spec).
        message: Human-readable error message.
        data: Optional structured error data.
    """

    def __init__(
        self,
        code: int,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for JSON serialization.

        Returns:
            Dictionary with code, message, and optionally data.
        """
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.data is not None:
            result["data"] = self.data
        return result

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"JSONRPCError(code={self.code}, "
            f"message={self.message!r}, "
            f"data={self.data!r})"
        )


@dataclass
class JSONRPCRequest:
    """
    Represents a parsed JSON-RPC 2.0 request or notification.

    Attributes:
        jsonrpc: Protocol version (must be "2.0").
        id: Request identifier (string or number, None for notifications).
        method: The MCP method to invoke (e.g., "tools/call").
        params: Parameters for the method (dict or empty dict).
    """

    jsonrpc: str
    id: str | int | None
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def is_notification(self) -> bool:
        """Check if this is a notification (no id field)."""
        return self.id is None


@dataclass
class JSONRPCResponse:
    """
    Represents a JSON-RPC 2.0 response.

    Either result or error must be present, but not both.

    Attributes:
        jsonrpc: Protocol version (always "2.0").
        id: Request identifier (matches request, or null for parse errors).
        result: Success result (if not an error).
        error: Error object (if an error occurred).
    """

    jsonrpc: str
    id: str | int | None
    result: Any | None = None
    error: JSONRPCError | None = None

    @property
    def is_error(self) -> bool:
        """Check if this is an error response."""
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the response to a dictionary for JSON serialization.

        Returns:
            Dictionary with jsonrpc, id, and either result or error.
        """
        response: dict[str, Any] = {
            "jsonrpc": self.jsonrpc,
            "id": self.id,
        }
        if self.error is not None:
            response["error"] = self.error.to_dict()
        else:
            response["result"] = self.result
        return response

    def to_json(self) -> str:
        """Serialize the response to a compact JSON string."""
        return json.dumps(self.to_dict(), separators=(",", ":"))


# =============================================================================
# Message Parsing
# =============================================================================


def decode_payload(body: bytes | str) -> Any:
    """
    Decode a raw HTTP body into a JSON value.

    Args:
        body: Raw request body.

    Returns:
        The decoded JSON value (object, array, or scalar).

    Raises:
        JSONRPCError: With PARSE_ERROR if the body is not valid UTF-8 JSON.
    """
    try:
        return json.loads(body)
    except UnicodeDecodeError as e:
        raise JSONRPCError(
            code=PARSE_ERROR,
            message="Parse error: Invalid request encoding, UTF-8 required",
        ) from e
    except json.JSONDecodeError as e:
        raise JSONRPCError(
            code=PARSE_ERROR,
            message=f"Parse error: Invalid JSON - {e.msg}",
        ) from e


def is_response_message(message: Any) -> bool:
    """Check if a message is a client reply (result or error, no method)."""
    return (
        isinstance(message, dict)
        and "method" not in message
        and ("result" in message or "error" in message)
    )


def parse_request(data: Any) -> JSONRPCRequest:
    """
    Validate a decoded JSON-RPC 2.0 request or notification.

    Args:
        data: A decoded JSON value for a single message.

    Returns:
        Parsed JSONRPCRequest object.

    Raises:
        JSONRPCError: If the message is malformed or invalid.

    Example:
        >>> request = parse_request({"jsonrpc": "2.0", "id": 1, "method": "ping"})
        >>> request.method
        'ping'
    """
    if not isinstance(data, dict):
        raise JSONRPCError(
            code=INVALID_REQUEST,
            message="Invalid Request: Request must be a JSON object",
        )

    jsonrpc = data.get("jsonrpc")
    if jsonrpc is None:
        raise JSONRPCError(
            code=INVALID_REQUEST,
            message="Invalid Request: Missing 'jsonrpc' field",
        )
    if jsonrpc != "2.0":
        raise JSONRPCError(
            code=INVALID_REQUEST,
            message=f"Invalid Request: jsonrpc must be '2.0', got '{jsonrpc}'",
        )

    method = data.get("method")
    if method is None:
        raise JSONRPCError(
            code=INVALID_REQUEST,
            message="Invalid Request: Missing 'method' field",
        )
    if not isinstance(method, str) or not method:
        raise JSONRPCError(
            code=INVALID_REQUEST,
            message="Invalid Request: 'method' must be a non-empty string",
        )

    request_id = data.get("id")
    if request_id is not None and not isinstance(request_id, (str, int)):
        raise JSONRPCError(
            code=INVALID_REQUEST,
            message="Invalid Request: 'id' must be a string or number",
        )

    params = data.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise JSONRPCError(
            code=INVALID_PARAMS,
            message="Invalid params: 'params' must be an object",
        )

    return JSONRPCRequest(
        jsonrpc="2.0",
        id=request_id,
        method=method,
        params=params,
    )


def is_initialize_request(payload: Any) -> bool:
    """
    Check whether a decoded POST body is a single `initialize` request.

    Batches never count as initialize requests, matching the MCP transport
    rule that initialization is sent on its own.

    Args:
        payload: Decoded JSON body.

    Returns:
        True if the payload is a well-formed initialize request.
    """
    if not isinstance(payload, dict):
        return False
    return (
        payload.get("jsonrpc") == "2.0"
        and payload.get("method") == INITIALIZE_METHOD
        and payload.get("id") is not None
    )


# =============================================================================
# Response Formatting
# =============================================================================


def format_success_response(
    request_id: str | int | None,
    result: Any,
) -> JSONRPCResponse:
    """
    Format a successful JSON-RPC 2.0 response.

    Args:
        request_id: The request ID to include in the response.
        result: The result value to include in the response.

    Returns:
        JSONRPCResponse object representing a success response.

    Example:
        >>> response = format_success_response(1, {})
        >>> response.to_json()
        '{"jsonrpc":"2.0","id":1,"result":{}}'
    """
    return JSONRPCResponse(
        jsonrpc="2.0",
        id=request_id,
        result=result,
        error=None,
    )


def format_error_response(
    request_id: str | int | None,
    error: JSONRPCError,
) -> JSONRPCResponse:
    """
    Format a JSON-RPC 2.0 error response.

    Args:
        request_id: The request ID (may be None for parse errors).
        error: The JSONRPCError object describing the error.

    Returns:
        JSONRPCResponse object representing an error response.
    """
    return JSONRPCResponse(
        jsonrpc="2.0",
        id=request_id,
        result=None,
        error=error,
    )


# =============================================================================
# Error Constructors
# =============================================================================


def tool_error_to_jsonrpc_error(tool_error: ToolError) -> JSONRPCError:
    """
    Convert a ToolError to a JSONRPCError.

    Only errors that escape the capability boundary reach this function
    (unknown tool names); execution failures become error results instead.

    Args:
        tool_error: The ToolError to convert.

    Returns:
        JSONRPCError with appropriate code and structured data.
    """
    jsonrpc_code = ERROR_CODE_MAP.get(tool_error.error_code, DEFAULT_SERVER_ERROR)

    return JSONRPCError(
        code=jsonrpc_code,
        message=tool_error.message,
        data=tool_error.to_dict(),
    )


def create_method_not_found_error(method: str) -> JSONRPCError:
    """
    Create a "Method not found" error for an unsupported MCP method.

    Args:
        method: The method name that was not found.

    Returns:
        JSONRPCError with code -32601.
    """
    return JSONRPCError(
        code=METHOD_NOT_FOUND,
        message=f"Method not found: {method}",
    )


def create_internal_error(
    message: str, details: dict[str, Any] | None = None
) -> JSONRPCError:
    """
    Create an internal error for unexpected exceptions.

    Args:
        message: Error message describing what went wrong.
        details: Optional additional details.

    Returns:
        JSONRPCError with code -32603.
    """
    return JSONRPCError(
        code=INTERNAL_ERROR,
        message=message,
        data={
            "error_code": "internal",
            "message": message,
            "details": details or {},
        },
    )


def create_no_session_error() -> JSONRPCError:
    """Create the admission error returned for POSTs without a usable session."""
    return JSONRPCError(
        code=NO_VALID_SESSION,
        message="Bad Request: No valid session ID provided",
    )
