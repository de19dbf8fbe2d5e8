"""
Error types for the MCP Web URL Reader.

This module defines the ToolError base class and subclasses for capability
errors. Capability code raises ToolError (or a subclass) instead of building
JSON-RPC error objects or result envelopes directly; the capability registry
and protocol handler decide how each error surfaces to the client.

Error codes map to JSON-RPC errors at the protocol layer (see protocol.py).
"""

from __future__ import annotations

from typing import Any


class ToolError(Exception):
    """
    Base exception class for capability errors.

    ToolError instances are caught at the capability registry boundary and
    either converted into an error result (`isError: true`) or, for lookup
    failures such as an unknown tool, mapped to a JSON-RPC error.

    Attributes:
        error_code: Internal error code string (e.g., "not_found",
            "unavailable", "resource_exhausted", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., parameter values, context).

    Example:
        >>> raise ToolError(
        ...     error_code="unavailable",
        ...     message="Failed to execute curl: not found",
        ...     details={"curl_path": "curl"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a ToolError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class NotFoundError(ToolError):
    """Error raised when a tool name is not registered."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NotFoundError."""
        super().__init__(error_code="not_found", message=message, details=details)


class UnavailableError(ToolError):
    """
    Error raised when the fetch backend cannot be used.

    Covers a missing curl executable and transport failures of the native
    HTTP backend.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class ResourceExhaustedError(ToolError):
    """Error raised when fetched output exceeds the configured size ceiling."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ResourceExhaustedError."""
        super().__init__(
            error_code="resource_exhausted", message=message, details=details
        )


class InternalError(ToolError):
    """
    Error raised for unexpected internal errors.

    The registry wraps non-ToolError exceptions raised by tool handlers in
    this class so that they still surface as a well-formed error result.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)
