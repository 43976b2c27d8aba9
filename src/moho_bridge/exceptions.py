"""Custom exceptions for moho-bridge."""

from __future__ import annotations

from moho_bridge.ipc.codes import ErrorCode


class MohoBridgeError(Exception):
    """Base exception for moho-bridge."""


class ProtocolError(MohoBridgeError):
    """Raised when a payload is not a well-formed JSON-RPC envelope.

    Protocol violations are never retried: they indicate a broken peer, not
    a transient condition.

    Attributes:
        raw_payload: The offending payload (truncated), for debugging.
    """

    def __init__(self, message: str, *, raw_payload: str = "") -> None:
        super().__init__(message)
        self.raw_payload = raw_payload


class RPCError(MohoBridgeError):
    """Raised when the server answers a request with an error response.

    Attributes:
        code: JSON-RPC error code from the response.
        data: Optional structured detail attached by the server.
    """

    def __init__(
        self,
        code: int,
        message: str,
        *,
        data: object = None,
    ) -> None:
        super().__init__(f"MOHO error [{code}]: {message}")
        self.code = code
        self.error_message = message
        self.data = data


class HandlerError(MohoBridgeError):
    """Domain failure raised (or returned) by a registered handler.

    Handlers use this to fail with a specific application code, e.g.
    ``HandlerError("Layer 7 not found", code=ErrorCode.LAYER_NOT_FOUND)``.
    Any other exception escaping a handler is reported as an internal error.

    Attributes:
        code: Error code placed in the response.
        data: Optional structured detail for the response.
    """

    def __init__(
        self,
        message: str,
        *,
        code: int = ErrorCode.INTERNAL_ERROR,
        data: object = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class TransportError(MohoBridgeError):
    """Base exception for liveness failures (no response at all)."""


class ServerNotRunningError(TransportError):
    """Raised when the status file is missing or reports ``running=false``."""


class NotConnectedError(TransportError):
    """Raised when a call is attempted before ``connect()`` succeeded."""


class RequestTimeoutError(TransportError):
    """Raised when no response file appeared within the timeout.

    Attributes:
        method: Method name of the abandoned request.
        request_id: Correlation ID of the abandoned request.
        timeout: Timeout in seconds that elapsed.
    """

    def __init__(self, method: str, request_id: int, timeout: float) -> None:
        super().__init__(
            f"Request {method} (id={request_id}) timed out after {timeout}s. "
            "Is the MOHO MCP server running and polling?"
        )
        self.method = method
        self.request_id = request_id
        self.timeout = timeout
