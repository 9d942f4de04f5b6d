"""
Error Taxonomy

Errors raised or recorded by the forwarding gateway.

Only DuplicateRequestError is ever raised to callers. The others are
recorded in connection status or logged at the boundary where they occur:
- GatewayConnectionError: socket failure, recovered by reconnecting
- AuthenticationError: handshake rejected, ends the current episode
- ProtocolError: malformed or unroutable envelope, dropped
- ReconnectExhaustedError: reconnect attempts used up for the episode
"""

from typing import Optional


class ForwardError(Exception):
    """Base error for the forwarding gateway."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class GatewayConnectionError(ForwardError):
    """The socket failed or closed unexpectedly."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message, original_error)
        self.code = code


class AuthenticationError(ForwardError):
    """The remote service did not accept our token."""

    def __init__(self, message: str, status: Optional[str] = None):
        super().__init__(message)
        self.status = status


class ProtocolError(ForwardError):
    """An envelope could not be parsed or routed."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class ReconnectExhaustedError(ForwardError):
    """Reconnect attempts reached the configured maximum."""

    def __init__(self, attempts: int):
        super().__init__(f"Gave up after {attempts} reconnect attempts")
        self.attempts = attempts


class DuplicateRequestError(ForwardError):
    """A correlation id was registered twice."""

    def __init__(self, request_id: str):
        super().__init__(f"Request id already pending: {request_id}")
        self.request_id = request_id
