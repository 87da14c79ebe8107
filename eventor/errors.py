"""
Eventor Exceptions

Every failure the broker can hit while serving a connection. All of them
are local to a single connection: the session that raised one closes
(or, for UnsupportedApiKey, answers with an error frame) and the
listening process carries on.

    EventorError
      +-- ProtocolError
      |     +-- FramingError        declared frame length below header size
      |     +-- TruncatedRead       peer closed before the frame completed
      |     +-- MalformedField      not enough bytes for a fixed-width field
      |     +-- UnsupportedApiKey   api_key with no registered handler
      +-- WriteFailure              sending the response failed
"""

from typing import Optional


class EventorError(Exception):
    """Base exception for all broker errors."""


class ProtocolError(EventorError):
    """Base exception for wire protocol violations."""


class FramingError(ProtocolError):
    """Raised when a frame declares fewer bytes than the request header needs."""

    def __init__(self, declared_length: int, minimum: int):
        super().__init__(
            f"Frame length {declared_length} is below the minimum of {minimum} bytes"
        )
        self.declared_length = declared_length
        self.minimum = minimum


class TruncatedRead(ProtocolError):
    """Raised when the peer goes away before `expected` bytes arrive."""

    def __init__(self, expected: int, received: int, reason: str = "connection closed"):
        super().__init__(
            f"Truncated read: got {received} of {expected} bytes ({reason})"
        )
        self.expected = expected
        self.received = received
        self.reason = reason


class MalformedField(ProtocolError):
    """Raised when a field cannot be extracted from the bytes available."""

    def __init__(self, field: str, needed: int, available: int):
        super().__init__(
            f"Malformed field '{field}': need {needed} bytes, {available} available"
        )
        self.field = field
        self.needed = needed
        self.available = available


class UnsupportedApiKey(ProtocolError):
    """Raised by the router for an api_key it has no handler for."""

    def __init__(self, api_key: int):
        super().__init__(f"Unsupported api_key {api_key}")
        self.api_key = api_key


class WriteFailure(EventorError):
    """Raised when a response could not be written back to the peer."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
