"""Error taxonomy for the gateway.

Every error raised on the request path is a :class:`GatewayError`.  The HTTP
layer turns it into a response with :meth:`GatewayError.to_dict` as the JSON
body; nothing below the request boundary builds responses itself.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for request-path failures.

    Attributes
    ----------
    message:
        Human-readable description, sent to the client as ``error``.
    status_code:
        HTTP status used when no response has been started yet.
    """

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict | None:
        """Serialise to a JSON-friendly dict, or ``None`` for an empty body."""
        return {"error": self.message}


class Unauthorized(GatewayError):
    """Missing, malformed, unknown or inactive API key."""

    status_code = 401


class ValidationFailed(GatewayError):
    """The chat payload is malformed.

    ``details`` holds one ``{"field": ..., "message": ...}`` entry per
    violation, in the order they were found.
    """

    status_code = 400

    def __init__(self, details: list[dict]) -> None:
        super().__init__("Validation failed")
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class PayloadTooLarge(GatewayError):
    status_code = 413


class BackendUnreachable(GatewayError):
    """Connection-level failure talking to the backend."""

    status_code = 502

    def __init__(self, message: str = "Failed to connect to backend") -> None:
        super().__init__(message)


class BackendError(GatewayError):
    """Unexpected failure while setting up the backend call."""

    status_code = 502

    def __init__(self, message: str = "Backend request failed") -> None:
        super().__init__(message)


class BackendAborted(GatewayError):
    """The backend call was cancelled because the client went away.

    Reported with the 499 "client closed request" convention and no body.
    """

    status_code = 499

    def __init__(self, message: str = "Client closed request") -> None:
        super().__init__(message)

    def to_dict(self) -> None:
        return None


class StreamingFailed(GatewayError):
    """A read or write failed after the response prefix was committed.

    There is no way to signal this to the client other than cutting the
    connection, so it never produces a response.
    """

    status_code = 502

    def __init__(self, message: str = "Error streaming response") -> None:
        super().__init__(message)


class StoreFailure(GatewayError):
    """The key store could not be read."""

    status_code = 500

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)
