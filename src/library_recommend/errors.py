"""
Error taxonomy for the recommendation pipeline.

Pre-stream errors carry an HTTP status code and a message that is safe to
show to the patron. Once the event stream has started, errors are reported
only through the ``error`` event.
"""


class RecommendError(Exception):
    """Base class for recommendation errors."""

    status_code: int = 500
    public_message: str = "Unable to complete request."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)
        if message:
            self.public_message = message


class ValidationError(RecommendError):
    """Malformed, oversized or disallowed request input."""

    status_code = 400
    public_message = "Invalid request."


class AuthenticationError(RecommendError):
    """No resolved identity for the request."""

    status_code = 401
    public_message = "Sign in to get recommendations."


class RateLimitError(RecommendError):
    """Too many requests from one client in the current window."""

    status_code = 429
    public_message = "Too many requests. Try again later."

    def __init__(self, retry_after: int | None = None, message: str | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class RetrievalError(RecommendError):
    """The catalog query failed."""

    status_code = 500
    public_message = "Failed to fetch recommendations."


class UpstreamError(RecommendError):
    """The LLM provider call failed or returned unusable content."""

    status_code = 502
    public_message = "Unable to generate AI summary at this time."


class TransportError(RecommendError):
    """The downstream connection is gone. Never shown to the client."""

    status_code = 499
    public_message = "Client disconnected."


class StreamClosedError(TransportError):
    """An event was sent after the session reached a terminal state."""


class StreamProtocolError(RecommendError):
    """An event was sent out of order."""
