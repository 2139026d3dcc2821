"""
Error taxonomy for the presence relay service.

Every error is handled at the HTTP boundary and rendered as ``{"error": message}``.
"""


class PresenceError(Exception):
    """Base class for all presence relay errors."""

    status_code = 500


class ValidationError(PresenceError):
    """Raised when a session identifier or mood is malformed."""

    status_code = 400


class RateLimitExceeded(PresenceError):
    """Raised when a session exceeds its request budget for an operation."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded") -> None:
        super().__init__(message)


class StoreError(PresenceError):
    """Raised when the key-value backend cannot be reached or fails.

    The message is for server-side logging only; clients always receive
    a generic 500 body.
    """
