"""
Exception taxonomy for the Dual Gravity engine.

Data scarcity and slowness are recovered locally through fallback tiers and
never show up here. What remains is configuration, protocol and
cancellation failures, plus the retryable family raised by the catalog
client.
"""


class DualGravityError(Exception):
    """Base class for engine errors."""
    pass


class ConfigurationError(DualGravityError):
    """The engine is wired up in a way that cannot produce results."""
    pass


class EmptyStoreError(ConfigurationError):
    """The durable store has no tracks to fall back on."""
    pass


class StageError(DualGravityError):
    """A pipeline stage answered with an {error} payload."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message


class PipelineCancelled(DualGravityError):
    """The caller cancelled the request."""
    pass


class RetryableError(DualGravityError):
    """Base exception for errors that should trigger a retry"""
    pass


class RateLimitError(RetryableError):
    """Raised when rate limit is exceeded (429 status code)"""

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class ServerError(RetryableError):
    """Raised when server returns 5xx error"""
    pass


class NetworkError(RetryableError):
    """Raised when network connection fails"""
    pass
