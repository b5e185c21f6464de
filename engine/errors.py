"""
Exposure Engine Errors

Domain exceptions raised by the propagation engine, the stores and the
report service. Routes translate these into HTTP responses.
"""


class ExposureError(Exception):
    """Base class for all exposure engine errors."""
    pass


class TransientStoreError(ExposureError):
    """
    A store operation failed in a way that may succeed on retry
    (dropped connection, lock timeout, serialization failure).
    """
    pass


class ReportValidationError(ExposureError):
    """Report payload failed validation."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class ReportNotFoundError(ExposureError):
    """Report does not exist."""
    pass


class AuthorizationError(ExposureError):
    """Caller is not allowed to access the requested record."""
    pass


class RateLimitExceededError(ExposureError):
    """Caller exceeded the allowed number of requests for an action."""

    def __init__(self, action: str, limit: int):
        super().__init__(f"Rate limit exceeded for {action}: {limit} per hour")
        self.action = action
        self.limit = limit


class PushDeliveryError(ExposureError):
    """Push provider rejected or failed to accept a message."""

    INVALID_TOKEN_CODES = frozenset({"UNREGISTERED", "INVALID_ARGUMENT"})

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code

    @property
    def token_invalid(self) -> bool:
        return self.code in self.INVALID_TOKEN_CODES
