"""
Error taxonomy for the check-in session engine.

Store operations never raise these; they come back inside a GatewayResult
so callers can decide how to surface them.
"""


class CheckInError(Exception):
    error_code = "CHECKIN_ERROR"

    def __init__(self, message: str, *, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class PersistenceError(CheckInError):
    """A backend call failed."""
    error_code = "PERSISTENCE_ERROR"


class CheckInValidationError(CheckInError):
    """Caller-supplied input rejected before any backend call."""
    error_code = "VALIDATION_ERROR"


class SessionConflictError(CheckInValidationError):
    error_code = "SESSION_CONFLICT"


class NoActiveCheckInError(CheckInValidationError):
    error_code = "NO_ACTIVE_CHECKIN"


class SubscriptionError(CheckInError):
    """The change feed dropped or refused a subscription."""
    error_code = "SUBSCRIPTION_ERROR"


class RecordNotFoundError(CheckInValidationError):
    """The row does not exist or belongs to another couple."""
    error_code = "NOT_FOUND"
