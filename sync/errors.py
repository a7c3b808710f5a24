"""Error types for calendar sync."""
from enum import Enum
from typing import Optional


class ErrorType(Enum):
    """Failure categories surfaced to callers."""
    AUTH_ERROR = "authError"
    CONFLICT = "conflict"
    NETWORK = "network"
    RETRY = "retry"
    SERVER_ERROR = "serverError"


RETRYABLE_SERVER_STATUSES = (500, 502, 503, 504)

USER_MESSAGES = {
    ErrorType.AUTH_ERROR: (
        "Your calendar connection has expired. Please reconnect your account."
    ),
    ErrorType.CONFLICT: (
        "That time slot just filled up. Let's refresh and find you a new "
        "time that works."
    ),
    ErrorType.NETWORK: (
        "Network issue while connecting to your calendar. Please check your "
        "connection and try again."
    ),
    ErrorType.RETRY: (
        "Too many calendar requests. Please wait a moment and try again."
    ),
    ErrorType.SERVER_ERROR: (
        "Unable to add this booking to your calendar. Please try again later."
    ),
}


def classify_status(status_code: int) -> ErrorType:
    """
    Map an HTTP status code from the calendar to an error category.

    Args:
        status_code: HTTP status code of the failed response

    Returns:
        ErrorType for the status
    """
    if status_code in (401, 403):
        return ErrorType.AUTH_ERROR
    if status_code == 409:
        return ErrorType.CONFLICT
    if status_code == 429:
        return ErrorType.RETRY
    return ErrorType.SERVER_ERROR


def is_retryable(error_type: ErrorType, status_code: Optional[int] = None) -> bool:
    """Whether a failure may be retried automatically."""
    if error_type in (ErrorType.RETRY, ErrorType.NETWORK):
        return True
    if error_type == ErrorType.SERVER_ERROR:
        return status_code in RETRYABLE_SERVER_STATUSES
    return False


class CalendarApiError(Exception):
    """Raised when the external calendar rejects or fails a call."""

    def __init__(
        self,
        error_type: ErrorType,
        message: str,
        status_code: Optional[int] = None
    ):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return is_retryable(self.error_type, self.status_code)


class CallCancelledError(Exception):
    """Raised when the caller cancels an in-flight calendar call."""


class InvalidTransitionError(Exception):
    """Raised when a transition is not allowed from the event's status."""

    def __init__(self, status, trigger):
        super().__init__(
            f"Transition '{getattr(trigger, 'value', trigger)}' is not allowed "
            f"from status '{getattr(status, 'value', status)}'"
        )
        self.status = status
        self.trigger = trigger


class EventNotFoundError(KeyError):
    """Raised when a sync event does not exist in the user's partition."""

    def __init__(self, user_id: str, event_id: str):
        super().__init__(f"Sync event {event_id} not found for user {user_id}")
        self.user_id = user_id
        self.event_id = event_id

    def __str__(self) -> str:
        return self.args[0]


class ConcurrentModificationError(Exception):
    """Raised when a sync event was changed by another writer."""

    def __init__(self, event_id: str, expected_version: int):
        super().__init__(
            f"Sync event {event_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
        self.event_id = event_id
        self.expected_version = expected_version
