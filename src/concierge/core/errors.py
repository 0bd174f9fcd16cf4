"""Custom exception types for the Family Concierge agent.

Error messages follow a simple rule: say what failed, where, and what
to do about it. Per-item failures (one message, one event, one token)
are caught at the item boundary and recorded in the exceptions table;
these types exist so callers can tell the categories apart.
"""


class ConciergeError(Exception):
    """Base exception for all Family Concierge errors."""

    pass


class ConfigValidationError(ConciergeError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(ConciergeError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(ConciergeError):
    """Raised when MSAL device code flow fails or tokens cannot be acquired."""

    pass


class GraphAPIError(ConciergeError):
    """Raised when Microsoft Graph API returns an error.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error code from Graph API response (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RateLimitExceeded(GraphAPIError):
    """Raised when Graph keeps answering 429 after all retries."""

    def __init__(self, message: str):
        super().__init__(message, status_code=429, error_code="TooManyRequests")


class DatabaseError(ConciergeError):
    """Raised when SQLite operations fail."""

    pass


class ClassificationError(ConciergeError):
    """Raised when the obligation classifier cannot produce a usable answer.

    Attributes:
        message_id: Source message that failed classification
        attempts: Number of classification attempts made
    """

    def __init__(self, message: str, message_id: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.message_id = message_id
        self.attempts = attempts


class ExtractionError(ConciergeError):
    """Raised when an event cannot be derived from a message."""

    def __init__(self, message: str, message_id: str | None = None):
        super().__init__(message)
        self.message_id = message_id


class OperationTimeoutError(ConciergeError):
    """Raised when a remote call exceeds its time limit.

    The message always contains the literal ``TIMEOUT`` so operators can
    tell a hung service from one that returned an error.

    Attributes:
        label: Name of the guarded call (e.g. "getMessage msg-1")
        timeout_seconds: Limit that was exceeded
    """

    def __init__(self, label: str, timeout_seconds: float):
        super().__init__(f"TIMEOUT: {label} exceeded {timeout_seconds:g}s")
        self.label = label
        self.timeout_seconds = timeout_seconds


class CalendarWriteError(ConciergeError):
    """Raised when the calendar collaborator rejects a create/update.

    Attributes:
        operation_id: Calendar operation that failed
    """

    def __init__(self, message: str, operation_id: str | None = None):
        super().__init__(message)
        self.operation_id = operation_id


class UnsupportedOperationError(ConciergeError):
    """Raised when an operation type has no calendar dispatch (flag, skip)."""

    pass


class InvalidTransitionError(ConciergeError):
    """Raised when a calendar operation is moved out of a terminal state.

    Attributes:
        current: Status the operation is in
        target: Status that was requested
    """

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move calendar operation from '{current}' to '{target}'")
        self.current = current
        self.target = target


class PackError(ConciergeError):
    """Raised for pack registry problems (duplicate id, unknown pack)."""

    pass
