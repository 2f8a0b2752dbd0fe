from datetime import UTC, datetime
from typing import Any


class JobEngineException(Exception):
    """Base exception for the job engine."""

    code = "job_engine_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Error envelope for callers that surface engine errors over a wire."""
        return {
            "ok": False,
            "error": {
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
            "timestamp": datetime.now(UTC).isoformat(),
        }


class ValidationError(JobEngineException):
    """Raised when a job type is unknown or enqueue options are malformed."""

    code = "validation_error"


class NotFoundError(JobEngineException):
    """Raised when a job id is unknown."""

    code = "not_found"


class StorageError(JobEngineException):
    """Raised when the storage backend is unavailable."""

    code = "storage_error"


class InvalidTransitionError(JobEngineException):
    """Raised when a status transition does not match the record's current status."""

    code = "invalid_transition"


class ShutdownError(JobEngineException):
    """Raised when work is submitted after shutdown has started."""

    code = "shutdown"


class ExecutionError(JobEngineException):
    """
    Raised by handlers to report a failed attempt.

    Any other exception escaping a handler is treated as a retryable
    ExecutionError; raise this with ``retryable=False`` to fail permanently.
    """

    code = "execution_error"

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.retryable = retryable


class JobTimeoutError(ExecutionError):
    """An attempt exceeded its execution deadline."""

    code = "timeout"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, retryable=True, details=details)


class AbandonedError(ExecutionError):
    """A running job was given up on without its handler stopping."""

    code = "abandoned"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, retryable=False, details=details)


class JobCancelledError(JobEngineException):
    """Raised inside a handler when it observes a cancellation signal."""

    code = "cancelled"
