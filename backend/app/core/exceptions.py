"""
Exception hierarchy for the case lifecycle service.

Each exception carries an ``ErrorCode``, structured ``details`` and the HTTP
status the API renders it with, so route handlers never translate errors
themselves. The families are:

- ``LifecycleValidationError``: the caller can fix the request; every
  collected reason is included
- ``CaseNotFoundError`` and ``StateConflictError``: raised by persistence
- ``ApprovalNotFoundError`` and ``ApprovalAlreadyDecidedError``: approval
  requests that are missing or no longer pending
- ``SideEffectDegradedError``: the change committed but a follow-up failed
- ``ProgrammingError``: broken integration, e.g. an unknown enum value
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Stable error identifiers returned in API error bodies."""

    # Configuration (1xxx)
    CONFIG_VALIDATION_FAILED = "1001"

    # Persistence (2xxx)
    DATABASE_CONNECTION_ERROR = "2001"
    DATABASE_OPERATION_FAILED = "2002"

    # Request (3xxx)
    REQUEST_VALIDATION_FAILED = "3001"
    REQUEST_REJECTED = "3002"

    # Case (4xxx)
    CASE_NOT_FOUND = "4001"
    APPROVAL_NOT_FOUND = "4002"
    CASE_VERSION_CONFLICT = "4006"

    # Internal (9xxx)
    INTERNAL_ERROR = "9001"

    # Lifecycle (12xxx)
    LIFECYCLE_VALIDATION_FAILED = "12001"
    LIFECYCLE_TRANSITION_DENIED = "12002"
    LIFECYCLE_STATUS_DENIED = "12003"
    LIFECYCLE_METADATA_INVALID = "12004"
    LIFECYCLE_ALREADY_INITIALIZED = "12005"
    LIFECYCLE_UNKNOWN_VALUE = "12006"
    LIFECYCLE_SIDE_EFFECT_DEGRADED = "12007"
    LIFECYCLE_APPROVAL_DENIED = "12008"
    APPROVAL_ALREADY_DECIDED = "12009"

    # Tasks (13xxx)
    TASK_CREATION_FAILED = "13001"


USER_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.DATABASE_CONNECTION_ERROR: "Unable to connect to the database. Please try again later.",
    ErrorCode.CASE_NOT_FOUND: "The requested case could not be found.",
    ErrorCode.CASE_VERSION_CONFLICT: "The case was modified concurrently. Please reload and try again.",
    ErrorCode.LIFECYCLE_VALIDATION_FAILED: "The requested lifecycle change is not allowed yet.",
    ErrorCode.LIFECYCLE_TRANSITION_DENIED: "The case cannot move to the requested phase yet.",
    ErrorCode.LIFECYCLE_STATUS_DENIED: "The requested status change is not allowed in the current phase.",
    ErrorCode.LIFECYCLE_METADATA_INVALID: "The case metadata contains invalid fields.",
    ErrorCode.LIFECYCLE_ALREADY_INITIALIZED: "The case lifecycle has already been started.",
    ErrorCode.LIFECYCLE_SIDE_EFFECT_DEGRADED: "The case was updated but follow-up tasks could not be created.",
    ErrorCode.APPROVAL_NOT_FOUND: "The requested approval could not be found.",
    ErrorCode.LIFECYCLE_APPROVAL_DENIED: "You are not allowed to decide on this transition.",
    ErrorCode.APPROVAL_ALREADY_DECIDED: "This transition request has already been decided.",
}

DEFAULT_USER_MESSAGE = "An unexpected error occurred. Please contact support."

RETRYABLE_CODES = frozenset({
    ErrorCode.DATABASE_CONNECTION_ERROR,
    ErrorCode.CASE_VERSION_CONFLICT,
    ErrorCode.LIFECYCLE_SIDE_EFFECT_DEGRADED,
    ErrorCode.TASK_CREATION_FAILED,
})


class BaseCustomException(Exception):
    """
    Root of every error raised by the service.

    Args:
        message: Technical message for logs
        error_code: Identifier returned to API clients
        details: Structured context rendered in the error body
        http_status_code: Status the API responds with
        correlation_id: Overrides the request correlation id in the response
        user_message: Client-facing text; derived from the code when omitted
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: Optional[Dict[str, Any]] = None,
        http_status_code: int = 500,
        correlation_id: Optional[str] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.http_status_code = http_status_code
        self.correlation_id = correlation_id
        self.user_message = user_message or USER_MESSAGES.get(error_code, DEFAULT_USER_MESSAGE)

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class ConfigurationError(BaseCustomException):
    """Invalid application settings detected at startup."""

    def __init__(self, message: str, config_section: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.CONFIG_VALIDATION_FAILED,
            details={"config_section": config_section},
            http_status_code=500,
            **kwargs
        )


class DatabaseError(BaseCustomException):
    """A driver or connection failure. Propagated to the caller without retries."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.DATABASE_OPERATION_FAILED,
        database_type: Optional[str] = None,
        collection_name: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            details={
                "database_type": database_type,
                "collection_name": collection_name,
                "operation": operation,
            },
            http_status_code=500,
            **kwargs
        )


class LifecycleValidationError(BaseCustomException):
    """
    A lifecycle request the caller can correct.

    ``errors`` holds every reason found by the state machine, the phase rules
    and the case-type validator, so one response lists everything to fix.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        error_code: ErrorCode = ErrorCode.LIFECYCLE_VALIDATION_FAILED,
        case_id: Optional[str] = None,
        missing_fields: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
        **kwargs
    ):
        self.errors = list(errors or [message])
        self.missing_fields = list(missing_fields or [])
        super().__init__(
            message=message,
            error_code=error_code,
            details={
                "case_id": case_id,
                "errors": self.errors,
                "missing_fields": self.missing_fields,
                "warnings": list(warnings or []),
            },
            http_status_code=422,
            **kwargs
        )


class CaseNotFoundError(BaseCustomException):
    def __init__(self, case_id: str, **kwargs):
        self.case_id = case_id
        super().__init__(
            message=f"Case '{case_id}' not found",
            error_code=ErrorCode.CASE_NOT_FOUND,
            details={"case_id": case_id},
            http_status_code=404,
            **kwargs
        )


class ApprovalNotFoundError(BaseCustomException):
    def __init__(self, approval_id: str, **kwargs):
        self.approval_id = approval_id
        super().__init__(
            message=f"Approval request '{approval_id}' not found",
            error_code=ErrorCode.APPROVAL_NOT_FOUND,
            details={"approval_id": approval_id},
            http_status_code=404,
            **kwargs
        )


class ApprovalAlreadyDecidedError(BaseCustomException):
    """The approval request is no longer pending."""

    def __init__(self, approval_id: str, status: str, **kwargs):
        self.approval_id = approval_id
        self.status = status
        super().__init__(
            message=f"Approval request '{approval_id}' already {status}",
            error_code=ErrorCode.APPROVAL_ALREADY_DECIDED,
            details={"approval_id": approval_id, "status": status},
            http_status_code=409,
            **kwargs
        )


class StateConflictError(BaseCustomException):
    """
    The stored version moved on since the case was read.

    Retry the whole operation from a fresh read.
    """

    def __init__(
        self,
        case_id: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
        **kwargs
    ):
        self.case_id = case_id
        super().__init__(
            message=f"Concurrent modification of case '{case_id}' detected",
            error_code=ErrorCode.CASE_VERSION_CONFLICT,
            details={
                "case_id": case_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
            http_status_code=409,
            **kwargs
        )


class SideEffectDegradedError(BaseCustomException):
    """
    Raised after a committed lifecycle change whose follow-up tasks failed.

    ``result`` is the committed outcome and is never rolled back;
    ``failed_effects`` lists what to retry.
    """

    def __init__(
        self,
        message: str,
        case_id: str,
        result: Any = None,
        failed_effects: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ):
        self.case_id = case_id
        self.result = result
        self.failed_effects = list(failed_effects or [])
        super().__init__(
            message=message,
            error_code=ErrorCode.LIFECYCLE_SIDE_EFFECT_DEGRADED,
            details={"case_id": case_id, "failed_effects": self.failed_effects},
            http_status_code=207,
            **kwargs
        )


class ProgrammingError(BaseCustomException):
    """Input that only broken wiring can produce. Never retryable."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.LIFECYCLE_UNKNOWN_VALUE,
        value: Optional[Any] = None,
        expected_type: Optional[str] = None,
        http_status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        merged = {
            "value": repr(value) if value is not None else None,
            "expected_type": expected_type,
        }
        merged.update(details or {})
        super().__init__(
            message=message,
            error_code=error_code,
            details=merged,
            http_status_code=http_status_code,
            **kwargs
        )


class LifecycleAlreadyInitializedError(ProgrammingError):
    def __init__(self, case_id: str, **kwargs):
        self.case_id = case_id
        super().__init__(
            message=f"Lifecycle for case '{case_id}' is already initialized",
            error_code=ErrorCode.LIFECYCLE_ALREADY_INITIALIZED,
            details={"case_id": case_id},
            http_status_code=409,
            **kwargs
        )


class TaskCreationError(BaseCustomException):
    """Raised by a task repository that could not store a task."""

    def __init__(
        self,
        message: str,
        case_id: Optional[str] = None,
        task_title: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.TASK_CREATION_FAILED,
            details={"case_id": case_id, "task_title": task_title},
            http_status_code=502,
            **kwargs
        )


def is_retryable_error(error: Exception) -> bool:
    """True when repeating the same request may succeed."""
    if isinstance(error, BaseCustomException):
        return error.error_code in RETRYABLE_CODES
    return isinstance(error, (ConnectionError, TimeoutError))


def get_exception_response_data(exception: BaseCustomException) -> Dict[str, Any]:
    """Build the JSON error envelope for ``exception``."""
    return {
        "success": False,
        "error": {
            "code": exception.error_code,
            "message": exception.user_message,
            "details": exception.details,
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "correlation_id": exception.correlation_id,
    }


def raise_unknown_value(value: Any, expected_type: str) -> None:
    raise ProgrammingError(
        message=f"Unrecognized {expected_type} value: {value!r}",
        value=value,
        expected_type=expected_type,
    )
