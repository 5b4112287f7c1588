"""
Exception handlers for the lifecycle API.

All failures leave the service in one envelope::

    {"success": false,
     "error": {"code", "message", "details", "category", "retryable"},
     "correlation_id": ...}

A ``SideEffectDegradedError`` is answered with 207 and the committed result
under ``data``: the phase change happened, only its follow-up tasks did not.
"""

import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.app.core.exceptions import (
    BaseCustomException,
    ErrorCode,
    SideEffectDegradedError,
    get_exception_response_data,
    is_retryable_error,
)
from backend.app.utils.logging import get_correlation_id, get_logger
from backend.config.settings import get_settings


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    RESOURCE = "resource"
    CONFLICT = "conflict"
    SIDE_EFFECT = "side_effect"
    INTEGRATION = "integration"
    SYSTEM = "system"


_CLASSIFICATION: Dict[ErrorCode, Tuple[ErrorCategory, ErrorSeverity]] = {
    ErrorCode.REQUEST_VALIDATION_FAILED: (ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    ErrorCode.REQUEST_REJECTED: (ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    ErrorCode.LIFECYCLE_VALIDATION_FAILED: (ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    ErrorCode.LIFECYCLE_TRANSITION_DENIED: (ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    ErrorCode.LIFECYCLE_STATUS_DENIED: (ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    ErrorCode.LIFECYCLE_METADATA_INVALID: (ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    ErrorCode.CASE_NOT_FOUND: (ErrorCategory.RESOURCE, ErrorSeverity.LOW),
    ErrorCode.APPROVAL_NOT_FOUND: (ErrorCategory.RESOURCE, ErrorSeverity.LOW),
    ErrorCode.LIFECYCLE_APPROVAL_DENIED: (ErrorCategory.VALIDATION, ErrorSeverity.LOW),
    ErrorCode.APPROVAL_ALREADY_DECIDED: (ErrorCategory.CONFLICT, ErrorSeverity.LOW),
    ErrorCode.CASE_VERSION_CONFLICT: (ErrorCategory.CONFLICT, ErrorSeverity.MEDIUM),
    ErrorCode.LIFECYCLE_ALREADY_INITIALIZED: (ErrorCategory.CONFLICT, ErrorSeverity.MEDIUM),
    ErrorCode.LIFECYCLE_SIDE_EFFECT_DEGRADED: (ErrorCategory.SIDE_EFFECT, ErrorSeverity.HIGH),
    ErrorCode.TASK_CREATION_FAILED: (ErrorCategory.SIDE_EFFECT, ErrorSeverity.HIGH),
    ErrorCode.LIFECYCLE_UNKNOWN_VALUE: (ErrorCategory.INTEGRATION, ErrorSeverity.HIGH),
    ErrorCode.CONFIG_VALIDATION_FAILED: (ErrorCategory.SYSTEM, ErrorSeverity.CRITICAL),
    ErrorCode.DATABASE_CONNECTION_ERROR: (ErrorCategory.SYSTEM, ErrorSeverity.CRITICAL),
    ErrorCode.DATABASE_OPERATION_FAILED: (ErrorCategory.SYSTEM, ErrorSeverity.HIGH),
}

_STATUS_CODES = {
    409: ErrorCode.CASE_VERSION_CONFLICT,
    422: ErrorCode.REQUEST_VALIDATION_FAILED,
}


def _serialize_result(result: Any) -> Any:
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, (list, tuple)):
        return [_serialize_result(item) for item in result]
    return result


def classify_error(error_code: ErrorCode) -> Tuple[ErrorCategory, ErrorSeverity]:
    return _CLASSIFICATION.get(error_code, (ErrorCategory.SYSTEM, ErrorSeverity.MEDIUM))


class ErrorMetrics:
    """In-process error counters served by ``/api/v1/health/errors``."""

    def __init__(self):
        self.total_errors = 0
        self.by_code: Dict[str, int] = {}
        self.by_category: Dict[str, int] = {}
        self.last_error_time: Optional[datetime] = None

    def record(self, error_code: ErrorCode, category: ErrorCategory) -> None:
        self.total_errors += 1
        self.by_code[error_code.value] = self.by_code.get(error_code.value, 0) + 1
        self.by_category[category.value] = self.by_category.get(category.value, 0) + 1
        self.last_error_time = datetime.now(timezone.utc)

    def summary(self) -> Dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "error_counts_by_code": dict(self.by_code),
            "error_counts_by_category": dict(self.by_category),
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
        }


class ErrorHandler:
    """Turns exceptions into JSON responses and records them."""

    def __init__(self):
        self.logger = get_logger(__name__)
        self.metrics = ErrorMetrics()
        self.is_development = get_settings().environment == "development"

    def _respond(
        self,
        request: Request,
        status_code: int,
        error_code: ErrorCode,
        message: str,
        details: Dict[str, Any],
        correlation_id: Optional[str] = None,
        retryable: bool = False,
        extra: Optional[Dict[str, Any]] = None
    ) -> JSONResponse:
        correlation_id = correlation_id or self.correlation_id_for(request)
        category, _ = classify_error(error_code)
        self.metrics.record(error_code, category)

        body: Dict[str, Any] = {
            "success": False,
            "error": {
                "code": error_code.value,
                "message": message,
                "details": details,
                "category": category.value,
                "retryable": retryable,
            },
            "correlation_id": correlation_id,
        }
        body.update(extra or {})
        return JSONResponse(
            status_code=status_code,
            content=body,
            headers={"X-Correlation-ID": correlation_id}
        )

    def handle_custom_exception(self, request: Request, exc: BaseCustomException) -> JSONResponse:
        correlation_id = exc.correlation_id or self.correlation_id_for(request)
        self._log_custom_exception(request, exc, correlation_id)

        envelope = get_exception_response_data(exc)
        extra: Dict[str, Any] = {"timestamp": envelope["timestamp"]}
        if isinstance(exc, SideEffectDegradedError):
            extra["data"] = _serialize_result(exc.result)
        if self.is_development:
            extra["debug"] = {
                "exception_type": type(exc).__name__,
                "technical_message": exc.message,
                "request_method": request.method,
                "request_url": str(request.url),
            }

        return self._respond(
            request,
            exc.http_status_code,
            exc.error_code,
            envelope["error"]["message"],
            envelope["error"]["details"],
            correlation_id=correlation_id,
            retryable=is_retryable_error(exc),
            extra=extra
        )

    def handle_http_exception(self, request: Request, exc: StarletteHTTPException) -> JSONResponse:
        error_code = _STATUS_CODES.get(exc.status_code, ErrorCode.REQUEST_REJECTED)
        self.logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=str(exc.detail),
            method=request.method,
            url=str(request.url)
        )
        return self._respond(
            request,
            exc.status_code,
            error_code,
            str(exc.detail),
            {"http_status": exc.status_code}
        )

    def handle_validation_error(self, request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = [
            {
                "field": ".".join(str(part) for part in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        self.logger.warning(
            "Request validation failed",
            error_count=len(problems),
            validation_errors=problems,
            method=request.method,
            url=str(request.url)
        )
        return self._respond(
            request,
            422,
            ErrorCode.REQUEST_VALIDATION_FAILED,
            "Please check your input and try again",
            {"validation_errors": problems, "error_count": len(problems)}
        )

    def handle_unexpected_error(self, request: Request, exc: Exception) -> JSONResponse:
        self.logger.error(
            "Unhandled exception",
            exception_type=type(exc).__name__,
            error=str(exc),
            method=request.method,
            url=str(request.url),
            exc_info=exc
        )
        extra = {}
        if self.is_development:
            extra["debug"] = {
                "exception_message": str(exc),
                "traceback": traceback.format_exception(type(exc), exc, exc.__traceback__),
            }
        return self._respond(
            request,
            500,
            ErrorCode.INTERNAL_ERROR,
            "An unexpected error occurred. Please try again later.",
            {"error_type": type(exc).__name__},
            retryable=is_retryable_error(exc),
            extra=extra
        )

    @staticmethod
    def correlation_id_for(request: Request) -> str:
        return request.headers.get("X-Correlation-ID") or get_correlation_id() or "unknown"

    def _log_custom_exception(self, request: Request, exc: BaseCustomException, correlation_id: str) -> None:
        category, severity = classify_error(exc.error_code)
        fields = {
            "error_code": exc.error_code.value,
            "technical_message": exc.message,
            "details": exc.details,
            "category": category.value,
            "severity": severity.value,
            "method": request.method,
            "url": str(request.url),
            "correlation_id": correlation_id,
        }
        log_methods = {
            ErrorSeverity.CRITICAL: self.logger.critical,
            ErrorSeverity.HIGH: self.logger.error,
            ErrorSeverity.MEDIUM: self.logger.warning,
            ErrorSeverity.LOW: self.logger.info,
        }
        log_methods[severity](f"{severity.value.capitalize()} severity error", **fields)


def setup_error_handlers(app: FastAPI) -> None:
    """Register the exception handlers and the error metrics endpoint on ``app``."""
    handler = ErrorHandler()

    @app.exception_handler(BaseCustomException)
    async def custom_exception_handler(request: Request, exc: BaseCustomException):
        return handler.handle_custom_exception(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return handler.handle_http_exception(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return handler.handle_validation_error(request, exc)

    @app.exception_handler(Exception)
    async def unexpected_exception_handler(request: Request, exc: Exception):
        return handler.handle_unexpected_error(request, exc)

    @app.get("/api/v1/health/errors", tags=["system"])
    async def error_metrics():
        return {
            "status": "healthy",
            "metrics": handler.metrics.summary(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    get_logger(__name__).info("Error handlers registered")
