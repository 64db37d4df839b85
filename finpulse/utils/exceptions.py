"""
Application errors.

Each carries the HTTP status, error code and retry hint used to render the
JSON error envelope.
"""

from typing import List, Optional


class AppException(Exception):
    """Root of the finpulse error hierarchy."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        status_code: int = 500,
        details: Optional[List[str]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or []
        super().__init__(self.message)


class ValidationError(AppException):
    """Rejected input, e.g. a malformed manual pattern or preference update."""

    def __init__(
        self,
        message: str = "Validation error",
        details: Optional[List[str]] = None
    ):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=422,
            details=details
        )


class NotFoundError(AppException):
    """A pattern, suggestion or anomaly that does not exist for the user."""

    def __init__(
        self,
        message: str = "Resource not found",
        resource_type: str = "resource",
        resource_id: Optional[str] = None
    ):
        if resource_id:
            message = f"{resource_type.title()} with ID '{resource_id}' not found"

        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details=[f"Resource type: {resource_type}"]
        )


class ConflictError(AppException):
    """The write clashes with existing state, e.g. a duplicate manual pattern."""

    def __init__(
        self,
        message: str = "Resource conflict",
        details: Optional[List[str]] = None
    ):
        super().__init__(
            message=message,
            code="CONFLICT_ERROR",
            status_code=409,
            details=details
        )


class ConcurrencyConflictError(ConflictError):
    """Raised when a versioned document changed between read and write."""

    retryable = True

    def __init__(
        self,
        message: str = "Document was modified concurrently",
        resource_type: str = "document",
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None
    ):
        details = [f"Resource type: {resource_type}"]
        if expected_version is not None:
            details.append(f"Expected version: {expected_version}")
        if actual_version is not None:
            details.append(f"Actual version: {actual_version}")

        super().__init__(message=message, details=details)
        self.code = "CONCURRENCY_CONFLICT"
        self.expected_version = expected_version
        self.actual_version = actual_version


class DatabaseError(AppException):
    """The document store failed or is unreachable."""

    retryable = True

    def __init__(
        self,
        message: str = "Database operation failed",
        code: str = "DATABASE_ERROR",
        details: Optional[List[str]] = None
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=503,
            details=details
        )


class ExternalServiceError(AppException):
    """A collaborator outside the store failed, e.g. the transaction feed."""

    retryable = True

    def __init__(
        self,
        message: str = "External service error",
        service_name: str = "unknown",
        details: Optional[List[str]] = None
    ):
        super().__init__(
            message=message,
            code="EXTERNAL_SERVICE_ERROR",
            status_code=502,
            details=details or [f"Service: {service_name}"]
        )
