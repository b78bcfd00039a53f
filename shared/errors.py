"""
Shared error handling for the Patient EHR Access Layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class EHRServiceException(Exception):
    """Base exception for EHR services."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(EHRServiceException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(EHRServiceException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(EHRServiceException):
    """Validation-related errors."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(EHRServiceException):
    """Requested record does not exist, locally or in a remote service."""

    status_code = 404

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(EHRServiceException):
    """Record already exists."""

    status_code = 409

    def __init__(self, message: str = "Resource already exists", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class ExternalServiceError(EHRServiceException):
    """External service errors."""

    status_code = 502

    def __init__(self, service: str, message: str = "External service error",
                 details: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details, status_code)


class IdentityServiceError(ExternalServiceError):
    """Failure reported by (or while reaching) the security service."""

    def __init__(self, message: str = "Security service error", upstream_status: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        # Client errors keep their status; outages surface as 502
        status_code = upstream_status if upstream_status is not None and 400 <= upstream_status < 500 else 502
        super().__init__("security", message, details, status_code)
        self.upstream_status = upstream_status


class CacheError(EHRServiceException):
    """Cache-layer failure. Never surfaced to clients."""

    status_code = 500

    def __init__(self, message: str = "Cache error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_ERROR", message, details)
