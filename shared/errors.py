"""
Shared error handling for the Policy Resolution Service.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class PolicyEngineException(Exception):
    """Base exception for policy engine services."""

    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(PolicyEngineException):
    """Rule or request validation errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details, status_code=400)


class InvalidRegion(PolicyEngineException):
    """Unknown region or region type."""

    def __init__(self, message: str = "Invalid region", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_REGION", message, details, status_code=400)


class NotFoundError(PolicyEngineException):
    """Requested entity does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            "NOT_FOUND",
            f"{entity} not found",
            {"entity_type": entity, "entity_id": entity_id},
            status_code=404
        )


class AccessDeniedError(PolicyEngineException):
    """Request rejected by an access-control rule."""

    def __init__(self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__("ACCESS_DENIED", message, details, status_code=403)


class FeatureDisabledError(PolicyEngineException):
    """Feature toggle is off for the caller's region."""

    def __init__(self, feature: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "FEATURE_DISABLED",
            f"Feature '{feature}' is not available",
            details,
            status_code=403
        )


class RateLimitError(PolicyEngineException):
    """Rate limiting errors."""

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMITED", message, details, status_code=429)


class MaintenanceModeError(PolicyEngineException):
    """Platform is in maintenance mode."""

    def __init__(self, message: str = "Platform is under maintenance"):
        super().__init__("MAINTENANCE_MODE", message, status_code=503)


class ConfigurationUnavailable(PolicyEngineException):
    """Effective configuration could not be resolved."""

    def __init__(self, message: str = "Configuration unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_UNAVAILABLE", message, details, status_code=503)


class StoreUnavailable(PolicyEngineException):
    """Backing rule or counter store could not be reached."""

    def __init__(self, store: str, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", f"{store}: {message}", details, status_code=503)
