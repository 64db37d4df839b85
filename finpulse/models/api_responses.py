"""
API response models for OpenAPI documentation.
"""
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class HealthCheckResponse(BaseModel):
    """Response model for basic health check."""
    status: str = Field(..., description="Service health status", examples=["healthy"])
    timestamp: str = Field(..., description="Current timestamp in ISO format", examples=["2024-01-15T10:30:00Z"])
    version: str = Field(..., description="Application version", examples=["1.0.0"])
    environment: str = Field(..., description="Current environment", examples=["production"])
    app_name: str = Field(..., description="Application name", examples=["finpulse-api"])
    storage_backend: str = Field(..., description="Configured document store", examples=["firestore"])


class ReadinessResponse(BaseModel):
    """Response model for the readiness check."""
    status: str = Field(..., examples=["ready"])
    storage_backend: str = Field(..., examples=["firestore"])
    storage_response_ms: float = Field(..., ge=0, description="Round trip of a cheap store read")


class ErrorDetail(BaseModel):
    """Error detail model."""
    code: str = Field(..., description="Error code", examples=["VALIDATION_ERROR"])
    message: str = Field(..., description="Error message", examples=["Invalid input data"])
    details: List[Any] = Field(default_factory=list, description="Additional error details")
    retryable: bool = Field(False, description="Whether retrying the same request may succeed")


class ErrorMeta(BaseModel):
    """Error metadata model."""
    timestamp: float = Field(..., description="Error timestamp", examples=[1705316400.0])
    request_id: str = Field(..., description="Request ID for tracking", examples=["req_123456789"])
    path: str = Field(..., description="API endpoint path", examples=["/api/v1/recurring"])


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: ErrorDetail = Field(..., description="Error information")
    meta: ErrorMeta = Field(..., description="Request metadata")


class RemovedResponse(BaseModel):
    """Count of records removed by a bulk operation."""
    removed: int = Field(..., ge=0)


class SuppressionClearRequest(BaseModel):
    """Keys to release from the suppression list; all keys when omitted."""
    keys: Optional[List[str]] = Field(None, min_length=1)


ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Resource not found"},
    409: {"model": ErrorResponse, "description": "Conflict or concurrent modification"},
    422: {"model": ErrorResponse, "description": "Invalid input"},
}
