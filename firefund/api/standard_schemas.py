"""
Standardized API Schemas for FireFund
Error and success envelopes shared by all endpoints
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field
from enum import Enum

from firefund.core.models import utcnow


class ErrorCode(str, Enum):
    """Machine-readable error codes; clients branch on these, not on messages"""

    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    VALIDATION_ERROR = "VALIDATION_ERROR"

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"

    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"


class APIErrorDetail(BaseModel):
    """One offending field or upstream detail"""
    field: Optional[str] = Field(None, description="Field path, e.g. 'body -> amount'")
    message: str = Field(..., description="Human-readable explanation")
    code: Optional[str] = Field(None, description="Validator error type")


class APIErrorResponse(BaseModel):
    """Body of every non-2xx response"""
    success: bool = Field(False, description="Always false")
    error: str = Field(..., description="Main error message, shown to volunteers as-is")
    error_code: ErrorCode
    details: Optional[List[APIErrorDetail]] = None
    path: Optional[str] = Field(None, description="Request path that failed")
    timestamp: datetime = Field(default_factory=utcnow)
    request_id: Optional[str] = Field(None, description="Echoed in the X-Request-ID response header")


class APISuccessResponse(BaseModel):
    """Acknowledgement for actions without a resource to return"""
    success: bool = True
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
