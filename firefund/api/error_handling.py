"""
Centralized API Error Handling
Every error leaves the API as an APIErrorResponse body carrying the
request id, so a field client can quote it when a sync keeps failing
"""

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import IntegrityError
from typing import Optional, List
import logging
import uuid

from .standard_schemas import ErrorCode, APIErrorResponse, APIErrorDetail

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

STATUS_ERROR_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    409: ErrorCode.CONFLICT,
    422: ErrorCode.VALIDATION_ERROR,
    502: ErrorCode.EXTERNAL_SERVICE_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


def request_id_for(request: Request) -> str:
    """Reuse the caller's request id when it sent one"""
    return request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())


def error_response(
    request: Request,
    status_code: int,
    error_code: ErrorCode,
    message: str,
    details: Optional[List[APIErrorDetail]] = None,
    request_id: Optional[str] = None
) -> JSONResponse:
    body = APIErrorResponse(
        error=message,
        error_code=error_code,
        details=details or None,
        path=request.url.path,
        request_id=request_id or request_id_for(request)
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json"),
        headers={REQUEST_ID_HEADER: body.request_id}
    )


class APIError(Exception):
    """API error with a standardized error code"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[List[APIErrorDetail]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or []
        super().__init__(message)


class ValidationAPIError(APIError):
    """Request rejected by a business rule (400)"""

    def __init__(self, message: str, field_errors: Optional[List[APIErrorDetail]] = None):
        super().__init__(message, ErrorCode.VALIDATION_ERROR, status.HTTP_400_BAD_REQUEST, field_errors)


class NotFoundAPIError(APIError):
    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} with identifier '{identifier}' not found",
            ErrorCode.NOT_FOUND,
            status.HTTP_404_NOT_FOUND
        )


class ConflictAPIError(APIError):
    """State transition or uniqueness conflict (409)"""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.CONFLICT, status.HTTP_409_CONFLICT)


class UnauthorizedAPIError(APIError):
    def __init__(self, message: str = "Authentication required",
                 error_code: ErrorCode = ErrorCode.UNAUTHORIZED):
        super().__init__(message, error_code, status.HTTP_401_UNAUTHORIZED)


class ForbiddenAPIError(APIError):
    """Role or ownership check failed (403)"""

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, ErrorCode.FORBIDDEN, status.HTTP_403_FORBIDDEN)


class ExternalServiceAPIError(APIError):
    """Upstream service (workflow engine, SMTP) failed"""

    def __init__(self, message: str, details: Optional[List[APIErrorDetail]] = None):
        super().__init__(message, ErrorCode.EXTERNAL_SERVICE_ERROR, status.HTTP_502_BAD_GATEWAY, details)


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Render raised APIErrors; 5xx are errors, the rest warnings"""
    request_id = request_id_for(request)
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        f"{request.method} {request.url.path} -> {exc.status_code} {exc.error_code.value}: "
        f"{exc.message} (request_id: {request_id})"
    )
    return error_response(request, exc.status_code, exc.error_code, exc.message, exc.details, request_id)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """HTTPExceptions raised by FastAPI itself or by /health"""
    error_code = STATUS_ERROR_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return error_response(request, exc.status_code, error_code, str(exc.detail))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Pydantic request validation failures (422)"""
    field_errors = [
        APIErrorDetail(
            field=" -> ".join(str(loc) for loc in error["loc"]),
            message=error["msg"],
            code=error["type"]
        )
        for error in exc.errors()
    ]

    logger.warning(
        f"{request.method} {request.url.path}: {len(field_errors)} invalid field(s): "
        f"{', '.join(detail.field for detail in field_errors)}"
    )
    return error_response(
        request, status.HTTP_422_UNPROCESSABLE_ENTITY, ErrorCode.VALIDATION_ERROR,
        "Validation failed", field_errors
    )


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Unique or foreign key violations that no route anticipated"""
    logger.warning(f"{request.method} {request.url.path}: integrity error: {exc.orig}")
    return error_response(
        request, status.HTTP_409_CONFLICT, ErrorCode.CONFLICT,
        "Request conflicts with existing data"
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler"""
    request_id = request_id_for(request)
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {exc} (request_id: {request_id})",
        exc_info=True
    )
    return error_response(
        request, status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.INTERNAL_ERROR,
        "Internal server error", request_id=request_id
    )
