import logging
from typing import Dict, List

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ...domain.errors import (
    AuthServiceError,
    BadRequestError,
    ConflictError,
    DeliveryError,
    ForbiddenError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    StorageError,
    UnauthorizedError,
    UnverifiedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    ConflictError: status.HTTP_400_BAD_REQUEST,
    BadRequestError: status.HTTP_400_BAD_REQUEST,
    InvalidTokenError: status.HTTP_400_BAD_REQUEST,
    InvalidCodeError: status.HTTP_400_BAD_REQUEST,
    InvalidCredentialsError: status.HTTP_401_UNAUTHORIZED,
    UnverifiedError: status.HTTP_401_UNAUTHORIZED,
    UnauthorizedError: status.HTTP_401_UNAUTHORIZED,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    NotFoundError: status.HTTP_404_NOT_FOUND,
}


def status_for(exc: AuthServiceError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[error_type]
    return status.HTTP_400_BAD_REQUEST


def _format_validation_errors(exc: RequestValidationError) -> Dict[str, List[str]]:
    formatted: Dict[str, List[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        path = ".".join(loc) or "body"
        message = error.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        formatted.setdefault(path, []).append(message)
    return formatted


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"message": "Validation failed", "errors": _format_validation_errors(exc)},
        )

    @app.exception_handler(AuthServiceError)
    async def auth_error_handler(_request: Request, exc: AuthServiceError) -> JSONResponse:
        content: Dict[str, object] = {"message": exc.message}
        if isinstance(exc, ValidationError) and exc.errors:
            content["errors"] = exc.errors
        if isinstance(exc, ForbiddenError):
            content["requiresTwoFactor"] = True
        headers = None
        if isinstance(exc, UnauthorizedError):
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(status_code=status_for(exc), content=content, headers=headers)

    @app.exception_handler(DeliveryError)
    async def delivery_error_handler(_request: Request, exc: DeliveryError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Failed to send email. Please try again later."},
        )

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Internal server error"},
        )
