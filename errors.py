"""Error codes and exceptions for API responses.

Every failure leaves the API as ``{"success": false, "message": ..., "error_code": ...}``.
Driver and gateway errors are logged here and replaced by a fixed message so
internal details never reach the client.
"""

from contextlib import contextmanager
from enum import Enum
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from logging_config import get_logger

logger = get_logger(__name__)


class ErrorCode(str, Enum):
    """Machine-readable codes, format ERR_{CATEGORY}_{NUMBER}."""

    AUTH_MISSING_TOKEN = "ERR_AUTH_001"
    AUTH_INVALID_TOKEN = "ERR_AUTH_002"
    AUTH_FORBIDDEN = "ERR_AUTH_003"

    VAL_REQUIRED_FIELD = "ERR_VAL_001"
    VAL_INVALID_FORMAT = "ERR_VAL_002"

    RES_NOT_FOUND = "ERR_RES_001"
    RES_CONFLICT = "ERR_RES_002"

    BILLING_PAYMENT_FAILED = "ERR_BILLING_001"
    BILLING_GATEWAY_ERROR = "ERR_BILLING_002"

    SYS_DATABASE_ERROR = "ERR_SYS_001"
    SYS_INTERNAL_ERROR = "ERR_SYS_002"


_DEFAULT_CODES = {
    status.HTTP_400_BAD_REQUEST: ErrorCode.VAL_INVALID_FORMAT,
    status.HTTP_401_UNAUTHORIZED: ErrorCode.AUTH_INVALID_TOKEN,
    status.HTTP_403_FORBIDDEN: ErrorCode.AUTH_FORBIDDEN,
    status.HTTP_404_NOT_FOUND: ErrorCode.RES_NOT_FOUND,
    status.HTTP_409_CONFLICT: ErrorCode.RES_CONFLICT,
}


class APIError(HTTPException):
    """HTTPException that remembers which ErrorCode it stands for."""

    def __init__(self, status_code: int, message: str, code: Optional[ErrorCode] = None):
        super().__init__(status_code=status_code, detail=message)
        self.code = code or _DEFAULT_CODES.get(status_code, ErrorCode.SYS_INTERNAL_ERROR)


def bad_request(message: str, code: ErrorCode = ErrorCode.VAL_INVALID_FORMAT) -> APIError:
    return APIError(status.HTTP_400_BAD_REQUEST, message, code)


def required(message: str) -> APIError:
    return APIError(status.HTTP_400_BAD_REQUEST, message, ErrorCode.VAL_REQUIRED_FIELD)


def unauthorized(message: str, code: ErrorCode = ErrorCode.AUTH_INVALID_TOKEN) -> APIError:
    return APIError(status.HTTP_401_UNAUTHORIZED, message, code)


def forbidden(message: str) -> APIError:
    return APIError(status.HTTP_403_FORBIDDEN, message, ErrorCode.AUTH_FORBIDDEN)


def not_found(message: str) -> APIError:
    return APIError(status.HTTP_404_NOT_FOUND, message, ErrorCode.RES_NOT_FOUND)


def conflict(message: str) -> APIError:
    return APIError(status.HTTP_409_CONFLICT, message, ErrorCode.RES_CONFLICT)


@contextmanager
def database_errors(message: str):
    """Turn a driver failure inside the block into a sanitized 500."""
    try:
        yield
    except PyMongoError:
        logger.exception(message)
        raise APIError(status.HTTP_500_INTERNAL_SERVER_ERROR, message, ErrorCode.SYS_DATABASE_ERROR)


def _body(message: str, code: ErrorCode) -> dict:
    return {"success": False, "message": message, "error_code": code.value}


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code = getattr(exc, "code", None) or _DEFAULT_CODES.get(exc.status_code, ErrorCode.SYS_INTERNAL_ERROR)
    return JSONResponse(
        status_code=exc.status_code,
        content=_body(str(exc.detail), code),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", message)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_body(message, ErrorCode.VAL_INVALID_FORMAT),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", extra={"path": request.url.path, "method": request.method})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_body("Something went wrong", ErrorCode.SYS_INTERNAL_ERROR),
    )
