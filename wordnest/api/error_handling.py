from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from wordnest.api.schemas import Envelope, ErrorBody
from wordnest.logging import get_correlation_id, get_logger
from wordnest.service.errors import GENERIC_HTTP_CODES, AuthErrorCode, ServiceError
from wordnest.storage.errors import ConstraintViolation

logger = get_logger(__name__)


def _error_code_for_status(status_code: int) -> str:
    """Map an HTTP status to the code used when no domain code applies."""
    return GENERIC_HTTP_CODES.get(status_code, AuthErrorCode.SERVER_ERROR.value)


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build the error envelope response."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump(mode="json"))


def _validation_details(errors: list[dict[str, Any]]) -> dict[str, list[str]]:
    """Group pydantic errors by field name, dropping the ``body``/``query`` prefix."""
    details: dict[str, list[str]] = {}
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        field = ".".join(loc) or "body"
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.setdefault(field, []).append(message)
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.field == "username":
            code = AuthErrorCode.USERNAME_ALREADY_EXISTS.value
        elif exc.field == "email":
            code = AuthErrorCode.EMAIL_ALREADY_EXISTS.value
        else:
            code = GENERIC_HTTP_CODES[409]
        return _error_response(409, exc.message, exc.detail, code=code)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(list(exc.errors()))
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=sorted(details),
        )
        return _error_response(
            400,
            "Validation failed",
            details,
            code=AuthErrorCode.VALIDATION_ERROR.value,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict) and "error" in exc.detail:
            error_obj = exc.detail["error"]
            if isinstance(error_obj, dict):
                return _error_response(
                    exc.status_code,
                    error_obj.get("message", "http error"),
                    error_obj.get("details"),
                    code=error_obj.get("code"),
                )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code=AuthErrorCode.SERVER_ERROR.value)
