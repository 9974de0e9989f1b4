from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pitchcoach.api.schemas import ErrorBody
from pitchcoach.logging import get_logger, sanitize_error_message
from pitchcoach.service.errors import ServiceError
from pitchcoach.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Fallback codes for errors raised outside the service layer
_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "INTERNAL_ERROR" if status_code >= 500 else "VALIDATION_ERROR"


def _error_response(
    status_code: int,
    message: str,
    code: str | None = None,
) -> JSONResponse:
    """Render the ``{message, status, code}`` error body."""
    body = ErrorBody(
        message=message,
        status=status_code,
        code=code or _error_code_for_status(status_code),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _first_validation_message(exc: RequestValidationError) -> str:
    for err in exc.errors():
        if err.get("type") == "json_invalid":
            return "Invalid request body"
        # Integer parts are list indexes or JSON decode offsets
        loc = [
            str(part)
            for part in err.get("loc", ())
            if part != "body" and not isinstance(part, int)
        ]
        if loc:
            return f"Invalid value for {'.'.join(loc)}"
    return "Invalid request body"


def register_exception_handlers(app: FastAPI) -> None:
    """Translate every failure into the JSON error body with a stable code."""

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
        return _error_response(exc.status_code, exc.message, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        # Service code translates the known cases; anything reaching here is unexpected
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.field == "email":
            return _error_response(400, "Email already registered", code="DUPLICATE_EMAIL")
        return _error_response(400, "Request conflicts with existing data")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        message = _first_validation_message(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            message=message,
        )
        return _error_response(400, message, code="VALIDATION_ERROR")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
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
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "Internal server error", code="INTERNAL_ERROR")
