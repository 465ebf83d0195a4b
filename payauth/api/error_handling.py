from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from payauth.api.schemas import FIELD_REQUIRED_MESSAGES, Envelope, FieldError
from payauth.logging import get_logger
from payauth.service import messages
from payauth.service.errors import ServiceError
from payauth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_ERROR",
}

# pydantic error types meaning "absent or wrong JSON type" rather than a
# failed check from one of our validators.
_REQUIRED_ERROR_TYPES = {"missing", "string_type", "none_required"}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR")


def _error_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    field: Optional[str] = None,
    errors: Optional[list[FieldError]] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    envelope = Envelope(
        success=False,
        message=message,
        code=code or _error_code_for_status(status_code),
        field=field,
        errors=errors,
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json"),
        headers=headers or None,
    )


def _field_errors(raw_errors: list[dict[str, Any]]) -> list[FieldError]:
    """Flatten pydantic errors into ``{field, message}`` pairs, body fields only."""
    results: list[FieldError] = []
    for err in raw_errors:
        loc = [part for part in err.get("loc", ()) if part != "body"]
        field = str(loc[0]) if loc else "body"
        ctx_error = (err.get("ctx") or {}).get("error")
        if ctx_error is not None:
            message = str(ctx_error)
        elif err.get("type") in _REQUIRED_ERROR_TYPES and field in FIELD_REQUIRED_MESSAGES:
            message = FIELD_REQUIRED_MESSAGES[field]
        else:
            message = err.get("msg", "invalid value")
        results.append(FieldError(field=field, message=message))
    return results


def register_exception_handlers(app: FastAPI) -> None:
    """Map every error raised while handling a request onto the envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.code,
            message=exc.message,
        )
        return _error_response(
            exc.status_code,
            exc.message,
            code=exc.code,
            field=exc.field,
            headers=exc.headers,
        )

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, code="CONFLICT", field=exc.field)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _field_errors(list(exc.errors()))
        first = errors[0] if errors else FieldError(field="body", message="invalid request")
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[error.field for error in errors],
        )
        return _error_response(
            400,
            first.message,
            code="VALIDATION_ERROR",
            field=first.field,
            errors=errors,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            message = f"Route {request.method} {request.url.path} not found"
        else:
            message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, messages.INTERNAL_ERROR, code="INTERNAL_ERROR")
