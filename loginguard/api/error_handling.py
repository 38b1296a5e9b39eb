from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from loginguard.api.schemas import Envelope, ErrorBody
from loginguard.logging import get_logger, sanitize_error_message
from loginguard.service.errors import (
    ConcurrentSessionError,
    ServiceError,
    SessionExpiredError,
)
from loginguard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

ACCESS_TOKEN_COOKIE = "access_token"
SESSION_TOKEN_COOKIE = "session_token"

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    423: "account_locked",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def clear_auth_cookies(response, *, secure: bool) -> None:
    """Forget both the identity and the session cookie."""
    for name in (ACCESS_TOKEN_COOKIE, SESSION_TOKEN_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="lax")


def _cookie_secure(request: Request) -> bool:
    from loginguard.service.runtime import get_runtime

    return get_runtime().settings.cookie_secure


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        # Never echo which column collided; a duplicate email must stay anonymous
        return _error_response(409, "Request conflicts with an existing record.", code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
        )
        details = dict(exc.detail) if exc.detail else None
        if isinstance(exc, (SessionExpiredError, ConcurrentSessionError)):
            details = {**(details or {}), "redirect": exc.redirect}
            response = _error_response(exc.status_code, exc.message, details, code=error_code)
            clear_auth_cookies(response, secure=_cookie_secure(request))
            return response
        return _error_response(exc.status_code, exc.message, details, code=error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "invalid value")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, dict) else {"detail": exc.detail}
        message = str(detail.get("detail", "http error"))
        if exc.status_code >= 500:
            message = sanitize_error_message(message)
            logger.error(
                "http_error_fallback",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
            return _error_response(exc.status_code, message)
        return _error_response(exc.status_code, message, detail)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
