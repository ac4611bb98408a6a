from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agentcanvas.logging import get_logger
from agentcanvas.service.errors import ConfigurationError, RateLimitedError, ServiceError
from agentcanvas.storage.errors import AtomicityUnavailableError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}

GENERIC_SERVER_ERROR = "Internal server error"


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    code: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """JSON error body shared by every handler: ``{success, error, code}``."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": message,
            "code": code or _error_code_for_status(status_code),
        },
        headers=headers,
    )


def rate_limit_headers(exc: RateLimitedError) -> dict[str, str]:
    return {
        "Retry-After": str(exc.retry_after),
        "X-RateLimit-Limit": str(exc.limit),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": str(exc.reset_at),
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Map service, store and routing errors onto the JSON error body."""

    @app.exception_handler(RateLimitedError)
    async def handle_rate_limited(request: Request, exc: RateLimitedError):
        logger.warning(
            "rate_limited",
            path=request.url.path,
            method=request.method,
            retry_after=exc.retry_after,
        )
        return error_response(429, exc.message, exc.error_code, headers=rate_limit_headers(exc))

    @app.exception_handler(ConfigurationError)
    async def handle_configuration_error(request: Request, exc: ConfigurationError):
        logger.error(
            "configuration_error",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return error_response(500, GENERIC_SERVER_ERROR, exc.error_code)

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
            detail=exc.detail,
        )
        message = GENERIC_SERVER_ERROR if exc.status_code >= 500 else exc.message
        return error_response(exc.status_code, message, exc.error_code)

    @app.exception_handler(AtomicityUnavailableError)
    async def handle_atomicity_unavailable(request: Request, exc: AtomicityUnavailableError):
        logger.error(
            "kv_atomicity_unavailable",
            path=request.url.path,
            method=request.method,
            message=str(exc),
        )
        return error_response(500, GENERIC_SERVER_ERROR, "config_error")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=fields,
        )
        return error_response(400, "Invalid request body", "validation_error")

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
        else:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, GENERIC_SERVER_ERROR, "server_error")


__all__ = ["register_exception_handlers", "error_response", "rate_limit_headers"]
