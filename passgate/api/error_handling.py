from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from passgate.api.schemas import Envelope, ErrorBody
from passgate.logging import get_logger
from passgate.service.errors import ERRORS_BY_KIND, ErrorKind, ServiceError

logger = get_logger(__name__)

# One (status, code) pair per error kind; every kind must be present
ERROR_RESPONSES: dict[ErrorKind, tuple[int, str]] = {
    kind: (cls.status_code, cls.error_code) for kind, cls in ERRORS_BY_KIND.items()
}

_unmapped = set(ErrorKind) - set(ERROR_RESPONSES)
if _unmapped:
    raise RuntimeError(f"error kinds without a response mapping: {sorted(_unmapped)}")

_STATUS_TO_CODE = {
    400: "BAD_REQUEST",
    401: "INVALID_CREDENTIAL",
    403: "NOT_ENOUGH_RIGHTS",
    404: "NOT_FOUND",
    409: "ALREADY_EXISTS",
}

OPAQUE_MESSAGE = "internal server error"


def _error_code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "SERVER_ERROR"
    return _STATUS_TO_CODE.get(status_code, "BAD_REQUEST")


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


def response_for(exc: ServiceError) -> JSONResponse:
    status_code, error_code = ERROR_RESPONSES[exc.kind]
    if exc.opaque:
        return _error_response(status_code, OPAQUE_MESSAGE, code=error_code)
    return _error_response(status_code, exc.message, exc.detail or None, code=error_code)


def _format_validation_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {
            "loc": "/".join(str(part) for part in err.get("loc", ())),
            "msg": err.get("msg", ""),
        }
        for err in exc.errors()
    ]


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope-producing handlers for service and request errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.opaque else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            kind=exc.kind.value,
            message=exc.message,
            detail=exc.detail,
        )
        return response_for(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _format_validation_errors(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=details,
        )
        status_code, error_code = ERROR_RESPONSES[ErrorKind.BAD_INPUT]
        return _error_response(
            status_code, "request validation failed", details, code=error_code
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
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
            error=str(exc),
        )
        return _error_response(500, OPAQUE_MESSAGE, code="SERVER_ERROR")
