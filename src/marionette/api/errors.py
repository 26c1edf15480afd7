"""Secure error handling for API responses.

Maps the closed ErrorKind taxonomy onto HTTP status codes. Full details are
logged; responses carry only safe messages. Upstream platform failures never
echo raw page content or selectors, and internal errors return a generic
message with a short reference id.
"""

import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from marionette.errors import ErrorKind, MarionetteError

log = structlog.get_logger()

INTERNAL_ERROR = "An internal error occurred. Please try again later."
UPSTREAM_ERROR = "The target platform rejected or failed the request."

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.VALIDATION: 400,
    ErrorKind.UPSTREAM_PLATFORM: 502,
    ErrorKind.INTERNAL: 500,
}


def status_for(kind: ErrorKind) -> int:
    return STATUS_BY_KIND.get(kind, 500)


def sanitize_error_message(message: str, max_length: int = 200) -> str:
    """Strip markup and truncate a message before it reaches a client."""
    if "<" in message and ">" in message:
        return UPSTREAM_ERROR
    if len(message) > max_length:
        return message[: max_length - 3] + "..."
    return message


def error_response(exc: MarionetteError, *, path: str | None = None) -> JSONResponse:
    """Build the HTTP response for a typed error, logging full details."""
    status_code = status_for(exc.kind)

    if exc.kind is ErrorKind.INTERNAL:
        error_id = str(uuid.uuid4())[:8]
        log.error(
            "internal_error",
            error_id=error_id,
            path=path,
            error_type=type(exc).__name__,
            error_message=exc.message,
            **{f"detail_{k}": v for k, v in exc.details.items()},
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.kind.value, "detail": f"{INTERNAL_ERROR} (ref: {error_id})"},
        )

    if exc.kind is ErrorKind.UPSTREAM_PLATFORM:
        log.warning(
            "upstream_platform_error",
            path=path,
            error_message=exc.message,
            code=exc.code,
        )
        content: dict[str, object] = {"error": exc.kind.value, "detail": UPSTREAM_ERROR}
        if exc.code:
            content["code"] = exc.code
        return JSONResponse(status_code=status_code, content=content)

    log.info(
        "request_error",
        path=path,
        kind=exc.kind.value,
        error_message=exc.message,
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind.value, "detail": sanitize_error_message(exc.message)},
    )


async def _marionette_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, MarionetteError):
        return await _unhandled_error_handler(request, exc)
    return error_response(exc, path=request.url.path)


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error_id = str(uuid.uuid4())[:8]
    log.exception(
        "unhandled_error",
        error_id=error_id,
        path=request.url.path,
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=500,
        content={"error": ErrorKind.INTERNAL.value, "detail": f"{INTERNAL_ERROR} (ref: {error_id})"},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MarionetteError, _marionette_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
