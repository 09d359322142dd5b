# ---------------------------------------------------------------------------
# middleware.py
#
# FastAPI / Starlette middleware and error handlers used by the API service.
#
# Included:
# - BodySizeLimitMiddleware: rejects requests exceeding max_body_bytes based
#   on Content-Length (best-effort; streaming bodies cannot be measured).
# - AccessLogMiddleware: one log line per request with status and duration.
# - ErrorMiddleware: last-resort translation of any unhandled exception into
#   the 500 error envelope, so no request is left unanswered.
# - install_error_handlers(): envelope responses for AppError, HTTPException
#   (including unknown routes) and FastAPI request validation errors.
#
# Error responses are logged exactly once, here. Tracebacks are attached to
# the response only when the settings enable error details (development).
# ---------------------------------------------------------------------------

from __future__ import annotations

import logging
import time
import traceback
from http import HTTPStatus
from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .config import Settings
from .errors import DEFAULT_ERROR_CODE, DEFAULT_ERROR_MESSAGE, AppError, DatabaseError, InputValidationError
from .schemas import error_response
from .utils import redact_parameters

logger = logging.getLogger(__name__)


def _status_code_name(status_code: int) -> str:
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        return DEFAULT_ERROR_CODE
    return phrase.upper().replace(" ", "_").replace("-", "_").replace("'", "")


def _log_failure(request: Request, status_code: int, code: str, message: str, exc: BaseException) -> None:
    context: dict[str, Any] = {
        "code": code,
        "status": status_code,
        "path": request.url.path,
        "method": request.method,
    }
    if isinstance(exc, DatabaseError):
        context["routine"] = exc.routine
        context["parameters"] = redact_parameters(exc.parameters)
        if exc.cause is not None:
            context["cause"] = str(exc.cause)

    if status_code >= 500:
        logger.error("Error: %s %s", message, context, exc_info=exc)
    else:
        logger.warning("Request failed: %s %s", message, context)


def envelope_for(
    request: Request,
    exc: BaseException,
    settings: Settings,
    *,
    status_code: Optional[int] = None,
    code: Optional[str] = None,
    message: Optional[str] = None,
    details: Any = None,
) -> JSONResponse:
    """Log `exc` and build its error envelope response."""
    status_code = status_code or 500
    code = code or DEFAULT_ERROR_CODE
    message = message or DEFAULT_ERROR_MESSAGE

    _log_failure(request, status_code, code, message, exc)

    if details is None and status_code >= 500 and settings.include_error_details:
        details = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    return JSONResponse(error_response(message, details, code=code), status_code=status_code)


def install_error_handlers(app: FastAPI, settings: Settings) -> None:
    """Register envelope-producing handlers on `app`."""

    async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
        details = exc.details if isinstance(exc, InputValidationError) or exc.status_code < 500 else None
        return envelope_for(
            request, exc, settings,
            status_code=exc.status_code, code=exc.code, message=exc.message, details=details,
        )

    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else _status_code_name(exc.status_code)
        response = envelope_for(
            request, exc, settings,
            status_code=exc.status_code, code=_status_code_name(exc.status_code), message=message,
        )
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"path": list(error.get("loc", ())), "message": error.get("msg", ""), "type": error.get("type", "")}
            for error in exc.errors()
        ]
        return envelope_for(
            request, exc, settings,
            status_code=InputValidationError.status_code,
            code=InputValidationError.code,
            message=InputValidationError.message,
            details=details,
        )

    app.add_exception_handler(AppError, handle_app_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_request_validation)


class ErrorMiddleware(BaseHTTPMiddleware):
    """Answer any exception that escaped the routes with the generic 500 envelope."""

    def __init__(self, app, settings: Settings):
        super().__init__(app)
        self.settings = settings

    async def dispatch(self, request: Request, call_next: Callable):
        try:
            return await call_next(request)
        except Exception as exc:
            if isinstance(exc, AppError):
                return envelope_for(
                    request, exc, self.settings,
                    status_code=exc.status_code, code=exc.code, message=exc.message,
                )
            return envelope_for(request, exc, self.settings)


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests above max_body_bytes based on Content-Length header."""

    def __init__(self, app, max_body_bytes: int):
        super().__init__(app)
        self.max_body_bytes = max_body_bytes

    async def dispatch(self, request: Request, call_next: Callable):
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                too_large = int(content_length) > self.max_body_bytes
            except ValueError:
                # Not an int; let downstream handle it.
                too_large = False
            if too_large:
                logger.warning("Request too large: %s %s (%s bytes)", request.method, request.url.path, content_length)
                return JSONResponse(
                    error_response("Request too large", code="PAYLOAD_TOO_LARGE"), status_code=413
                )
        return await call_next(request)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration for each request."""

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)

        logger.info("%s %s -> %s (%d ms)", request.method, request.url.path, response.status_code, duration_ms)
        response.headers["x-server-timing-ms"] = str(duration_ms)
        return response
