from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from palchat.core.context import get_request_id

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base for errors that map onto a JSON error response."""

    status_code: int = 500
    error_type: str = "APP_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


def error_payload(error_type: str, message: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"type": error_type, "message": message}
    if details:
        body["details"] = details
    trace_id = get_request_id()
    if trace_id:
        body["traceId"] = trace_id
    return {"error": body}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(
            level,
            "request.app_error",
            extra={"error_type": exc.error_type, "status_code": exc.status_code, "path": request.url.path},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(exc.error_type, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [{"loc": list(error.get("loc", ())), "msg": error.get("msg", "")} for error in exc.errors()]
        logger.info("request.invalid", extra={"path": request.url.path, "errors": len(errors)})
        return JSONResponse(
            status_code=422,
            content=error_payload("VALIDATION_ERROR", "Request validation failed.", errors),
        )
