from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from skyfare.errors import (
    AppError,
    PUBLIC_PRECONDITION_MESSAGE,
    PreconditionViolationError,
    error_response,
)

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:  # type: ignore[override]
        cid = getattr(request.state, "correlation_id", None)
        if isinstance(exc, PreconditionViolationError):
            logger.error(
                "Precondition violation on %s %s: %s (correlation_id=%s)",
                request.method,
                request.url.path,
                exc.message,
                cid,
                exc_info=exc,
            )
            details: dict[str, Any] = {"correlation_id": cid} if cid else {}
            return JSONResponse(
                status_code=exc.status_code,
                content=error_response(exc.code, PUBLIC_PRECONDITION_MESSAGE, details),
            )

        body = exc.to_dict()
        if cid and "correlation_id" not in body["error"]["details"]:
            body["error"]["details"]["correlation_id"] = cid
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:  # type: ignore[override]
        details: Any = {"errors": jsonable_encoder(exc.errors())}
        cid = getattr(request.state, "correlation_id", None)
        if cid:
            details["correlation_id"] = cid
        return JSONResponse(
            status_code=422,
            content=error_response(
                "validation_error",
                "Request validation failed",
                details,
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:  # type: ignore[override]
        code = "not_found" if exc.status_code == 404 else "http_error"
        detail: Any = exc.detail
        if isinstance(detail, str):
            message = detail
            details: Any = {}
        elif isinstance(detail, dict):
            message = detail.get("message", "HTTP error")
            details = detail
        else:
            message = "HTTP error"
            details = {}
        cid = getattr(request.state, "correlation_id", None)
        if cid:
            details["correlation_id"] = cid
        return JSONResponse(
            status_code=exc.status_code,
            content=error_response(code, message, details),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # type: ignore[override]
        cid = getattr(request.state, "correlation_id", None)
        logger.exception("Unhandled error on %s %s (correlation_id=%s)", request.method, request.url.path, cid)
        details: Any = {}
        if cid:
            details["correlation_id"] = cid
        return JSONResponse(
            status_code=500,
            content=error_response("internal_error", "Unexpected server error", details),
        )
