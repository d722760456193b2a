"""Exception handlers rendering every failure as the response envelope."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from crm.core.config import get_settings
from crm.core.responses import failure

logger = logging.getLogger(__name__)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        payload = dict(detail)
        message = str(payload.pop("message", "Request failed"))
        body = failure(message, data=payload or None)
    else:
        body = failure(str(detail))
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(body), headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content=jsonable_encoder(failure("Validation failed", error=errors)))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    settings = getattr(request.app.state, "settings", None) or get_settings()
    error = None if settings.is_production else f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=500, content=failure("Internal server error", error=error))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
