from __future__ import annotations

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from entitysync.apps.api.response import error_body
from entitysync.core.errors import (
    AlertNotFoundError,
    ConfigurationError,
    EntitySyncError,
    WorkUnitNotFoundError,
)


logger = logging.getLogger(__name__)

# Operator-facing domain errors; anything else is a 500.
DOMAIN_ERRORS: dict[type[EntitySyncError], tuple[int, str]] = {
    ConfigurationError: (400, "CONFIGURATION_ERROR"),
    AlertNotFoundError: (404, "ALERT_NOT_FOUND"),
    WorkUnitNotFoundError: (404, "SYNC_JOB_NOT_FOUND"),
}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Routes raise with a {"code", "message"} detail; routing misses carry a plain string.
    if isinstance(exc.detail, dict):
        code, message = exc.detail["code"], exc.detail["message"]
    else:
        code, message = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR", str(exc.detail)
    payload = error_body(request, code=code, message=message)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_body(
        request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: EntitySyncError) -> JSONResponse:
    mapped = DOMAIN_ERRORS.get(type(exc))
    if mapped is None:
        return await unhandled_exception_handler(request, exc)
    status_code, code = mapped
    return JSONResponse(content=error_body(request, code=code, message=str(exc)), status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("api_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_body(request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
