from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from entitysync.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from entitysync.apps.api.response import API_VERSION
from entitysync.apps.api.routes.alerts import router as alerts_router
from entitysync.apps.api.routes.ops import router as ops_router
from entitysync.apps.api.routes.sync_jobs import router as sync_jobs_router
from entitysync.core.errors import EntitySyncError
from entitysync.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="entitysync operator API", version=API_VERSION)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(EntitySyncError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.get("/health", include_in_schema=False)
    async def health() -> dict:
        # Process liveness only; dependency health is /v1/ops/sync.
        return {"status": "ok"}

    for router in (ops_router, sync_jobs_router, alerts_router):
        app.include_router(router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
