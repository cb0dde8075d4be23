"""FastAPI app factory.

Endpoints are thin wrappers over the engine runtime; this module owns the
mapping from engine errors to HTTP status codes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ops_workflow_engine import __version__
from ops_workflow_engine.core.errors import NotFound, ValidationError
from ops_workflow_engine.core.logging import configure_logging
from ops_workflow_engine.engine.runtime import EngineRuntime, build_runtime
from ops_workflow_engine.server.config import ServerSettings
from ops_workflow_engine.server.router import router

logger = logging.getLogger(__name__)


def _not_found(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc), "kind": "not_found"})


def _invalid(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc), "kind": "validation_error"})


def _invalid_request(_request: Request, exc: Exception) -> JSONResponse:
    errors = jsonable_encoder(exc.errors()) if isinstance(exc, RequestValidationError) else []
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request", "kind": "validation_error", "errors": errors},
    )


def create_app(
    settings: ServerSettings | None = None,
    runtime: EngineRuntime | None = None,
) -> FastAPI:
    settings = settings or ServerSettings()
    if runtime is None:
        configure_logging(settings.log_level)
        runtime = build_runtime(settings)

    # Records left pending/running by a previous process are never resumed.
    runtime.engine.fail_interrupted_executions()

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if settings.scheduler_enabled:
            runtime.scheduler.start()
        try:
            yield
        finally:
            runtime.scheduler.stop()
            runtime.engine.shutdown(timeout=5.0)

    app = FastAPI(
        title="Ops Workflow Engine",
        version=__version__,
        description="REST API over the workflow execution engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # Expose settings and the runtime for request handlers.
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(NotFound, _not_found)
    app.add_exception_handler(ValidationError, _invalid)
    app.add_exception_handler(RequestValidationError, _invalid_request)

    app.include_router(router, prefix="/api")

    logger.info(
        "App created",
        extra={"state_path": str(settings.state_path), "scheduler": settings.scheduler_enabled},
    )
    return app
