"""FastAPI application factory for the pipeline service."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..errors import NotFoundError, PersistenceError, ValidationError
from .config import PipelineConfig
from .core import Pipeline
from .executor import get_executor, run_in_executor, shutdown_executor
from .middleware import CorrelationIdMiddleware, get_correlation_id
from .models import ErrorResponse
from .router import build_router

logger = logging.getLogger(__name__)

SERVICE_NAME = "civic-ledger"
SERVICE_VERSION = "0.1.0"


async def _reconcile_loop(pipeline: Pipeline, interval: float) -> None:
    """Periodically reconcile pending ledger records until cancelled."""
    logger.info(f"Ledger reconciliation every {interval}s")
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_executor(pipeline.reconcile)
        except Exception:
            logger.exception("Ledger reconciliation pass failed")


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the side-effect workers and background tasks, stop them on exit."""
    pipeline: Pipeline = app.state.pipeline
    config: PipelineConfig = app.state.config

    logger.info("Starting pipeline service...")
    get_executor()
    pipeline.start()

    reconcile_task: asyncio.Task[None] | None = None
    if config.reconcile_interval > 0:
        reconcile_task = asyncio.create_task(
            _reconcile_loop(pipeline, config.reconcile_interval)
        )

    app.state.ready = True
    yield
    app.state.ready = False

    logger.info("Shutting down pipeline service...")
    if reconcile_task is not None:
        reconcile_task.cancel()
        with suppress(asyncio.CancelledError):
            await reconcile_task

    # Drains queued audit/ledger jobs before closing the store
    pipeline.shutdown(wait=True)
    shutdown_executor(wait=True)
    logger.info("Pipeline service shutdown complete")


def _error(request: Request, status_code: int, detail: str, **extra) -> JSONResponse:
    body = ErrorResponse(detail=detail, correlation_id=get_correlation_id(request), **extra)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def _install_error_handlers(app: FastAPI) -> None:
    """Translate pipeline exceptions into HTTP responses."""

    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(
            request,
            422,
            str(exc),
            reason="validation_error",
            field=exc.field,
        )

    @app.exception_handler(PersistenceError)
    async def _persistence(request: Request, exc: PersistenceError) -> JSONResponse:
        if exc.constraint:
            return _error(request, status.HTTP_409_CONFLICT, str(exc), reason="constraint_violation")
        logger.error(f"Store failure on {request.method} {request.url.path}: {exc}")
        return _error(
            request,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            "Primary store unavailable",
            reason="persistence_error",
        )

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(request, status.HTTP_404_NOT_FOUND, str(exc), reason="not_found")


def create_pipeline_app(
    config: PipelineConfig,
    **pipeline_kwargs,
) -> FastAPI:
    """Create and configure the pipeline FastAPI application.

    Args:
        config: PipelineConfig instance
        **pipeline_kwargs: Collaborators passed through to Pipeline
            (store, journal, cache, dispatcher, ledger_client, breaker)

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Civic Ledger",
        description="Entity lifecycle and audit-trail pipeline",
        version=SERVICE_VERSION,
        lifespan=_lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)
    _install_error_handlers(app)

    pipeline = Pipeline(config, **pipeline_kwargs)
    app.include_router(build_router(pipeline))

    app.state.pipeline = pipeline
    app.state.config = config
    app.state.ready = False

    @app.get("/healthz")
    def healthz() -> dict:
        """Health check with dependency verification."""
        report = pipeline.health()
        return {
            "status": "ok" if report["healthy"] else "degraded",
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "checks": report["checks"],
        }

    @app.get("/ready")
    def ready() -> dict:
        """Readiness check: true once the lifespan has started the workers."""
        is_ready = bool(app.state.ready)
        if is_ready:
            ping = getattr(pipeline.store, "ping", None)
            try:
                if ping is not None:
                    ping()
            except PersistenceError:
                is_ready = False
        return {"ready": is_ready, "service": SERVICE_NAME}

    return app


def create_app_from_env() -> FastAPI:
    """Create app using environment variable configuration."""
    return create_pipeline_app(PipelineConfig.from_env())


__all__ = ["create_pipeline_app", "create_app_from_env"]
