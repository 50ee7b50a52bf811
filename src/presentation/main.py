"""FastAPI application factory for the cost anomaly pipeline."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from domain.exceptions import DomainError, ProviderError
from domain.exceptions.pipeline_exceptions import PROBLEM_BASE
from infrastructure.container import get_container, reset_container
from infrastructure.observability.logging_config import setup_logging
from infrastructure.observability.metrics import setup_metrics
from infrastructure.settings import get_settings

from .api.v1 import connections, jobs, sync
from .api.v1.schemas import HealthResponse
from .middleware.request_logging import RequestLoggingMiddleware

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    setup_logging(settings.log_level)
    container = get_container()
    if settings.db_migrate_on_startup:
        container.bootstrap_storage()
    app.state.container = container
    yield
    reset_container()


# ---------------------------------------------------------------------------
# Exception handlers (RFC 9457 Problem Details)
# ---------------------------------------------------------------------------


def _problem_json(
    status_code: int,
    title: str,
    detail: str,
    *,
    error_type: str = "about:blank",
    instance: str | None = None,
    errors: list[dict[str, Any]] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body: dict[str, Any] = {
        "type": error_type,
        "title": title,
        "status": status_code,
        "detail": detail,
    }
    if instance:
        body["instance"] = instance
    if errors:
        body["errors"] = errors
    return JSONResponse(
        status_code=status_code,
        content=body,
        media_type="application/problem+json",
        headers=headers,
    )


async def _domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:
    headers = None
    if isinstance(exc, ProviderError) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    return _problem_json(
        status_code=exc.status_code,
        title=exc.title,
        detail=exc.detail,
        error_type=exc.error_type,
        instance=str(request.url.path),
        headers=headers,
    )


async def _validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = []
    for err in exc.errors():
        errors.append(
            {
                "field": " -> ".join(str(loc) for loc in err.get("loc", [])),
                "message": err.get("msg", ""),
                "type": err.get("type", ""),
            }
        )
    return _problem_json(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        title="Validation Error",
        detail="The request body or parameters failed validation.",
        error_type=f"{PROBLEM_BASE}/validation-error",
        instance=str(request.url.path),
        errors=errors,
    )


async def _generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return _problem_json(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        title="Internal Server Error",
        detail="An unexpected error occurred. Please try again later.",
        instance=str(request.url.path),
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

API_V1_PREFIX = "/api/v1"


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="Cost Sentinel",
        version=APP_VERSION,
        description=(
            "Daily cloud-spend sync, anomaly detection and alerting. Exposes "
            "scheduler entry points for the auto-sync and weekly report jobs."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=_lifespan,
    )

    # -- CORS
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    # -- Custom middleware
    app.add_middleware(RequestLoggingMiddleware)
    setup_metrics(app)

    # -- API routers
    app.include_router(connections.router, prefix=API_V1_PREFIX)
    app.include_router(sync.router, prefix=API_V1_PREFIX)
    app.include_router(jobs.router, prefix=API_V1_PREFIX)

    # -- Exception handlers
    app.add_exception_handler(DomainError, _domain_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)

    @app.get("/health", tags=["Operations"], summary="Health check", response_model=HealthResponse)
    def health_check() -> HealthResponse:
        container = get_container()
        return HealthResponse(
            status="healthy",
            version=APP_VERSION,
            storage="sql" if container.engine is not None else "memory",
            timestamp=datetime.now(UTC),
        )

    return app


app = create_app()
