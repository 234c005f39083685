"""
Main Application - FastAPI application setup.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware
from structlog import get_logger
from structlog.contextvars import bound_contextvars

from wispr.api.dependencies import build_service_container
from wispr.api.routes import router
from wispr.config import settings
from wispr.db.session import create_all_tables
from wispr.observability import metrics, setup_logging, setup_tracing
from wispr.observability.metrics import render_metrics, track_http_request
from wispr.observability.tracing import instrument_fastapi

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Builds the service container on startup and releases it on shutdown.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        daily_hint_quota=settings.daily_hint_quota,
    )

    if not settings.webhook_signature_required:
        logger.warning(
            "webhook_signature_verification_disabled",
            reason="QPAY_WEBHOOK_SECRET not set; unsigned webhooks will be accepted",
        )

    container = build_service_container(settings)
    if settings.database_url.startswith("sqlite"):
        # Local development: no migrations, build the schema from metadata
        await create_all_tables(container.engine)
    app.state.services = container

    yield

    logger.info("application_shutting_down")
    await container.close()
    app.state.services = None
    logger.info("services_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Log detailed validation errors and answer with a structured body."""
    sanitized_errors: list[dict[str, Any]] = []
    for error in exc.errors():
        sanitized: dict[str, Any] = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "detail": sanitized_errors,
        },
    )


setup_tracing()
instrument_fastapi(app)


class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Trust X-Forwarded-Proto from the reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto
        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    with bound_contextvars(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)

        with track_http_request(endpoint, method) as tracker:
            try:
                response = await call_next(request)
            except Exception as e:
                metrics.record_error(type(e).__name__, "http_request")
                logger.error(
                    "request_failed",
                    method=method,
                    path=endpoint,
                    error=str(e),
                    exc_info=True,
                )
                raise
            tracker.set_status_code(response.status_code)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
        )
        return response


app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus metrics in text exposition format."""
    if not settings.metrics_enabled:
        return PlainTextResponse("", status_code=404)
    return PlainTextResponse(render_metrics())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "wispr.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
