"""
Main Application - FastAPI application setup.

Serves the store webhooks, the client receipt endpoints, /health and
/metrics. Migrations run at startup when RUN_MIGRATIONS_ON_STARTUP is set.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.routes import router
from app.config import settings
from app.db.migration_runner import run_migrations
from app.db.session import close_engines
from app.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from app.observability.tracing import instrument_fastapi

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        apple_configured=settings.apple_configured,
        google_play_configured=settings.google_play_configured,
        tracing_enabled=settings.tracing_enabled,
    )

    if settings.run_migrations_on_startup:
        # Alembic is synchronous
        await asyncio.to_thread(run_migrations)

    yield

    logger.info("application_shutting_down")
    await close_engines()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log and time every request under a request id.

    Metrics are labelled with the route template rather than the raw path.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        method = request.method
        started = time.perf_counter()

        with log_context(request_id=request_id):
            metrics.http_requests_in_progress.labels(endpoint=request.url.path, method=method).inc()
            status_code = 500
            try:
                response = await call_next(request)
                status_code = response.status_code
                response.headers["X-Request-ID"] = request_id
                return response
            except Exception as exc:
                metrics.record_error(type(exc).__name__, "http_request")
                logger.exception("request_failed", method=method, path=request.url.path)
                raise
            finally:
                duration = time.perf_counter() - started
                route = request.scope.get("route")
                endpoint = getattr(route, "path", request.url.path)
                metrics.http_requests_in_progress.labels(
                    endpoint=request.url.path, method=method
                ).dec()
                metrics.record_http_request(endpoint, method, status_code, duration)
                logger.info(
                    "request_completed",
                    method=method,
                    path=endpoint,
                    status_code=status_code,
                    duration_seconds=round(duration, 4),
                )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """422 without the offending input; bodies carry signed payloads and tokens."""
    errors = [
        {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        for error in exc.errors()
    ]
    logger.warning("validation_error", path=request.url.path, errors=errors)
    return JSONResponse(status_code=422, content={"detail": errors})


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)
app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

setup_tracing()
instrument_fastapi(app)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


async def metrics_endpoint() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if settings.metrics_enabled:
    app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        proxy_headers=True,
        log_level=settings.log_level.lower(),
    )
