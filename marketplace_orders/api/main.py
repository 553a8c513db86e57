"""
Order service ASGI application.

``create_app`` wires CORS, request correlation, the fallback error handler and
the routers; ``app`` is the instance uvicorn serves.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace_orders import __version__
from marketplace_orders.config import Settings, get_settings
from marketplace_orders.core.locking import RedisPlacementLocks
from marketplace_orders.database.connection import close_db, init_db
from marketplace_orders.monitoring.logging import setup_logging

from .dependencies import get_order_workflow
from .routes import monitoring_router, order_router

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    logger.info(
        "order_service_starting",
        env=settings.app_env,
        stripe_test_mode=settings.is_test_mode,
        lock_backend=settings.placement_lock_backend,
        outbox_sink=settings.outbox_sink,
    )
    await init_db()

    yield

    if get_order_workflow.cache_info().currsize:
        locks = get_order_workflow().locks
        if isinstance(locks, RedisPlacementLocks):
            await locks.close()
    await close_db()
    logger.info("order_service_stopped")


async def correlate_request(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Bind a request id (incoming or fresh) to every log line of the request."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    started = time.perf_counter()
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "http_request",
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "InternalServerError",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="Marketplace Orders",
        description="Checkout, payment and order lifecycle API for the marketplace.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )
    app.middleware("http")(correlate_request)
    app.add_exception_handler(Exception, unhandled_error)

    app.include_router(order_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "docs": "/docs",
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "marketplace_orders.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
