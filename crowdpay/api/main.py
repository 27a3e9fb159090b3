"""
FastAPI application factory.

The app serves contributors (payments), providers (webhooks), operators
(admin, health, metrics). Every request carries an X-Request-ID that is
bound into the structlog context for the duration of the request.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crowdpay import __version__
from crowdpay.config import Settings, get_settings
from crowdpay.database.connection import init_db
from crowdpay.exceptions import PaymentError
from crowdpay.monitoring.logging import setup_logging

from .dependencies import Services, build_services
from .routes import admin_router, monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


async def bind_request_context(request: Request, call_next: Any) -> Response:
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    started = time.perf_counter()
    structlog.contextvars.bind_contextvars(
        request_id=request_id, method=request.method, path=request.url.path
    )
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "request_failed", error=str(e), duration_seconds=time.perf_counter() - started
        )
        raise
    finally:
        structlog.contextvars.unbind_contextvars("method", "path")

    response.headers[REQUEST_ID_HEADER] = request_id
    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_seconds=time.perf_counter() - started,
    )
    structlog.contextvars.clear_contextvars()
    return response


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """PaymentErrors that escape a route keep their own status and code."""
    logger.warning(
        "payment_error", error_code=exc.error_code, error=exc.message, path=request.url.path
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"code": "internal_error", "message": "Unexpected server error"}},
    )


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (environment-backed by default)
        services: Pre-built services. When given, the app neither creates
            tables nor closes the database and provider clients on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        owns_services = getattr(app.state, "services", None) is None
        if owns_services:
            app.state.services = build_services(settings)
            await init_db(app.state.services.db_engine)
        logger.info(
            "application_started",
            app_env=settings.app_env,
            providers=app.state.services.engine.registry.ids(),
        )

        yield

        if owns_services:
            await app.state.services.aclose()
        logger.info("application_stopped")

    app = FastAPI(
        title="Crowdpay",
        description=(
            "Contribution payments over mobile money, PayPal and Stripe, "
            "with callback handling and reconciliation."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.middleware("http")(bind_request_context)
    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    for router in (payment_router, webhook_router, admin_router, monitoring_router):
        app.include_router(router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        return {
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.app_env,
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging(settings)
    uvicorn.run(
        "crowdpay.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
        log_level=settings.log_level.lower(),
    )


app = create_app()


if __name__ == "__main__":
    main()
