"""Main FastAPI application."""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from concierge import __version__
from concierge.config import config
from concierge.database import init_db
from concierge.dependencies import ServiceContainer, build_container
from concierge.errors import BackendUnavailable, CallRequestValidationError
from concierge.health import router as health_router
from concierge.logging_config import logger
from concierge.metrics import api_request_duration, api_requests_total
from concierge.routers.core import router as core_router
from concierge.routers.providers import router as providers_router
from concierge.routers.vapi import router as vapi_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    # Startup
    logger.info("application_starting", version=__version__)
    init_db()
    logger.info("database_initialized")
    logger.info("vapi_configured", configured=config.has_vapi_config())
    logger.info(
        "kestra_configured",
        enabled=config.KESTRA_ENABLED,
        configured=config.has_kestra_config(),
        strict_mode=config.KESTRA_STRICT_MODE,
    )
    logger.info("openai_configured", configured=config.has_openai_key())
    container: ServiceContainer = app.state.container
    container.cache.start()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await container.shutdown()


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    app = FastAPI(
        title="Concierge API",
        description="Provider outreach orchestration: research, concurrent calling and ranking",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container or build_container()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_request_metrics(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        endpoint = route.path if route is not None else request.url.path
        api_requests_total.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
        api_request_duration.observe(time.perf_counter() - start)
        return response

    @app.exception_handler(BackendUnavailable)
    async def backend_unavailable_handler(request: Request, exc: BackendUnavailable):
        logger.error("backend_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse({"success": False, "error": str(exc)}, status_code=503)

    @app.exception_handler(CallRequestValidationError)
    async def call_request_invalid_handler(request: Request, exc: CallRequestValidationError):
        logger.warning("call_request_invalid", path=request.url.path, error=str(exc))
        return JSONResponse({"success": False, "error": str(exc)}, status_code=400)

    app.include_router(core_router)
    app.include_router(health_router)
    app.include_router(providers_router)
    app.include_router(vapi_router)
    return app


app = create_app()
