"""
FastAPI application factory.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mailfin.api.router import api_router
from mailfin.config import settings
from mailfin.errors import MailfinError
from mailfin.models.database import async_session_factory, close_db
from mailfin.observability.logging import setup_logging
from mailfin.pipeline.registry import cleanup_stale_runs

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # Startup
    setup_logging()
    logger.info("startup", app=settings.APP_NAME, version=settings.APP_VERSION, invoker=settings.INVOKER_BACKEND)

    # Sentry init if configured
    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    # Runs left RUNNING by a previous process can never finish; make them resumable
    if settings.CLEANUP_STALE_RUNS_ON_STARTUP:
        try:
            async with async_session_factory() as session:
                await cleanup_stale_runs(session)
        except Exception as e:
            logger.error("stale_run_cleanup_failed", error=str(e))

    yield

    # Shutdown
    await close_db()


async def mailfin_error_handler(request: Request, exc: MailfinError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("request_failed", path=request.url.path, error_code=exc.error_code, error=exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Mailfin Extraction Service",
        description="Extraction of financial transactions from emails, with QA review and corrected-run synthesis.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    app.add_exception_handler(MailfinError, mailfin_error_handler)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics endpoint
    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    # Include all API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()
