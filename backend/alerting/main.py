"""
FastAPI application entry point.

Run with:
    uvicorn backend.alerting.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.alerting.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.alerting.core.config import settings
from backend.alerting.core.database import close_db, get_session_factory, init_db
from backend.alerting.core.errors import register_error_handlers
from backend.alerting.core.health import HealthStatus, run_health_check
from backend.alerting.core.logging_config import setup_logging
from backend.alerting.core.middleware import RequestLoggingMiddleware
from backend.alerting.core.rate_limit import RateLimiter, RedisRateLimiter, build_rate_limiter

# ── Alert dispatch ──
from backend.alerting.alerts.alert_service import AlertService
from backend.alerting.alerts.sql_store import SqlAlchemyAlertStore

# ── API routers ──
from backend.alerting.api.v1.alerts import router as alert_router

# ── Initialise logging ──
setup_logging()
logger = logging.getLogger(__name__)


def create_app(
    alert_service: Optional[AlertService] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """
    Build the application.

    With no arguments the service runs on the SQL store from
    settings.DATABASE_URL; tests pass an in-memory service instead.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        owns_database = alert_service is None
        if owns_database:
            if not settings.is_production:
                await init_db()
            app.state.alert_service = AlertService(SqlAlchemyAlertStore(get_session_factory()))
        else:
            app.state.alert_service = alert_service
        app.state.rate_limiter = rate_limiter or build_rate_limiter()

        yield

        logger.info("Shutting down %s", settings.APP_NAME)
        if isinstance(app.state.rate_limiter, RedisRateLimiter):
            await app.state.rate_limiter.close()
        if owns_database:
            await close_db()

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Community emergency alert dispatch. Resolves residents in the "
            "targeted regions and delivers each alert over email, SMS and "
            "push with severity-aware fallback, batched fan-out, an "
            "append-only delivery log and retry of failed deliveries."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)
    app.include_router(alert_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health check: store, channels, rate limiter."""
        report = await run_health_check(app.state.alert_service, app.state.rate_limiter)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        report = await run_health_check(app.state.alert_service, app.state.rate_limiter)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
