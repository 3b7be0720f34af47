"""Speed Monitor - FastAPI Application."""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from api.router import api_router
from app.config import Settings, get_settings
from core.exceptions import StoreUnavailableError
from core.logging_config import setup_logging
from core.metrics import MonitorMetrics
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from core.rate_limit import RateLimitMiddleware, build_rate_limiter
from core.security import get_token_issuer
from db.database import close_db, init_db
from services.access_gate import AccessGate
from services.api_key_service import ApiKeyManager
from services.auth_service import AuthService
from services.credential_store import CredentialStore
from services.speedtest_service import SpeedtestRunner, SpeedtestScheduler

logger = structlog.get_logger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # Standard security headers
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; style-src 'self' 'unsafe-inline'; "
            "script-src 'self'; img-src 'self' data: https:"
        )
        response.headers["Cache-Control"] = "no-store"

        # Additional headers for production
        if get_settings().is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings: Settings = app.state.settings
    setup_logging(settings)

    # Refuse to run production with default secrets
    try:
        settings.validate_secrets()
    except RuntimeError as e:
        logger.critical("Startup aborted", error=str(e))
        raise

    await init_db()

    try:
        await app.state.auth_service.bootstrap_admin(
            username=settings.ADMIN_USERNAME,
            email=settings.ADMIN_EMAIL,
            password=settings.ADMIN_PASSWORD,
        )
    except StoreUnavailableError as e:
        logger.error("Default admin bootstrap skipped", error=e.message)

    scheduler: SpeedtestScheduler = app.state.scheduler
    if settings.SPEEDTEST_ENABLED:
        scheduler.start()
    else:
        logger.info("Scheduled speed tests disabled")

    logger.info(
        "Application started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        port=settings.PORT,
    )
    yield
    # Shutdown
    logger.info("Application shutting down")
    await scheduler.stop()
    await app.state.rate_limiter.close()
    await close_db()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Network speed monitor with scheduled measurements, "
                    "token/API key authentication and route-class rate limiting.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Shared services, owned by the application instance
    metrics = MonitorMetrics()
    rate_limiter = build_rate_limiter(settings, metrics)
    store = CredentialStore(timeout=settings.CREDENTIAL_STORE_TIMEOUT_SECONDS)
    token_issuer = get_token_issuer()
    key_manager = ApiKeyManager(store, key_prefix=settings.API_KEY_PREFIX)
    runner = SpeedtestRunner(settings, metrics=metrics)

    app.state.settings = settings
    app.state.metrics = metrics
    app.state.rate_limiter = rate_limiter
    app.state.key_manager = key_manager
    app.state.access_gate = AccessGate(token_issuer, key_manager, metrics)
    app.state.auth_service = AuthService(store, token_issuer)
    app.state.speedtest_runner = runner
    app.state.scheduler = SpeedtestScheduler(
        runner,
        interval_seconds=settings.SPEEDTEST_INTERVAL_SECONDS,
        initial_delay_seconds=settings.SPEEDTEST_INITIAL_DELAY_SECONDS,
    )

    # Rate limiting middleware (innermost; runs before any route dependency)
    app.add_middleware(RateLimitMiddleware, limiter=rate_limiter)

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # Security headers middleware
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    app.include_router(api_router)

    return app


app = create_app()
