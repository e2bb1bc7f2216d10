"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from entitlement_sync.core.config import AuthConfig, BillingConfig, Settings, get_settings
from entitlement_sync.core.database import Database
from entitlement_sync.core.logging import setup_logging
from entitlement_sync.core.metrics import get_metrics, get_metrics_content_type, set_app_info
from entitlement_sync.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
)
from entitlement_sync.modules.auth.jwt import TokenManager
from entitlement_sync.modules.auth.router import router as auth_router
from entitlement_sync.modules.billing.router import router as billing_router
from entitlement_sync.modules.billing.service import WebhookService
from entitlement_sync.modules.billing.stripe_client import StripeGateway
from entitlement_sync.modules.billing.tasks import enqueue_payment_failed_notification
from entitlement_sync.modules.premium import router as premium_router


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """Build the application.

    Args:
        settings: Configuration; loaded from the environment when omitted
        database: Pre-built database (tests); built from ``DATABASE_URL`` otherwise

    Returns:
        FastAPI: Configured application with components on ``app.state``
    """
    settings = settings or get_settings()
    environment = "development" if settings.DEBUG else "production"
    owns_database = database is None
    database = database or Database(settings.DATABASE_URL, echo=False)

    billing_config = BillingConfig.from_settings(settings)
    auth_config = AuthConfig.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.DEBUG:
            await database.create_all()
        yield
        if owns_database:
            await database.dispose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Accounts, authentication and Stripe subscription entitlements.",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "health", "description": "Health check endpoints"},
            {"name": "auth", "description": "Registration, login and token management"},
            {"name": "billing", "description": "Stripe webhook, entitlement and checkout"},
            {"name": "premium", "description": "Features that require an active subscription"},
        ],
    )

    app.state.settings = settings
    app.state.database = database
    app.state.billing_config = billing_config
    app.state.token_manager = TokenManager(auth_config)
    app.state.stripe_gateway = StripeGateway(billing_config)
    app.state.webhook_service = WebhookService.build(
        billing_config,
        database.session_maker,
        notifier=enqueue_payment_failed_notification,
    )

    setup_logging(
        level=settings.LOG_LEVEL or ("DEBUG" if settings.DEBUG else "INFO"),
        json_format=settings.LOG_JSON,
        include_stack_trace=settings.DEBUG,
    )
    set_app_info(version=settings.VERSION, environment=environment)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(MetricsMiddleware)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus scrape endpoint."""
        return Response(content=get_metrics(), media_type=get_metrics_content_type())

    app.include_router(auth_router, prefix=settings.API_V1_PREFIX)
    app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
    app.include_router(premium_router, prefix=settings.API_V1_PREFIX)

    return app
