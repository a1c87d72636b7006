"""
artshare Billing Backend - Main FastAPI Application.

Serves checkout/portal sessions, receives Stripe webhooks and keeps each
user's subscription entitlement in sync with Stripe.

Run with:
    uvicorn artshare.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from artshare.api.v1.billing import router as billing_router
from artshare.api.v1.notifications import router as notifications_router
from artshare.config import get_settings
from artshare.constants import API_TITLE, API_VERSION
from artshare.errors import register_error_handlers
from artshare.logging_config import setup_logging
from artshare.middleware import RequestContextMiddleware
from artshare.scheduler import build_scheduler
from artshare.services.billing_service import BillingService
from artshare.services.entitlement_store import (
    InMemoryEntitlementStore,
    SupabaseEntitlementStore,
)
from artshare.services.notifier import ConnectionRegistry, RegistryNotifier
from artshare.services.reconciliation_service import ReconciliationService
from artshare.services.stripe_service import StripeService
from artshare.services.usage_service import UsageService

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug, environment=settings.billing.environment)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info(
        "api_startup",
        cors_origins=settings.cors_origins,
        environment=settings.billing.environment,
        simulation_enabled=settings.billing.simulation_enabled,
    )

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")

    _app.state.supabase = supabase_client

    if supabase_client is not None:
        store = SupabaseEntitlementStore(supabase_client)
    else:
        logger.warning("entitlement_store_in_memory", detail="Entitlements are not persisted")
        store = InMemoryEntitlementStore()

    registry = ConnectionRegistry()
    _app.state.connection_registry = registry

    stripe_service: StripeService | None = None
    if settings.stripe.secret_key:
        stripe_service = StripeService(
            settings.stripe,
            webhook_tolerance_seconds=settings.billing.webhook_tolerance_seconds,
        )
        logger.info("stripe_configured")
    else:
        logger.warning("stripe_not_configured", detail="Billing endpoints will return 503")

    billing_service: BillingService | None = None
    if stripe_service is not None:
        reconciliation = ReconciliationService(
            store,
            stripe_service,
            notifier=RegistryNotifier(registry),
        )
        billing_service = BillingService(store, stripe_service, reconciliation, settings.billing)

    _app.state.stripe_service = stripe_service
    _app.state.billing_service = billing_service

    usage_service = UsageService(store)
    _app.state.usage_service = usage_service

    scheduler = None
    if settings.billing.daily_reset_enabled:
        scheduler = build_scheduler(usage_service, hour=settings.billing.daily_reset_hour_utc)
        scheduler.start()
        logger.info("billing_scheduler_started")

    logger.info("services_initialized")

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Subscription billing for the artshare platform: Stripe checkout and "
        "portal sessions, webhook reconciliation and entitlement lookups."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Include routers
app.include_router(billing_router, prefix="/api/v1")
app.include_router(notifications_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
