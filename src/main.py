"""
Ops Health Service - Main Application
======================================

SLA evaluation and ops-health inbox for quote distribution.

Modules:
- Ops: Destination SLA evaluation, per-quote health rollups, event ledger

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, schema gate, webhook notifications
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Configuration
from src.config import settings

# Infrastructure
from src.infrastructure.database import (
    Base, init_database, close_database, get_engine, get_session_maker
)

# Ops Module
from src.ops.application import (
    EventLedgerService, OpsInboxService, SlaSettingsService, TelemetryDedupeCache
)
from src.ops.infrastructure import (
    SQLAlchemyQuoteRepository,
    SQLAlchemyDestinationRepository,
    SQLAlchemyOfferRepository,
    SQLAlchemyMessageReplyProvider,
    SQLAlchemyOpsEventRepository,
    SQLAlchemySlaSettingsRepository,
    SQLAlchemySchemaCapabilityProvider,
    StaticSchemaCapabilityProvider,
    WebhookNotificationSender,
)
from src.ops.interfaces import ops_router

# Logging and middleware
from src.shared.infrastructure.logging import setup_logging, get_logger
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler
)
from src.core.exceptions import ApplicationException

logger = get_logger(__name__)


def build_schema_provider():
    """Live introspection by default; the static table when configured."""
    if settings.schema_capability_mode == "static":
        return StaticSchemaCapabilityProvider.from_metadata(Base.metadata)
    return SQLAlchemySchemaCapabilityProvider(get_engine())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Wire the ops services onto app.state for the lifetime of the process."""
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Ops Health Service", extra={
        "version": settings.app_version,
        "environment": settings.environment,
        "schema_capability_mode": settings.schema_capability_mode
    })

    logger.info("Initializing database")
    init_database()
    session_maker = get_session_maker()

    schema_provider = build_schema_provider()

    ledger_service = EventLedgerService(
        SQLAlchemyOpsEventRepository(session_maker, schema_provider),
        telemetry_cache=TelemetryDedupeCache(
            capacity=settings.telemetry_cache_capacity,
            ttl_seconds=settings.telemetry_cache_ttl_seconds
        ),
        scan_limit=settings.ops_ledger_scan_limit,
        dedup_window=settings.ops_dedup_window
    )
    settings_service = SlaSettingsService(
        SQLAlchemySlaSettingsRepository(session_maker, schema_provider),
        schema_provider
    )
    inbox_service = OpsInboxService(
        quote_repository=SQLAlchemyQuoteRepository(session_maker, schema_provider),
        destination_repository=SQLAlchemyDestinationRepository(session_maker, schema_provider),
        offer_repository=SQLAlchemyOfferRepository(session_maker, schema_provider),
        message_reply_provider=SQLAlchemyMessageReplyProvider(session_maker, schema_provider),
        ledger_service=ledger_service,
        settings_service=settings_service
    )
    notification_sender = WebhookNotificationSender(
        settings.notification_webhook_url,
        timeout_seconds=settings.notification_timeout_seconds
    )

    # Controllers resolve services from app.state
    app.state.settings = settings
    app.state.schema_provider = schema_provider
    app.state.ledger_service = ledger_service
    app.state.sla_settings_service = settings_service
    app.state.ops_inbox_service = inbox_service
    app.state.notification_sender = notification_sender

    logger.info("Ops Health Service started successfully")

    yield

    logger.info("Shutting down Ops Health Service")

    await notification_sender.close()
    await close_database()

    logger.info("Ops Health Service shutdown complete")


app = FastAPI(
    title="Ops Health API",
    description="""
    ## Quote Distribution Ops Health

    Staff triage for quotes sent to many providers.

    ---

    ### Ops Inbox

    **Endpoints:**
    - `GET /ops/inbox` - One health row per quote, newest first
    - `GET /ops/settings` / `PUT /ops/settings` - SLA thresholds
    - `POST /ops/quotes/{id}/intro-requests` - Record a customer intro request
    - `POST /ops/intro-requests/handled` - Clear a pending intro request
    - `POST /ops/quotes/{id}/change-requests/{cr}/notify` - Deduplicated notification
    - `POST /ops/quotes/{id}/telemetry/estimate-shown` - Once-per-session telemetry

    **Reasons:**

    | Reason | Meaning |
    |--------|---------|
    | `queued_stale` | Destination queued longer than the queued threshold |
    | `no_reply` | Sent/submitted/viewed with no offer past the reply threshold |
    | `error` | Dispatch failed |

    ---
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Added last so the correlation id is set before the access log runs
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.include_router(ops_router)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Liveness plus a database ping.

    The inbox degrades instead of failing, so a database outage reports
    "degraded" rather than an error status.
    """
    checks = {
        "database": "connected",
        "schema_gate": settings.schema_capability_mode
    }

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = f"error: {type(e).__name__}"

    return {
        "status": "healthy" if checks["database"] == "connected" else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "ops": {
                "prefix": "/ops",
                "endpoints": [
                    "GET /ops/inbox - Ops health inbox",
                    "GET /ops/settings - Get SLA thresholds",
                    "PUT /ops/settings - Save SLA thresholds",
                    "POST /ops/quotes/{quote_id}/intro-requests - Record intro request",
                    "POST /ops/intro-requests/handled - Mark intro request handled",
                    "POST /ops/quotes/{quote_id}/change-requests/{change_request_id}/notify - Notify once",
                    "POST /ops/quotes/{quote_id}/telemetry/estimate-shown - Record estimate shown"
                ]
            }
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
