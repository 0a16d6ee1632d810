"""
Configuration Module
====================

Environment-driven settings for the ops health service, plus the status,
reason and event-type vocabularies shared by every layer.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """
    Process settings read from the environment or a local .env file.

    Business thresholds (SLA hours) are not here; they live in the
    database so staff can edit them without a deploy.
    """

    # ========== Application ==========
    app_name: str = Field(default="ops-health-service", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/quotes",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Schema Capability Gate ==========
    schema_capability_mode: str = Field(
        default="live",
        description="'live' introspects the database, 'static' uses the bundled capability table"
    )

    # ========== Event Ledger ==========
    ops_ledger_scan_limit: int = Field(
        default=1000,
        description="Max ops events scanned when deriving intro request state",
        ge=1
    )
    ops_dedup_window: int = Field(
        default=25,
        description="Most recent marker events scanned for notification dedup",
        ge=1,
        le=100
    )

    # ========== Telemetry Dedupe ==========
    telemetry_cache_capacity: int = Field(
        default=10_000,
        description="Max session keys remembered by the telemetry dedupe cache",
        ge=1
    )
    telemetry_cache_ttl_seconds: float = Field(
        default=6 * 60 * 60,
        description="Seconds a telemetry key is remembered",
        gt=0
    )

    # ========== Notifications ==========
    notification_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook URL for ops notifications"
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for webhook calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        normalized = v.strip().lower()
        if normalized not in ("development", "staging", "production"):
            raise ValueError(f"unknown environment '{v}'")
        return normalized

    @field_validator("schema_capability_mode")
    @classmethod
    def validate_schema_capability_mode(cls, v: str) -> str:
        allowed = {"live", "static"}
        normalized = v.strip().lower()
        if normalized not in allowed:
            raise ValueError(f"schema_capability_mode must be one of {allowed}")
        return normalized


@lru_cache()
def get_settings() -> Settings:
    """Settings are read once per process."""
    return Settings()


settings = get_settings()


# ========== Constants ==========

class DestinationStatus(str):
    """Dispatch statuses of a provider's copy of a quote."""
    QUEUED = "queued"
    SENT = "sent"
    SUBMITTED = "submitted"
    VIEWED = "viewed"
    QUOTED = "quoted"
    DECLINED = "declined"
    ERROR = "error"


class SlaReason(str):
    """Stable reason labels exposed to inbox consumers."""
    QUEUED_STALE = "queued_stale"
    NO_REPLY = "no_reply"
    ERROR = "error"


class OpsEventType(str):
    """Event types written to the append-only ops ledger."""
    DESTINATION_ADDED = "destination_added"
    DESTINATION_STATUS_UPDATED = "destination_status_updated"
    OFFER_UPSERTED = "offer_upserted"
    OFFER_SELECTED = "offer_selected"
    MESSAGE_POSTED = "message_posted"
    CUSTOMER_INTRO_REQUESTED = "customer_intro_requested"
    CUSTOMER_INTRO_HANDLED = "customer_intro_handled"
    CHANGE_REQUEST_NOTIFIED = "change_request_notified"
    ESTIMATE_SHOWN = "estimate_shown"


class SenderRole(str):
    """Authors of quote thread messages."""
    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    ADMIN = "admin"


# ========== Lists for validation ==========

VALID_DESTINATION_STATUSES = [
    DestinationStatus.QUEUED, DestinationStatus.SENT,
    DestinationStatus.SUBMITTED, DestinationStatus.VIEWED,
    DestinationStatus.QUOTED, DestinationStatus.DECLINED,
    DestinationStatus.ERROR
]
AWAITING_REPLY_STATUSES = [
    DestinationStatus.SENT, DestinationStatus.SUBMITTED, DestinationStatus.VIEWED
]
INTRO_EVENT_TYPES = [
    OpsEventType.CUSTOMER_INTRO_REQUESTED, OpsEventType.CUSTOMER_INTRO_HANDLED
]
VALID_SENDER_ROLES = [SenderRole.CUSTOMER, SenderRole.SUPPLIER, SenderRole.ADMIN]

INBOX_DEFAULT_LIMIT = 50
INBOX_MAX_LIMIT = 200
