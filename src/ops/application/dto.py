"""
Ops Application DTOs
=====================

Data Transfer Objects for the ops inbox API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from src.config import INBOX_DEFAULT_LIMIT, INBOX_MAX_LIMIT
from src.ops.domain import SlaConfig


NotificationOutcomeStr = Literal["sent", "skipped", "failed"]


class NotificationOutcome(str, Enum):
    """Result of a deduplicated notification attempt."""
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


# ========== Service DTOs ==========

class InboxFilters(BaseModel):
    """
    Inbox filters.

    `status` and `selected_only` are pushed down to the quotes query; the
    rest are applied in memory after hydration.
    """
    status: Optional[str] = None
    needs_action_only: bool = False
    message_needs_reply_only: bool = False
    intro_requested_only: bool = False
    provider_id: Optional[str] = None
    destination_status: Optional[str] = None
    selected_only: bool = False

    @field_validator("status", "destination_status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> Optional[str]:
        if not isinstance(v, str):
            return None
        normalized = v.strip().lower()
        return normalized or None

    @field_validator("provider_id", mode="before")
    @classmethod
    def normalize_id(cls, v: Any) -> Optional[str]:
        if not isinstance(v, str):
            return None
        return v.strip() or None


class SlaSettings(BaseModel):
    """Loaded SLA configuration plus provenance."""
    config: SlaConfig
    row_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    using_fallback: bool = True


class SaveSlaSettingsResult(BaseModel):
    ok: bool
    error: Optional[str] = None
    config: Optional[SlaConfig] = None


# ========== Request DTOs ==========

class InboxQueryDTO(BaseModel):
    """Query parameters for the inbox endpoint."""
    limit: int = Field(default=INBOX_DEFAULT_LIMIT, ge=1, le=INBOX_MAX_LIMIT)
    offset: int = Field(default=0, ge=0)
    status: Optional[str] = None
    needs_action_only: bool = False
    message_needs_reply_only: bool = False
    intro_requested_only: bool = False
    provider_id: Optional[str] = None
    destination_status: Optional[str] = None
    selected_only: bool = False

    def to_filters(self) -> InboxFilters:
        return InboxFilters(
            status=self.status,
            needs_action_only=self.needs_action_only,
            message_needs_reply_only=self.message_needs_reply_only,
            intro_requested_only=self.intro_requested_only,
            provider_id=self.provider_id,
            destination_status=self.destination_status,
            selected_only=self.selected_only,
        )


class SlaSettingsUpdateRequest(BaseModel):
    """Request body for saving SLA thresholds (hours, rounded on save)."""
    queued_max_hours: float = Field(..., ge=0, allow_inf_nan=False)
    sent_no_reply_max_hours: float = Field(..., ge=0, allow_inf_nan=False)


class IntroRequestCreateRequest(BaseModel):
    """Request body for a customer asking to be introduced to a provider."""
    provider_id: str = Field(..., min_length=1)
    offer_id: Optional[str] = None
    customer_email: Optional[str] = None
    company_name: Optional[str] = Field(None, max_length=200)
    notes: Optional[str] = Field(None, max_length=2000)


class IntroHandledRequest(BaseModel):
    """Request body for marking a customer intro request handled."""
    quote_id: str = Field(..., min_length=1)
    provider_id: str = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=2000)
    handled_by: Optional[str] = None


class ChangeRequestNotifyRequest(BaseModel):
    """Optional context forwarded to the notification sender."""
    change_type: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=2000)
    requester_email: Optional[str] = None


class EstimateShownRequest(BaseModel):
    """Telemetry body for an estimate rendered to a customer session."""
    session_key: str = Field(..., min_length=1)
    process: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=1)


# ========== Response DTOs ==========

class SlaConfigResponse(BaseModel):
    queued_max_hours: int
    sent_no_reply_max_hours: int
    error_always_needs_action: bool


class SlaSettingsResponse(BaseModel):
    """Response model for the current SLA settings."""
    config: SlaConfigResponse
    using_fallback: bool = Field(..., description="True when defaults are in effect")
    updated_at: Optional[datetime] = None


class SaveSlaSettingsResponse(BaseModel):
    ok: bool
    error: Optional[str] = None
    config: Optional[SlaConfigResponse] = None


class OpsInboxResponse(BaseModel):
    """Response model for the ops inbox."""
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    count: int = 0
    sla: SlaSettingsResponse


class LedgerWriteResponse(BaseModel):
    """Outcome of an intro request write; skipped when nothing was written."""
    ok: bool
    skipped: bool = False


class NotifyResponse(BaseModel):
    outcome: NotificationOutcomeStr


class TelemetryResponse(BaseModel):
    recorded: bool
