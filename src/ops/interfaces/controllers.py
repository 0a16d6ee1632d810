"""
Ops Controllers (API Routes)
=============================

FastAPI routes for the ops health inbox.

Controllers are thin - they delegate to application services, which are
built once at startup and stored on `app.state`.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from src.config import INBOX_DEFAULT_LIMIT, INBOX_MAX_LIMIT, OpsEventType
from src.ops.application import (
    EventLedgerService,
    OpsInboxService,
    SlaSettingsService,
    InboxQueryDTO,
    SlaSettings,
    SlaSettingsUpdateRequest,
    IntroRequestCreateRequest,
    IntroHandledRequest,
    ChangeRequestNotifyRequest,
    EstimateShownRequest,
    SlaConfigResponse,
    SlaSettingsResponse,
    SaveSlaSettingsResponse,
    OpsInboxResponse,
    LedgerWriteResponse,
    NotifyResponse,
    TelemetryResponse,
)
from src.core.exceptions import ValidationException
from src.ops.infrastructure.external import INotificationSender, OpsNotification
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/ops", tags=["Ops Inbox"])


# ========== Example payloads for Swagger ==========

INBOX_RESPONSE_EXAMPLE = {
    "rows": [
        {
            "quote": {
                "id": "q-1001",
                "created_at": "2025-01-01T08:00:00+00:00",
                "status": "open",
                "title": "Bracket, 6061-T6",
                "selected_offer_id": None,
                "selected_provider_id": None
            },
            "customer": {"name": "Ada", "email": "ada@example.com", "company": "Acme"},
            "destinations": [],
            "offers": [],
            "summary": {
                "counts": {"queued": 1, "sent": 0, "submitted": 0, "viewed": 0,
                           "quoted": 0, "declined": 0, "error": 0},
                "needs_action_count": 1,
                "needs_reply_count": 0,
                "errors_count": 0,
                "queued_stale_count": 1,
                "message_needs_reply_count": 0,
                "intro_requests_count": 0,
                "top_reasons": ["queued_stale"],
                "intro_request_provider_ids": [],
                "last_intro_requested_at": None,
                "last_message_at": None
            }
        }
    ],
    "count": 1,
    "sla": {
        "config": {"queued_max_hours": 4, "sent_no_reply_max_hours": 48, "error_always_needs_action": True},
        "using_fallback": True,
        "updated_at": None
    }
}


# ========== Dependencies ==========

def get_inbox_service(request: Request) -> OpsInboxService:
    """Get ops inbox service instance."""
    return request.app.state.ops_inbox_service


def get_settings_service(request: Request) -> SlaSettingsService:
    """Get SLA settings service instance."""
    return request.app.state.sla_settings_service


def get_ledger_service(request: Request) -> EventLedgerService:
    """Get event ledger service instance."""
    return request.app.state.ledger_service


def get_notification_sender(request: Request) -> INotificationSender:
    """Get notification sender instance."""
    return request.app.state.notification_sender


def _settings_response(loaded: SlaSettings) -> SlaSettingsResponse:
    return SlaSettingsResponse(
        config=SlaConfigResponse(**loaded.config.model_dump()),
        using_fallback=loaded.using_fallback,
        updated_at=loaded.updated_at,
    )


# ========== Route Handlers ==========

@router.get(
    "/inbox",
    response_model=OpsInboxResponse,
    summary="Ops health inbox",
    description="""
    One row per quote, newest first, with an SLA rollup of its destinations.

    **Reasons**: `queued_stale`, `no_reply`, `error`. Treat unknown values as opaque.

    `needs_action_count` adds one for an unanswered customer/supplier message
    and one when any customer intro request is pending.
    """,
    responses={
        200: {
            "description": "Inbox rows",
            "content": {"application/json": {"example": INBOX_RESPONSE_EXAMPLE}}
        }
    }
)
async def get_inbox(
    request: Request,
    limit: int = Query(INBOX_DEFAULT_LIMIT, ge=1, le=INBOX_MAX_LIMIT),
    offset: int = Query(0, ge=0),
    status: Optional[str] = Query(None, description="Quote status (pushed down)"),
    needs_action_only: bool = Query(False),
    message_needs_reply_only: bool = Query(False),
    intro_requested_only: bool = Query(False),
    provider_id: Optional[str] = Query(None, description="Any destination for this provider"),
    destination_status: Optional[str] = Query(None, description="Any destination in this status"),
    selected_only: bool = Query(False, description="Only quotes with a selected offer"),
    inbox_service: OpsInboxService = Depends(get_inbox_service),
    settings_service: SlaSettingsService = Depends(get_settings_service)
):
    query = InboxQueryDTO(
        limit=limit,
        offset=offset,
        status=status,
        needs_action_only=needs_action_only,
        message_needs_reply_only=message_needs_reply_only,
        intro_requested_only=intro_requested_only,
        provider_id=provider_id,
        destination_status=destination_status,
        selected_only=selected_only,
    )

    loaded = await settings_service.load_config()
    rows = await inbox_service.build(
        limit=query.limit,
        offset=query.offset,
        filters=query.to_filters(),
        sla_config=loaded.config,
    )

    logger.info(
        "Ops inbox served",
        extra={
            "correlation_id": getattr(request.state, "correlation_id", None),
            "row_count": len(rows),
            "using_fallback": loaded.using_fallback,
        }
    )

    return OpsInboxResponse(
        rows=[row.to_dict() for row in rows],
        count=len(rows),
        sla=_settings_response(loaded),
    )


@router.get(
    "/settings",
    response_model=SlaSettingsResponse,
    summary="Get SLA thresholds"
)
async def get_sla_settings(
    settings_service: SlaSettingsService = Depends(get_settings_service)
):
    return _settings_response(await settings_service.load_config())


@router.put(
    "/settings",
    response_model=SaveSlaSettingsResponse,
    summary="Save SLA thresholds",
    description="Hours are rounded half-up to whole hours. Failure is reported in the body."
)
async def save_sla_settings(
    body: SlaSettingsUpdateRequest,
    settings_service: SlaSettingsService = Depends(get_settings_service)
):
    result = await settings_service.save_config(body.queued_max_hours, body.sent_no_reply_max_hours)
    return SaveSlaSettingsResponse(
        ok=result.ok,
        error=result.error,
        config=SlaConfigResponse(**result.config.model_dump()) if result.config else None,
    )


@router.post(
    "/quotes/{quote_id}/intro-requests",
    response_model=LedgerWriteResponse,
    summary="Record a customer intro request for a provider"
)
async def request_intro(
    quote_id: str,
    body: IntroRequestCreateRequest,
    ledger: EventLedgerService = Depends(get_ledger_service)
):
    provider_id = body.provider_id.strip()
    if not quote_id.strip() or not provider_id:
        raise ValidationException(
            "quote_id and provider_id must not be blank",
            details={"quote_id": quote_id, "provider_id": body.provider_id},
        )

    written = await ledger.record_intro_requested(
        quote_id.strip(),
        provider_id,
        offer_id=body.offer_id,
        customer_email=body.customer_email,
        company_name=body.company_name,
        notes=body.notes,
        source="customer_portal",
    )
    return LedgerWriteResponse(ok=written, skipped=not written)


@router.post(
    "/intro-requests/handled",
    response_model=LedgerWriteResponse,
    summary="Mark a customer intro request handled"
)
async def mark_intro_handled(
    body: IntroHandledRequest,
    ledger: EventLedgerService = Depends(get_ledger_service)
):
    quote_id = body.quote_id.strip()
    provider_id = body.provider_id.strip()
    if not quote_id or not provider_id:
        raise ValidationException(
            "quote_id and provider_id must not be blank",
            details={"quote_id": body.quote_id, "provider_id": body.provider_id},
        )

    written = await ledger.mark_intro_handled(
        quote_id,
        provider_id,
        notes=body.notes,
        handled_by=body.handled_by,
    )
    return LedgerWriteResponse(ok=written, skipped=not written)


@router.post(
    "/quotes/{quote_id}/change-requests/{change_request_id}/notify",
    response_model=NotifyResponse,
    summary="Notify staff about a change request (deduplicated)",
    description="""
    Delivers at most one notification per change request, using the ops
    event log as the dedup ledger. Best-effort: concurrent calls may both deliver.
    """
)
async def notify_change_request(
    quote_id: str,
    change_request_id: str,
    body: Optional[ChangeRequestNotifyRequest] = Body(None),
    ledger: EventLedgerService = Depends(get_ledger_service),
    sender: INotificationSender = Depends(get_notification_sender)
):
    details = body.model_dump(exclude_none=True) if body else {}
    notification = OpsNotification(
        event_type="change_request_submitted",
        quote_id=quote_id,
        correlation_id=change_request_id,
        summary=f"Change request {change_request_id} submitted on quote {quote_id}",
        details=details,
    )

    outcome = await ledger.maybe_notify(
        quote_id,
        change_request_id,
        lambda: sender.send(notification),
        marker_payload={"channel": "webhook"},
    )
    return NotifyResponse(outcome=outcome.value)


@router.post(
    "/quotes/{quote_id}/telemetry/estimate-shown",
    response_model=TelemetryResponse,
    summary="Record that an estimate was shown (once per session)"
)
async def record_estimate_shown(
    quote_id: str,
    body: EstimateShownRequest,
    ledger: EventLedgerService = Depends(get_ledger_service)
):
    key = f"{OpsEventType.ESTIMATE_SHOWN}:{quote_id}:{body.session_key}"
    recorded = await ledger.record_telemetry_once(
        key,
        quote_id,
        OpsEventType.ESTIMATE_SHOWN,
        body.model_dump(exclude_none=True),
    )
    return TelemetryResponse(recorded=recorded)
