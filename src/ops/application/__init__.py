"""
Ops Application Layer
======================

Application layer for the ops health module.

Contains:
- Services: Inbox builder, SLA settings and the event ledger
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and repository interfaces,
but not on concrete infrastructure implementations.
"""

from src.ops.application.dto import (
    NotificationOutcome,
    InboxFilters,
    SlaSettings,
    SaveSlaSettingsResult,
    InboxQueryDTO,
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
from src.ops.application.services import (
    ISchemaCapabilityProvider,
    IQuoteRepository,
    IDestinationRepository,
    IOfferRepository,
    IMessageReplyProvider,
    ISlaSettingsRepository,
    SlaSettingsService,
    OpsInboxService,
    resolve_message_reply_state,
)
from src.ops.application.ledger import (
    IOpsEventRepository,
    EventLedgerService,
    TelemetryDedupeCache,
    derive_intro_request_states,
)

__all__ = [
    # DTOs
    "NotificationOutcome",
    "InboxFilters",
    "SlaSettings",
    "SaveSlaSettingsResult",
    "InboxQueryDTO",
    "SlaSettingsUpdateRequest",
    "IntroRequestCreateRequest",
    "IntroHandledRequest",
    "ChangeRequestNotifyRequest",
    "EstimateShownRequest",
    "SlaConfigResponse",
    "SlaSettingsResponse",
    "SaveSlaSettingsResponse",
    "OpsInboxResponse",
    "LedgerWriteResponse",
    "NotifyResponse",
    "TelemetryResponse",
    # Services
    "SlaSettingsService",
    "OpsInboxService",
    "EventLedgerService",
    "TelemetryDedupeCache",
    "derive_intro_request_states",
    "resolve_message_reply_state",
    # Repository Interfaces
    "ISchemaCapabilityProvider",
    "IQuoteRepository",
    "IDestinationRepository",
    "IOfferRepository",
    "IMessageReplyProvider",
    "ISlaSettingsRepository",
    "IOpsEventRepository",
]
