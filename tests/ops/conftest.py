"""Fixtures for the ops services built over in-memory fakes."""

from datetime import datetime
from typing import Dict, List, Optional

import pytest

from src.ops.application import (
    EventLedgerService,
    IDestinationRepository,
    IMessageReplyProvider,
    IOfferRepository,
    OpsInboxService,
    SlaSettingsService,
    TelemetryDedupeCache,
)
from src.ops.domain import CustomerInfo, DestinationSnapshot, MessageReplyState, OfferSnapshot, QuoteSnapshot

from tests.ops.fakes import (
    NOW,
    FakeDestinationRepository,
    FakeMessageReplyProvider,
    FakeOfferRepository,
    FakeOpsEventRepository,
    FakeQuoteRepository,
    FakeSchemaProvider,
    FakeSlaSettingsRepository,
)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def schema_provider() -> FakeSchemaProvider:
    return FakeSchemaProvider()


@pytest.fixture
def event_repo() -> FakeOpsEventRepository:
    return FakeOpsEventRepository()


@pytest.fixture
def telemetry_cache() -> TelemetryDedupeCache:
    return TelemetryDedupeCache(capacity=100, ttl_seconds=60)


@pytest.fixture
def ledger(event_repo, telemetry_cache) -> EventLedgerService:
    return EventLedgerService(event_repo, telemetry_cache=telemetry_cache, scan_limit=1000, dedup_window=25)


@pytest.fixture
def settings_repo() -> FakeSlaSettingsRepository:
    return FakeSlaSettingsRepository()


@pytest.fixture
def settings_service(settings_repo, schema_provider) -> SlaSettingsService:
    return SlaSettingsService(settings_repo, schema_provider)


@pytest.fixture
def build_inbox(ledger, settings_service):
    """Factory for an inbox service over in-memory collections."""

    def _build(
        quotes: List[QuoteSnapshot],
        destinations: Optional[List[DestinationSnapshot]] = None,
        offers: Optional[List[OfferSnapshot]] = None,
        reply_states: Optional[Dict[str, MessageReplyState]] = None,
        customers: Optional[Dict[str, CustomerInfo]] = None,
        destination_repository: Optional[IDestinationRepository] = None,
        offer_repository: Optional[IOfferRepository] = None,
        message_reply_provider: Optional[IMessageReplyProvider] = None
    ) -> OpsInboxService:
        return OpsInboxService(
            quote_repository=FakeQuoteRepository(quotes, customers),
            destination_repository=destination_repository or FakeDestinationRepository(destinations or []),
            offer_repository=offer_repository or FakeOfferRepository(offers or []),
            message_reply_provider=message_reply_provider or FakeMessageReplyProvider(reply_states),
            ledger_service=ledger,
            settings_service=settings_service,
        )

    return _build
