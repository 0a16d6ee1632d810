"""
Ops Infrastructure Layer
=========================

Concrete implementations for data access and external services.
"""

from src.ops.infrastructure.repositories import (
    SQLAlchemyQuoteRepository,
    SQLAlchemyDestinationRepository,
    SQLAlchemyOfferRepository,
    SQLAlchemyMessageReplyProvider,
    SQLAlchemyOpsEventRepository,
    SQLAlchemySlaSettingsRepository,
)
from src.ops.infrastructure.schema import (
    SQLAlchemySchemaCapabilityProvider,
    StaticSchemaCapabilityProvider,
    is_missing_schema_error,
    serialize_db_error,
)
from src.ops.infrastructure.external import (
    CircuitBreaker,
    INotificationSender,
    OpsNotification,
    WebhookNotificationSender,
)

__all__ = [
    "SQLAlchemyQuoteRepository",
    "SQLAlchemyDestinationRepository",
    "SQLAlchemyOfferRepository",
    "SQLAlchemyMessageReplyProvider",
    "SQLAlchemyOpsEventRepository",
    "SQLAlchemySlaSettingsRepository",
    "SQLAlchemySchemaCapabilityProvider",
    "StaticSchemaCapabilityProvider",
    "is_missing_schema_error",
    "serialize_db_error",
    "CircuitBreaker",
    "INotificationSender",
    "OpsNotification",
    "WebhookNotificationSender",
]
