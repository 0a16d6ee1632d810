"""
Ops Domain Layer
=================

Pure domain logic with no infrastructure dependencies.
"""

from src.ops.domain.entities import (
    QuoteSnapshot,
    CustomerInfo,
    DestinationSnapshot,
    OfferSnapshot,
    DestinationVerdict,
    QuoteNeedsAction,
    IntroRequestState,
    MessageReplyState,
    QuoteHealthSummary,
    QuoteHealthRow,
)
from src.ops.domain.value_objects import (
    SlaConfig,
    DEFAULT_SLA_CONFIG,
    SlaEvaluator,
    build_top_reasons,
    coerce_datetime,
    resolve_reference_time,
    round_hours,
)
from src.ops.domain.events import (
    OpsEvent,
    OpsEventPayload,
    GenericEventPayload,
    PAYLOAD_MODELS,
    parse_payload,
    payload_references,
)

__all__ = [
    "QuoteSnapshot",
    "CustomerInfo",
    "DestinationSnapshot",
    "OfferSnapshot",
    "DestinationVerdict",
    "QuoteNeedsAction",
    "IntroRequestState",
    "MessageReplyState",
    "QuoteHealthSummary",
    "QuoteHealthRow",
    "SlaConfig",
    "DEFAULT_SLA_CONFIG",
    "SlaEvaluator",
    "build_top_reasons",
    "coerce_datetime",
    "resolve_reference_time",
    "round_hours",
    "OpsEvent",
    "OpsEventPayload",
    "GenericEventPayload",
    "PAYLOAD_MODELS",
    "parse_payload",
    "payload_references",
]
