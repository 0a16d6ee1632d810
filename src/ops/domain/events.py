"""
Ops Event Payloads
===================

Typed payloads for the append-only `ops_events` ledger.

Each known `event_type` has one payload model. Payloads are validated when
an event is written and again when it is read back; extra fields are
ignored so older readers tolerate newer writers. Unknown event types parse
into `GenericEventPayload`, which keeps the raw mapping untouched.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from src.config import OpsEventType

# Payload keys that may carry a notification correlation id
CORRELATION_KEYS = ("change_request_id", "changeRequestId", "correlation_id", "correlationId")


def _carries_correlation(data: Dict[str, Any]) -> bool:
    for key in CORRELATION_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return True
    return any(isinstance(v, dict) and _carries_correlation(v) for v in data.values())


class OpsEventPayload(BaseModel):
    """Base payload: ignores unknown fields, drops None on dump."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class GenericEventPayload(OpsEventPayload):
    """Payload of an event type this service does not interpret."""

    model_config = ConfigDict(extra="allow")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class DestinationAddedPayload(OpsEventPayload):
    provider_id: Optional[str] = None
    status: Optional[str] = None


class DestinationStatusUpdatedPayload(OpsEventPayload):
    provider_id: Optional[str] = None
    status_from: Optional[str] = None
    status_to: str
    error_message: Optional[str] = None

    @field_validator("status_to")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        return v.strip().lower()


class OfferUpsertedPayload(OpsEventPayload):
    provider_id: str
    offer_id: Optional[str] = None
    status: Optional[str] = None


class OfferSelectedPayload(OpsEventPayload):
    offer_id: str
    provider_id: Optional[str] = None


class MessagePostedPayload(OpsEventPayload):
    sender_role: str
    message_id: Optional[str] = None

    @field_validator("sender_role")
    @classmethod
    def normalize_role(cls, v: str) -> str:
        return v.strip().lower()


class CustomerIntroRequestedPayload(OpsEventPayload):
    provider_id: str = Field(min_length=1)
    offer_id: Optional[str] = None
    customer_email: Optional[str] = None
    company_name: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=2000)
    source: Optional[str] = None


class CustomerIntroHandledPayload(OpsEventPayload):
    provider_id: str = Field(min_length=1)
    notes: Optional[str] = Field(default=None, max_length=2000)
    source: Optional[str] = None
    handled_by: Optional[str] = None


class ChangeRequestNotifiedPayload(OpsEventPayload):
    """
    Dedup marker written after a change-request notification was delivered.

    Older writers used camelCase or nested correlation keys, so extra
    fields are kept and any known correlation key satisfies validation.
    """

    model_config = ConfigDict(extra="allow")

    change_request_id: Optional[str] = None
    channel: Optional[str] = None

    @model_validator(mode="after")
    def require_correlation(self) -> "ChangeRequestNotifiedPayload":
        if not _carries_correlation(self.model_dump()):
            raise ValueError("marker must carry a change request or correlation id")
        return self


class EstimateShownPayload(OpsEventPayload):
    session_key: str = Field(min_length=1)
    process: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=1)


PAYLOAD_MODELS: Dict[str, Type[OpsEventPayload]] = {
    OpsEventType.DESTINATION_ADDED: DestinationAddedPayload,
    OpsEventType.DESTINATION_STATUS_UPDATED: DestinationStatusUpdatedPayload,
    OpsEventType.OFFER_UPSERTED: OfferUpsertedPayload,
    OpsEventType.OFFER_SELECTED: OfferSelectedPayload,
    OpsEventType.MESSAGE_POSTED: MessagePostedPayload,
    OpsEventType.CUSTOMER_INTRO_REQUESTED: CustomerIntroRequestedPayload,
    OpsEventType.CUSTOMER_INTRO_HANDLED: CustomerIntroHandledPayload,
    OpsEventType.CHANGE_REQUEST_NOTIFIED: ChangeRequestNotifiedPayload,
    OpsEventType.ESTIMATE_SHOWN: EstimateShownPayload,
}


def normalize_event_type(event_type: Any) -> Optional[str]:
    if not isinstance(event_type, str):
        return None
    normalized = event_type.strip().lower()
    return normalized or None


def parse_payload(event_type: str, payload: Any) -> OpsEventPayload:
    """
    Validate a raw payload against the model for its event type.

    Raises:
        pydantic.ValidationError: If a known event type has an invalid payload
    """
    raw = payload if isinstance(payload, dict) else {}
    model = PAYLOAD_MODELS.get(event_type, GenericEventPayload)
    return model.model_validate(raw)


def payload_references(payload: Any, correlation_id: str) -> bool:
    """
    Check whether a payload carries the given correlation id.

    Looks at the known correlation keys in the payload and in any nested
    mapping, at any depth.
    """
    if not correlation_id:
        return False

    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    if not isinstance(payload, dict):
        return False

    for key in CORRELATION_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value.strip() == correlation_id:
            return True

    for value in payload.values():
        if isinstance(value, dict) and payload_references(value, correlation_id):
            return True
    return False


@dataclass(frozen=True)
class OpsEvent:
    """One ledger row with its typed payload."""

    event_type: str
    payload: OpsEventPayload
    created_at: Optional[datetime]
    quote_id: Optional[str] = None
    destination_id: Optional[str] = None
    id: Optional[str] = None

    @property
    def provider_id(self) -> Optional[str]:
        value = getattr(self.payload, "provider_id", None)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @classmethod
    def from_row(
        cls,
        event_type: Any,
        payload: Any,
        created_at: Optional[datetime],
        quote_id: Optional[str] = None,
        destination_id: Optional[str] = None,
        id: Optional[str] = None
    ) -> Optional["OpsEvent"]:
        """
        Build an event from a stored row.

        Returns None when the event type is blank or a known type carries an
        invalid payload; callers skip such rows.
        """
        normalized = normalize_event_type(event_type)
        if normalized is None:
            return None
        try:
            parsed = parse_payload(normalized, payload)
        except ValidationError:
            return None
        return cls(
            event_type=normalized,
            payload=parsed,
            created_at=created_at,
            quote_id=quote_id,
            destination_id=destination_id,
            id=id,
        )
