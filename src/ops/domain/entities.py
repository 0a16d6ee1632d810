"""
Ops Domain Entities
====================

Pure Python domain entities for the ops health inbox.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns. Snapshots are
read-side copies of rows owned by other parts of the system; derived
objects are rebuilt on every request and never persisted.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Optional, List, Dict


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class QuoteSnapshot:
    """One customer request as seen by the inbox."""

    id: str
    created_at: Optional[datetime] = None
    status: Optional[str] = None
    title: Optional[str] = None
    selected_offer_id: Optional[str] = None
    selected_provider_id: Optional[str] = None


@dataclass(frozen=True)
class CustomerInfo:
    """Customer contact fields hydrated onto an inbox row."""

    name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None


@dataclass(frozen=True)
class DestinationSnapshot:
    """
    A provider's copy of a quote.

    The evaluator treats `status` as a snapshot, not a transition log.
    Timestamp fields other than `created_at` may be missing when the
    deployed schema predates them.
    """

    id: str
    quote_id: str
    provider_id: str
    status: Optional[str]
    created_at: Optional[datetime]
    last_status_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    error_message: Optional[str] = None

    # Provider sub-fields (joined when the providers relation is available)
    provider_name: Optional[str] = None
    provider_type: Optional[str] = None
    quoting_mode: Optional[str] = None

    @property
    def normalized_status(self) -> str:
        """Status trimmed and lower-cased; empty when unknown."""
        return (self.status or "").strip().lower()


@dataclass(frozen=True)
class OfferSnapshot:
    """A provider's response; its presence means the destination got a reply."""

    quote_id: str
    provider_id: str
    id: Optional[str] = None
    status: Optional[str] = None
    received_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class DestinationVerdict:
    """Needs-action verdict for one destination."""

    needs_action: bool
    reason: Optional[str]
    age_hours: float = 0.0


@dataclass
class QuoteNeedsAction:
    """SLA rollup of all destinations of one quote."""

    counts: Dict[str, int]
    needs_action_count: int = 0
    needs_reply_count: int = 0
    errors_count: int = 0
    queued_stale_count: int = 0
    top_reasons: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class IntroRequestState:
    """Pending customer intro requests for one quote, derived from the ledger."""

    quote_id: str
    intro_requests_count: int = 0
    intro_request_provider_ids: tuple = ()
    last_intro_requested_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.intro_requests_count > 0


@dataclass(frozen=True)
class MessageReplyState:
    """Who spoke last on a quote thread, from the staff point of view."""

    quote_id: str
    last_message_at: Optional[datetime] = None
    last_message_role: Optional[str] = None
    needs_reply_from_staff: bool = False


@dataclass
class QuoteHealthSummary:
    """
    Per-quote health rollup shown in the ops inbox.

    `needs_action_count` is the destination rollup plus one for an owed
    message reply and one for any pending intro request.
    """

    counts: Dict[str, int]
    needs_action_count: int
    needs_reply_count: int
    errors_count: int
    queued_stale_count: int
    message_needs_reply_count: int
    intro_requests_count: int
    top_reasons: List[str] = field(default_factory=list)
    intro_request_provider_ids: List[str] = field(default_factory=list)
    last_intro_requested_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None

    @classmethod
    def from_rollups(
        cls,
        needs: QuoteNeedsAction,
        reply_state: Optional[MessageReplyState],
        intro_state: Optional[IntroRequestState]
    ) -> "QuoteHealthSummary":
        """Merge the destination rollup with message and intro state."""
        message_needs_reply = 1 if reply_state and reply_state.needs_reply_from_staff else 0
        intro_count = intro_state.intro_requests_count if intro_state else 0

        needs_action_count = needs.needs_action_count + message_needs_reply
        if intro_state is not None and intro_state.is_pending:
            needs_action_count += 1

        return cls(
            counts=dict(needs.counts),
            needs_action_count=needs_action_count,
            needs_reply_count=needs.needs_reply_count,
            errors_count=needs.errors_count,
            queued_stale_count=needs.queued_stale_count,
            message_needs_reply_count=message_needs_reply,
            intro_requests_count=intro_count,
            top_reasons=list(needs.top_reasons),
            intro_request_provider_ids=list(intro_state.intro_request_provider_ids) if intro_state else [],
            last_intro_requested_at=intro_state.last_intro_requested_at if intro_state else None,
            last_message_at=reply_state.last_message_at if reply_state else None,
        )


@dataclass
class QuoteHealthRow:
    """One hydrated ops inbox row."""

    quote: QuoteSnapshot
    customer: CustomerInfo
    destinations: List[DestinationSnapshot]
    offers: List[OfferSnapshot]
    summary: QuoteHealthSummary

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "quote": {
                **asdict(self.quote),
                "created_at": _iso(self.quote.created_at),
            },
            "customer": asdict(self.customer),
            "destinations": [
                {
                    **asdict(d),
                    "created_at": _iso(d.created_at),
                    "last_status_at": _iso(d.last_status_at),
                    "sent_at": _iso(d.sent_at),
                    "submitted_at": _iso(d.submitted_at),
                }
                for d in self.destinations
            ],
            "offers": [
                {
                    **asdict(o),
                    "received_at": _iso(o.received_at),
                    "created_at": _iso(o.created_at),
                }
                for o in self.offers
            ],
            "summary": {
                **asdict(self.summary),
                "last_intro_requested_at": _iso(self.summary.last_intro_requested_at),
                "last_message_at": _iso(self.summary.last_message_at),
            },
        }
