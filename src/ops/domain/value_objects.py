"""
Ops Value Objects
==================

Immutable value objects and pure SLA calculations for the ops inbox.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

import math
from collections import Counter
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from src.config import DestinationStatus, SlaReason, VALID_DESTINATION_STATUSES, AWAITING_REPLY_STATUSES
from src.ops.domain.entities import (
    DestinationSnapshot, OfferSnapshot, DestinationVerdict, QuoteNeedsAction
)


TimestampLike = Union[datetime, str, None]

TOP_REASONS_LIMIT = 2


class SlaConfig(BaseModel):
    """
    SLA thresholds for destination staleness.

    Immutable value object; thresholds are whole hours.
    """

    model_config = ConfigDict(frozen=True)

    queued_max_hours: int = Field(default=4, ge=0)
    sent_no_reply_max_hours: int = Field(default=48, ge=0)
    error_always_needs_action: bool = Field(default=True)


DEFAULT_SLA_CONFIG = SlaConfig()


def coerce_datetime(value: TimestampLike) -> Optional[datetime]:
    """
    Normalize a timestamp to an aware UTC datetime.

    Naive datetimes are assumed to be UTC. ISO-8601 strings (including a
    trailing 'Z') are parsed. Anything unparseable becomes None.
    """
    if value is None:
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            return None

    if not isinstance(value, datetime):
        return None

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def resolve_reference_time(candidates: Iterable[TimestampLike]) -> Optional[datetime]:
    """
    Return the first usable timestamp from an ordered fallback chain.

    Args:
        candidates: Timestamps in priority order; None and unparseable
            values are skipped

    Returns:
        The first parseable timestamp as an aware datetime, or None
    """
    for candidate in candidates:
        resolved = coerce_datetime(candidate)
        if resolved is not None:
            return resolved
    return None


def round_hours(value) -> Optional[int]:
    """
    Round a threshold to whole hours, half up.

    Returns None for negative, non-finite or non-numeric values.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(math.floor(value + 0.5))


class SlaEvaluator:
    """
    Pure functions for destination SLA evaluation.

    Stateless utility class: every method is total and performs no I/O,
    so it is safe to call concurrently for any number of quotes.
    """

    @staticmethod
    def age_hours(reference: Optional[datetime], now: datetime) -> float:
        """Hours elapsed since reference, clamped at zero; 0 when unknown."""
        if reference is None:
            return 0.0
        now = coerce_datetime(now)
        elapsed = (now - reference).total_seconds() / 3600
        return max(0.0, elapsed)

    @staticmethod
    def evaluate_destination(
        destination: DestinationSnapshot,
        now: datetime,
        config: SlaConfig = DEFAULT_SLA_CONFIG,
        has_offer: bool = False
    ) -> DestinationVerdict:
        """
        Decide whether a destination needs staff attention.

        Rules are applied in priority order: error, queued, awaiting reply
        without an offer. Terminal and unknown statuses never need action.

        Args:
            destination: Destination snapshot
            now: Evaluation time
            config: SLA thresholds
            has_offer: Whether the destination's provider already sent an offer

        Returns:
            DestinationVerdict with the reason label when flagged
        """
        status = destination.normalized_status

        if status == DestinationStatus.ERROR:
            if config.error_always_needs_action:
                return DestinationVerdict(needs_action=True, reason=SlaReason.ERROR)
            return DestinationVerdict(needs_action=False, reason=None)

        if status == DestinationStatus.QUEUED:
            reference = resolve_reference_time(
                [destination.created_at, destination.last_status_at]
            )
            age = SlaEvaluator.age_hours(reference, now)
            if age > config.queued_max_hours:
                return DestinationVerdict(
                    needs_action=True, reason=SlaReason.QUEUED_STALE, age_hours=age
                )
            return DestinationVerdict(needs_action=False, reason=None, age_hours=age)

        if status in AWAITING_REPLY_STATUSES and not has_offer:
            reference = resolve_reference_time(
                [destination.sent_at, destination.last_status_at, destination.created_at]
            )
            age = SlaEvaluator.age_hours(reference, now)
            if age > config.sent_no_reply_max_hours:
                return DestinationVerdict(
                    needs_action=True, reason=SlaReason.NO_REPLY, age_hours=age
                )
            return DestinationVerdict(needs_action=False, reason=None, age_hours=age)

        # quoted, declined, replied or unrecognized
        return DestinationVerdict(needs_action=False, reason=None)

    @staticmethod
    def aggregate_quote(
        destinations: Sequence[DestinationSnapshot],
        offers: Sequence[OfferSnapshot],
        now: datetime,
        config: SlaConfig = DEFAULT_SLA_CONFIG
    ) -> QuoteNeedsAction:
        """
        Fold all destinations of one quote into an SLA rollup.

        Order-independent over both inputs.
        """
        offer_provider_ids = {o.provider_id for o in offers if o.provider_id}

        counts = {status: 0 for status in VALID_DESTINATION_STATUSES}
        reasons: List[str] = []

        for destination in destinations:
            status = destination.normalized_status
            if status in counts:
                counts[status] += 1

            verdict = SlaEvaluator.evaluate_destination(
                destination,
                now,
                config,
                has_offer=destination.provider_id in offer_provider_ids,
            )
            if verdict.needs_action and verdict.reason:
                reasons.append(verdict.reason)

        return QuoteNeedsAction(
            counts=counts,
            needs_action_count=len(reasons),
            needs_reply_count=reasons.count(SlaReason.NO_REPLY),
            errors_count=reasons.count(SlaReason.ERROR),
            queued_stale_count=reasons.count(SlaReason.QUEUED_STALE),
            top_reasons=build_top_reasons(reasons),
        )


def build_top_reasons(reasons: Iterable[str], limit: int = TOP_REASONS_LIMIT) -> List[str]:
    """
    Rank reason labels by frequency, ties broken alphabetically.

    Returns at most `limit` labels.
    """
    tally = Counter(r for r in reasons if r)
    ranked = sorted(tally.items(), key=lambda item: (-item[1], item[0]))
    return [reason for reason, _ in ranked[:limit]]
