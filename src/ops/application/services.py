"""
Ops Application Services
=========================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations

Public service entry points never raise: a missing relation, a failed
query or malformed input each degrade to a neutral result.
"""

import asyncio
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError

from src.config import (
    SenderRole,
    VALID_SENDER_ROLES,
    INBOX_DEFAULT_LIMIT,
    INBOX_MAX_LIMIT,
)
from src.ops.domain import (
    QuoteSnapshot,
    CustomerInfo,
    DestinationSnapshot,
    OfferSnapshot,
    MessageReplyState,
    QuoteHealthSummary,
    QuoteHealthRow,
    SlaConfig,
    DEFAULT_SLA_CONFIG,
    SlaEvaluator,
    coerce_datetime,
    round_hours,
)
from src.ops.application.dto import InboxFilters, SlaSettings, SaveSlaSettingsResult
from src.shared.infrastructure.logging import get_logger, log_latency, warn_once

logger = get_logger(__name__)


SETTINGS_RELATION = "ops_settings"
SETTINGS_COLUMNS = ["id", "queued_max_hours", "sent_no_reply_max_hours", "updated_at"]

# Legacy spellings of sender roles
SENDER_ROLE_ALIASES = {"provider": SenderRole.SUPPLIER}


# ========== Repository Interfaces (Dependency Inversion) ==========

class ISchemaCapabilityProvider(ABC):
    """
    Answers whether a relation exposes a set of columns.

    Implementations return False rather than raise when uncertain.
    """

    @abstractmethod
    async def has_required_columns(self, relation: str, columns: Sequence[str]) -> bool:
        """Check that the relation exists with all given columns."""


class IQuoteRepository(ABC):
    """Interface for quote page reads."""

    @abstractmethod
    async def list_page(
        self,
        limit: int,
        offset: int,
        status: Optional[str] = None,
        selected_only: bool = False
    ) -> List[Tuple[QuoteSnapshot, CustomerInfo]]:
        """List quotes newest first with customer info."""


class IDestinationRepository(ABC):
    """Interface for destination reads."""

    @abstractmethod
    async def list_for_quotes(self, quote_ids: Sequence[str]) -> List[DestinationSnapshot]:
        """List destinations (with provider fields) for the given quotes."""


class IOfferRepository(ABC):
    """Interface for offer reads."""

    @abstractmethod
    async def list_for_quotes(self, quote_ids: Sequence[str]) -> List[OfferSnapshot]:
        """List offers for the given quotes."""


class IMessageReplyProvider(ABC):
    """Interface for per-quote message thread rollups."""

    @abstractmethod
    async def load_reply_states(self, quote_ids: Sequence[str]) -> Dict[str, MessageReplyState]:
        """Map quote id to its reply state; quotes without messages may be absent."""


class ISlaSettingsRepository(ABC):
    """Interface for the SLA settings row."""

    @abstractmethod
    async def get_latest(self) -> Optional[Dict[str, Any]]:
        """Return the most recently updated settings row, or None."""

    @abstractmethod
    async def save(
        self,
        queued_max_hours: int,
        sent_no_reply_max_hours: int,
        updated_at: datetime
    ) -> Dict[str, Any]:
        """Update the latest row, or insert one when none exists."""


# ========== Message reply rollup ==========

def resolve_message_reply_state(
    quote_id: str,
    latest_by_role: Mapping[str, Optional[datetime]]
) -> MessageReplyState:
    """
    Derive reply state from the latest message time per sender role.

    Staff owe a reply when the newest customer or supplier message has no
    admin message after it. An admin message at the same instant counts as
    a reply.
    """
    latest_admin: Optional[datetime] = None
    latest_other: Optional[datetime] = None
    latest_other_role: Optional[str] = None

    for role, at in latest_by_role.items():
        at = coerce_datetime(at)
        if at is None:
            continue
        normalized = (role or "").strip().lower()
        normalized = SENDER_ROLE_ALIASES.get(normalized, normalized)
        if normalized not in VALID_SENDER_ROLES:
            continue

        if normalized == SenderRole.ADMIN:
            if latest_admin is None or at > latest_admin:
                latest_admin = at
        elif latest_other is None or at > latest_other:
            latest_other = at
            latest_other_role = normalized

    needs_reply = latest_other is not None and (latest_admin is None or latest_admin < latest_other)

    if latest_admin is not None and (latest_other is None or latest_admin >= latest_other):
        last_at, last_role = latest_admin, SenderRole.ADMIN
    else:
        last_at, last_role = latest_other, latest_other_role

    return MessageReplyState(
        quote_id=quote_id,
        last_message_at=last_at,
        last_message_role=last_role,
        needs_reply_from_staff=needs_reply,
    )


# ========== Application Services ==========

class SlaSettingsService:
    """
    Loads and saves the SLA thresholds.

    Loading always yields a usable config; defaults are returned with
    `using_fallback=True` when the row or relation is unavailable.
    """

    def __init__(
        self,
        settings_repository: ISlaSettingsRepository,
        schema_provider: ISchemaCapabilityProvider,
        default_config: SlaConfig = DEFAULT_SLA_CONFIG
    ):
        self._repo = settings_repository
        self._schema = schema_provider
        self._default = default_config

    def _fallback(self) -> SlaSettings:
        return SlaSettings(config=self._default, using_fallback=True)

    async def load_config(self) -> SlaSettings:
        """Load thresholds from the latest settings row."""
        try:
            supported = await self._schema.has_required_columns(SETTINGS_RELATION, SETTINGS_COLUMNS)
        except Exception as e:
            logger.warning(
                "SLA settings schema check failed; using defaults",
                extra={"relation": SETTINGS_RELATION, "error_type": type(e).__name__}
            )
            return self._fallback()

        if not supported:
            warn_once(
                logger,
                "ops_settings:missing_schema",
                "SLA settings relation unavailable; using defaults",
                relation=SETTINGS_RELATION,
            )
            return self._fallback()

        try:
            row = await self._repo.get_latest()
        except Exception as e:
            logger.warning(
                "SLA settings read failed; using defaults",
                extra={
                    "relation": SETTINGS_RELATION,
                    "operation": "select",
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            return self._fallback()

        if not row:
            return self._fallback()

        queued = round_hours(row.get("queued_max_hours"))
        no_reply = round_hours(row.get("sent_no_reply_max_hours"))

        config = SlaConfig(
            queued_max_hours=queued if queued is not None else self._default.queued_max_hours,
            sent_no_reply_max_hours=no_reply if no_reply is not None else self._default.sent_no_reply_max_hours,
            error_always_needs_action=self._default.error_always_needs_action,
        )

        row_id = row.get("id")
        return SlaSettings(
            config=config,
            row_id=str(row_id) if row_id is not None else None,
            updated_at=coerce_datetime(row.get("updated_at")),
            using_fallback=False,
        )

    async def save_config(
        self,
        queued_max_hours: Any,
        sent_no_reply_max_hours: Any
    ) -> SaveSlaSettingsResult:
        """
        Save thresholds rounded half-up to whole hours.

        Failure is reported in the result, never raised.
        """
        queued = round_hours(queued_max_hours)
        no_reply = round_hours(sent_no_reply_max_hours)
        if queued is None or no_reply is None:
            return SaveSlaSettingsResult(ok=False, error="invalid_hours")

        try:
            supported = await self._schema.has_required_columns(SETTINGS_RELATION, SETTINGS_COLUMNS)
        except Exception:
            supported = False
        if not supported:
            warn_once(
                logger,
                "ops_settings:missing_schema",
                "SLA settings relation unavailable; using defaults",
                relation=SETTINGS_RELATION,
            )
            return SaveSlaSettingsResult(ok=False, error="missing_schema")

        try:
            await self._repo.save(queued, no_reply, datetime.now(timezone.utc))
        except Exception as e:
            logger.warning(
                "SLA settings write failed",
                extra={
                    "relation": SETTINGS_RELATION,
                    "operation": "upsert",
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            return SaveSlaSettingsResult(ok=False, error="write_failed")

        logger.info(
            "SLA settings saved",
            extra={"queued_max_hours": queued, "sent_no_reply_max_hours": no_reply}
        )
        return SaveSlaSettingsResult(
            ok=True,
            config=SlaConfig(
                queued_max_hours=queued,
                sent_no_reply_max_hours=no_reply,
                error_always_needs_action=self._default.error_always_needs_action,
            ),
        )


def _whole_number(value: Any) -> Optional[int]:
    """Floor finite numbers; None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return math.floor(value)
    return None


def _normalize_limit(limit: Any) -> int:
    value = _whole_number(limit)
    if value is None:
        return INBOX_DEFAULT_LIMIT
    return min(value, INBOX_MAX_LIMIT)


def _normalize_offset(offset: Any) -> int:
    value = _whole_number(offset)
    if value is None:
        return 0
    return max(0, value)


class OpsInboxService:
    """
    Builds the ops inbox: one health row per quote, newest first.

    Read-only. Destinations, offers, message rollups, intro state and the
    SLA config are loaded concurrently for the page of quotes; each load
    degrades to empty on its own.
    """

    def __init__(
        self,
        quote_repository: IQuoteRepository,
        destination_repository: IDestinationRepository,
        offer_repository: IOfferRepository,
        message_reply_provider: IMessageReplyProvider,
        ledger_service,
        settings_service: SlaSettingsService
    ):
        self._quotes = quote_repository
        self._destinations = destination_repository
        self._offers = offer_repository
        self._replies = message_reply_provider
        self._ledger = ledger_service
        self._settings = settings_service

    async def build(
        self,
        limit: Any = INBOX_DEFAULT_LIMIT,
        offset: Any = 0,
        filters: Optional[Any] = None,
        sla_config: Optional[SlaConfig] = None,
        now: Optional[datetime] = None
    ) -> List[QuoteHealthRow]:
        """
        Build inbox rows for one page of quotes.

        Args:
            limit: Page size (default 50, capped at 200; non-positive yields [])
            offset: Page offset (floored at 0)
            filters: InboxFilters or a mapping of filter fields
            sla_config: Thresholds; loaded from settings when omitted
            now: Evaluation time; defaults to the current UTC time

        Returns:
            Filtered rows in quote order
        """
        normalized_limit = _normalize_limit(limit)
        if normalized_limit <= 0:
            return []

        try:
            inbox_filters = self._coerce_filters(filters)
        except ValidationError:
            return []

        try:
            with log_latency(logger, "ops_inbox_build", limit=normalized_limit):
                return await self._build(
                    normalized_limit,
                    _normalize_offset(offset),
                    inbox_filters,
                    sla_config,
                    coerce_datetime(now) or datetime.now(timezone.utc),
                )
        except Exception as e:
            logger.error(
                "Ops inbox build failed",
                extra={"error_type": type(e).__name__, "error_message": str(e)},
                exc_info=True
            )
            return []

    @staticmethod
    def _coerce_filters(filters: Optional[Any]) -> InboxFilters:
        if filters is None:
            return InboxFilters()
        if isinstance(filters, InboxFilters):
            return filters
        return InboxFilters.model_validate(filters)

    async def _build(
        self,
        limit: int,
        offset: int,
        filters: InboxFilters,
        sla_config: Optional[SlaConfig],
        now: datetime
    ) -> List[QuoteHealthRow]:
        quotes = await self._safe_load(
            "quotes",
            self._quotes.list_page(
                limit=limit,
                offset=offset,
                status=filters.status,
                selected_only=filters.selected_only,
            ),
            [],
        )
        if not quotes:
            return []

        quote_ids = [quote.id for quote, _ in quotes]

        destinations, offers, reply_states, intro_states, config = await asyncio.gather(
            self._safe_load("destinations", self._destinations.list_for_quotes(quote_ids), []),
            self._safe_load("offers", self._offers.list_for_quotes(quote_ids), []),
            self._safe_load("message_replies", self._replies.load_reply_states(quote_ids), {}),
            self._safe_load("intro_requests", self._ledger.load_intro_request_states(quote_ids), {}),
            self._resolve_config(sla_config),
        )

        destinations_by_quote: Dict[str, List[DestinationSnapshot]] = {qid: [] for qid in quote_ids}
        for destination in destinations:
            destinations_by_quote.setdefault(destination.quote_id, []).append(destination)

        offers_by_quote: Dict[str, List[OfferSnapshot]] = {qid: [] for qid in quote_ids}
        for offer in offers:
            offers_by_quote.setdefault(offer.quote_id, []).append(offer)

        rows: List[QuoteHealthRow] = []
        for quote, customer in quotes:
            quote_destinations = destinations_by_quote.get(quote.id, [])
            quote_offers = offers_by_quote.get(quote.id, [])

            needs = SlaEvaluator.aggregate_quote(quote_destinations, quote_offers, now, config)
            summary = QuoteHealthSummary.from_rollups(
                needs,
                reply_states.get(quote.id),
                intro_states.get(quote.id),
            )
            row = QuoteHealthRow(
                quote=quote,
                customer=customer,
                destinations=quote_destinations,
                offers=quote_offers,
                summary=summary,
            )
            if self._matches(row, filters):
                rows.append(row)

        return rows

    async def _resolve_config(self, sla_config: Optional[SlaConfig]) -> SlaConfig:
        if sla_config is not None:
            return sla_config
        loaded = await self._settings.load_config()
        return loaded.config

    @staticmethod
    async def _safe_load(name: str, awaitable: Awaitable, default: Any) -> Any:
        try:
            return await awaitable
        except Exception as e:
            logger.warning(
                "Ops inbox sub-query failed; continuing with empty result",
                extra={
                    "operation": name,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            return default

    @staticmethod
    def _matches(row: QuoteHealthRow, filters: InboxFilters) -> bool:
        """Apply filters that need the hydrated row."""
        summary = row.summary

        if filters.provider_id and not any(
            d.provider_id == filters.provider_id for d in row.destinations
        ):
            return False

        if filters.destination_status and not any(
            d.normalized_status == filters.destination_status for d in row.destinations
        ):
            return False

        if filters.needs_action_only and summary.needs_action_count <= 0:
            return False

        if filters.message_needs_reply_only and summary.message_needs_reply_count <= 0:
            return False

        if filters.intro_requested_only and summary.intro_requests_count <= 0:
            return False

        return True


__all__ = [
    "ISchemaCapabilityProvider",
    "IQuoteRepository",
    "IDestinationRepository",
    "IOfferRepository",
    "IMessageReplyProvider",
    "ISlaSettingsRepository",
    "SlaSettingsService",
    "OpsInboxService",
    "resolve_message_reply_state",
]
