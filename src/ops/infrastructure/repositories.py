"""
Ops Infrastructure Repositories
================================

Concrete implementations of repository interfaces using SQLAlchemy.

This layer contains the data access logic: how we read snapshots and
append events. Every read is gated on the schema capability provider and
selects only confirmed columns. Read failures degrade to empty results;
write failures raise RepositoryException for the service to report.

Repositories hold a session maker rather than a session, so the inbox can
run its batch loads concurrently, one session per query.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import Table, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.exceptions import RepositoryException, SchemaUnavailableException
from src.ops.application import (
    ISchemaCapabilityProvider,
    IQuoteRepository,
    IDestinationRepository,
    IOfferRepository,
    IMessageReplyProvider,
    ISlaSettingsRepository,
    IOpsEventRepository,
    resolve_message_reply_state,
)
from src.ops.domain import (
    QuoteSnapshot,
    CustomerInfo,
    DestinationSnapshot,
    OfferSnapshot,
    MessageReplyState,
    OpsEvent,
    coerce_datetime,
)
from src.ops.infrastructure.models import (
    QuoteModel,
    ProviderModel,
    DestinationModel,
    OfferModel,
    QuoteMessageModel,
    OpsEventModel,
    OpsSettingsModel,
)
from src.ops.infrastructure.schema import is_missing_schema_error, serialize_db_error
from src.shared.infrastructure.logging import get_logger, warn_once

logger = get_logger(__name__)


def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_ids(ids: Sequence[Any]) -> List[str]:
    seen = []
    for value in ids:
        normalized = _str(value)
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen


class _SchemaGatedRepository:
    """Shared gate and error handling for schema-tolerant reads."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        schema_provider: ISchemaCapabilityProvider
    ):
        self._session_maker = session_maker
        self._schema = schema_provider

    async def _supported(self, relation: str, columns: Sequence[str]) -> bool:
        try:
            return await self._schema.has_required_columns(relation, columns)
        except Exception as e:
            logger.warning(
                "Schema capability check failed",
                extra={"relation": relation, "error_type": type(e).__name__}
            )
            return False

    async def _supported_columns(self, relation: str, optional: Sequence[str]) -> List[str]:
        """Subset of optional columns present on the relation."""
        checks = await asyncio.gather(*[self._supported(relation, [c]) for c in optional])
        return [column for column, ok in zip(optional, checks) if ok]

    async def _fetch(self, stmt) -> List[Mapping[str, Any]]:
        async with self._session_maker() as session:
            result = await session.execute(stmt)
            return list(result.mappings().all())

    def _log_read_failure(self, relation: str, operation: str, exc: Exception) -> None:
        serialized = serialize_db_error(exc)
        if is_missing_schema_error(exc):
            warn_once(
                logger,
                f"{relation}:missing_schema",
                "Relation missing; returning empty result",
                relation=relation,
                operation=operation,
                error_code=serialized["code"],
            )
            return
        logger.warning(
            "Query failed; returning empty result",
            extra={
                "relation": relation,
                "operation": operation,
                "error_code": serialized["code"],
                "error_message": serialized["message"],
            }
        )


class SQLAlchemyQuoteRepository(_SchemaGatedRepository, IQuoteRepository):
    """Reads pages of quotes with customer contact fields."""

    RELATION = "quotes"
    REQUIRED = ["id", "created_at", "status"]
    OPTIONAL = [
        "title", "selected_offer_id", "selected_provider_id",
        "customer_name", "customer_email", "company",
    ]

    async def list_page(
        self,
        limit: int,
        offset: int,
        status: Optional[str] = None,
        selected_only: bool = False
    ) -> List[Tuple[QuoteSnapshot, CustomerInfo]]:
        if limit <= 0:
            return []
        if not await self._supported(self.RELATION, self.REQUIRED):
            return []

        optional = await self._supported_columns(self.RELATION, self.OPTIONAL)
        table: Table = QuoteModel.__table__
        columns = self.REQUIRED + optional

        stmt = select(*[table.c[name] for name in columns])
        if status:
            stmt = stmt.where(table.c.status == status)
        if selected_only:
            if "selected_offer_id" in optional:
                stmt = stmt.where(table.c.selected_offer_id.is_not(None))
            else:
                warn_once(
                    logger,
                    "quotes:selected_offer_id:filter_skipped",
                    "selected_only filter skipped; selected_offer_id column missing",
                    relation=self.RELATION,
                )
        stmt = (
            stmt.order_by(table.c.created_at.desc(), table.c.id.desc())
            .limit(limit)
            .offset(max(0, offset))
        )

        try:
            rows = await self._fetch(stmt)
        except SQLAlchemyError as e:
            self._log_read_failure(self.RELATION, "list_page", e)
            return []

        page = []
        for row in rows:
            quote_id = _str(row.get("id"))
            if not quote_id:
                continue
            quote = QuoteSnapshot(
                id=quote_id,
                created_at=coerce_datetime(row.get("created_at")),
                status=_str(row.get("status")),
                title=_str(row.get("title")),
                selected_offer_id=_str(row.get("selected_offer_id")),
                selected_provider_id=_str(row.get("selected_provider_id")),
            )
            customer = CustomerInfo(
                name=_str(row.get("customer_name")),
                email=_str(row.get("customer_email")),
                company=_str(row.get("company")),
            )
            page.append((quote, customer))
        return page


class SQLAlchemyDestinationRepository(_SchemaGatedRepository, IDestinationRepository):
    """
    Reads destinations with provider sub-fields.

    The providers join is optional: if the relation is missing or the
    joined query fails, destinations are re-read without it.
    """

    RELATION = "rfq_destinations"
    REQUIRED = ["id", "rfq_id", "provider_id", "status", "created_at"]
    OPTIONAL = ["last_status_at", "sent_at", "submitted_at", "error_message"]
    PROVIDER_RELATION = "providers"
    PROVIDER_OPTIONAL = ["name", "provider_type", "quoting_mode"]

    async def list_for_quotes(self, quote_ids: Sequence[str]) -> List[DestinationSnapshot]:
        ids = _normalize_ids(quote_ids)
        if not ids:
            return []
        if not await self._supported(self.RELATION, self.REQUIRED):
            return []

        optional, provider_columns = await asyncio.gather(
            self._supported_columns(self.RELATION, self.OPTIONAL),
            self._provider_columns(),
        )

        table: Table = DestinationModel.__table__
        base_columns = [table.c[name] for name in self.REQUIRED + optional]

        rows = None
        if provider_columns:
            providers: Table = ProviderModel.__table__
            stmt = (
                select(*base_columns, *[
                    providers.c[name].label(f"provider_{name}") for name in provider_columns
                ])
                .select_from(table.outerjoin(providers, providers.c.id == table.c.provider_id))
                .where(table.c.rfq_id.in_(ids))
                .order_by(table.c.created_at.asc(), table.c.id.asc())
            )
            try:
                rows = await self._fetch(stmt)
            except SQLAlchemyError as e:
                self._log_read_failure(self.PROVIDER_RELATION, "destinations_with_providers", e)
                rows = None

        if rows is None:
            stmt = (
                select(*base_columns)
                .where(table.c.rfq_id.in_(ids))
                .order_by(table.c.created_at.asc(), table.c.id.asc())
            )
            try:
                rows = await self._fetch(stmt)
            except SQLAlchemyError as e:
                self._log_read_failure(self.RELATION, "list_for_quotes", e)
                return []

        destinations = []
        for row in rows:
            destination_id = _str(row.get("id"))
            quote_id = _str(row.get("rfq_id"))
            provider_id = _str(row.get("provider_id"))
            if not destination_id or not quote_id or not provider_id:
                continue
            destinations.append(
                DestinationSnapshot(
                    id=destination_id,
                    quote_id=quote_id,
                    provider_id=provider_id,
                    status=_str(row.get("status")),
                    created_at=coerce_datetime(row.get("created_at")),
                    last_status_at=coerce_datetime(row.get("last_status_at")),
                    sent_at=coerce_datetime(row.get("sent_at")),
                    submitted_at=coerce_datetime(row.get("submitted_at")),
                    error_message=_str(row.get("error_message")),
                    provider_name=_str(row.get("provider_name")),
                    provider_type=_str(row.get("provider_provider_type")),
                    quoting_mode=_str(row.get("provider_quoting_mode")),
                )
            )
        return destinations

    async def _provider_columns(self) -> List[str]:
        if not await self._supported(self.PROVIDER_RELATION, ["id"]):
            return []
        return await self._supported_columns(self.PROVIDER_RELATION, self.PROVIDER_OPTIONAL)


class SQLAlchemyOfferRepository(_SchemaGatedRepository, IOfferRepository):
    """Reads offers; only presence per provider matters to the inbox."""

    RELATION = "rfq_offers"
    REQUIRED = ["rfq_id", "provider_id"]
    OPTIONAL = ["id", "status", "received_at", "created_at"]

    async def list_for_quotes(self, quote_ids: Sequence[str]) -> List[OfferSnapshot]:
        ids = _normalize_ids(quote_ids)
        if not ids:
            return []
        if not await self._supported(self.RELATION, self.REQUIRED):
            return []

        optional = await self._supported_columns(self.RELATION, self.OPTIONAL)
        table: Table = OfferModel.__table__
        stmt = (
            select(*[table.c[name] for name in self.REQUIRED + optional])
            .where(table.c.rfq_id.in_(ids))
        )

        try:
            rows = await self._fetch(stmt)
        except SQLAlchemyError as e:
            self._log_read_failure(self.RELATION, "list_for_quotes", e)
            return []

        offers = []
        for row in rows:
            quote_id = _str(row.get("rfq_id"))
            provider_id = _str(row.get("provider_id"))
            if not quote_id or not provider_id:
                continue
            offers.append(
                OfferSnapshot(
                    quote_id=quote_id,
                    provider_id=provider_id,
                    id=_str(row.get("id")),
                    status=_str(row.get("status")),
                    received_at=coerce_datetime(row.get("received_at")),
                    created_at=coerce_datetime(row.get("created_at")),
                )
            )
        return offers


class SQLAlchemyMessageReplyProvider(_SchemaGatedRepository, IMessageReplyProvider):
    """Rolls up the latest message per sender role for each quote."""

    RELATION = "quote_messages"
    REQUIRED = ["quote_id", "sender_role", "created_at"]

    async def load_reply_states(self, quote_ids: Sequence[str]) -> Dict[str, MessageReplyState]:
        ids = _normalize_ids(quote_ids)
        if not ids:
            return {}
        if not await self._supported(self.RELATION, self.REQUIRED):
            return {}

        table: Table = QuoteMessageModel.__table__
        stmt = (
            select(
                table.c.quote_id,
                table.c.sender_role,
                func.max(table.c.created_at).label("last_at"),
            )
            .where(table.c.quote_id.in_(ids))
            .group_by(table.c.quote_id, table.c.sender_role)
        )

        try:
            rows = await self._fetch(stmt)
        except SQLAlchemyError as e:
            self._log_read_failure(self.RELATION, "load_reply_states", e)
            return {}

        latest: Dict[str, Dict[str, Optional[datetime]]] = {}
        for row in rows:
            quote_id = _str(row.get("quote_id"))
            role = (_str(row.get("sender_role")) or "").lower()
            at = coerce_datetime(row.get("last_at"))
            if not quote_id or not role or at is None:
                continue
            by_role = latest.setdefault(quote_id, {})
            previous = by_role.get(role)
            if previous is None or at > previous:
                by_role[role] = at

        return {
            quote_id: resolve_message_reply_state(quote_id, by_role)
            for quote_id, by_role in latest.items()
        }


class SQLAlchemyOpsEventRepository(_SchemaGatedRepository, IOpsEventRepository):
    """Append-only access to the ops event log."""

    RELATION = "ops_events"
    REQUIRED = ["id", "quote_id", "destination_id", "event_type", "payload", "created_at"]

    async def append(
        self,
        quote_id: Optional[str],
        event_type: str,
        payload: Dict[str, Any],
        destination_id: Optional[str] = None
    ) -> None:
        if not await self._supported(self.RELATION, self.REQUIRED):
            raise SchemaUnavailableException(self.RELATION, self.REQUIRED)

        model = OpsEventModel(
            quote_id=_str(quote_id),
            destination_id=_str(destination_id),
            event_type=event_type,
            payload=payload or {},
        )

        try:
            async with self._session_maker() as session:
                async with session.begin():
                    session.add(model)
        except SQLAlchemyError as e:
            if is_missing_schema_error(e):
                raise SchemaUnavailableException(self.RELATION, details=serialize_db_error(e)) from e
            raise RepositoryException(
                "Ops event insert failed",
                details={"event_type": event_type, **serialize_db_error(e)}
            ) from e

    async def list_events(
        self,
        quote_ids: Sequence[str],
        event_types: Sequence[str],
        limit: int
    ) -> List[OpsEvent]:
        ids = _normalize_ids(quote_ids)
        types = [t for t in event_types if t]
        if not ids or not types or limit <= 0:
            return []
        if not await self._supported(self.RELATION, self.REQUIRED):
            return []

        table: Table = OpsEventModel.__table__
        # Bound per quote so a busy quote cannot push others out of the window
        quote_rank = func.row_number().over(
            partition_by=table.c.quote_id,
            order_by=(table.c.created_at.desc(), table.c.id.desc()),
        ).label("quote_rank")
        ranked = (
            select(*[table.c[name] for name in self.REQUIRED], quote_rank)
            .where(table.c.quote_id.in_(ids), table.c.event_type.in_(types))
            .subquery()
        )
        stmt = (
            select(*[ranked.c[name] for name in self.REQUIRED])
            .where(ranked.c.quote_rank <= limit)
            .order_by(ranked.c.created_at.desc(), ranked.c.id.desc())
        )

        try:
            rows = await self._fetch(stmt)
        except SQLAlchemyError as e:
            self._log_read_failure(self.RELATION, "list_events", e)
            return []

        events = []
        skipped = 0
        for row in rows:
            event = OpsEvent.from_row(
                event_type=row.get("event_type"),
                payload=row.get("payload"),
                created_at=coerce_datetime(row.get("created_at")),
                quote_id=_str(row.get("quote_id")),
                destination_id=_str(row.get("destination_id")),
                id=_str(row.get("id")),
            )
            if event is None:
                skipped += 1
                continue
            events.append(event)

        if skipped:
            logger.warning(
                "Skipped ops events with invalid payloads",
                extra={"relation": self.RELATION, "skipped_count": skipped}
            )
        return events


class SQLAlchemySlaSettingsRepository(_SchemaGatedRepository, ISlaSettingsRepository):
    """Single logical settings row; the most recently updated row wins."""

    RELATION = "ops_settings"

    async def get_latest(self) -> Optional[Dict[str, Any]]:
        table: Table = OpsSettingsModel.__table__
        stmt = (
            select(table.c.id, table.c.queued_max_hours, table.c.sent_no_reply_max_hours, table.c.updated_at)
            .order_by(table.c.updated_at.desc())
            .limit(1)
        )
        try:
            rows = await self._fetch(stmt)
        except SQLAlchemyError as e:
            if is_missing_schema_error(e):
                raise SchemaUnavailableException(self.RELATION, details=serialize_db_error(e)) from e
            raise RepositoryException("SLA settings read failed", details=serialize_db_error(e)) from e
        return dict(rows[0]) if rows else None

    async def save(
        self,
        queued_max_hours: int,
        sent_no_reply_max_hours: int,
        updated_at: datetime
    ) -> Dict[str, Any]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    result = await session.execute(
                        select(OpsSettingsModel)
                        .order_by(OpsSettingsModel.updated_at.desc())
                        .limit(1)
                    )
                    model = result.scalar_one_or_none()
                    if model is None:
                        model = OpsSettingsModel()
                        session.add(model)
                    model.queued_max_hours = queued_max_hours
                    model.sent_no_reply_max_hours = sent_no_reply_max_hours
                    model.updated_at = updated_at
                    await session.flush()
                    saved = {
                        "id": model.id,
                        "queued_max_hours": model.queued_max_hours,
                        "sent_no_reply_max_hours": model.sent_no_reply_max_hours,
                        "updated_at": model.updated_at,
                    }
        except SQLAlchemyError as e:
            if is_missing_schema_error(e):
                raise SchemaUnavailableException(self.RELATION, details=serialize_db_error(e)) from e
            raise RepositoryException("SLA settings write failed", details=serialize_db_error(e)) from e
        return saved
