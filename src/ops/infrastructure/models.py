"""
Ops Infrastructure Models
==========================

SQLAlchemy ORM models for the relations read by the ops inbox.

Quotes, providers, destinations, offers and messages are owned by other
services; these mappings only describe the columns this service reads.
Optional columns are nullable because older deployments may lack them,
and repositories never select a column the schema gate has not confirmed.
"""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class QuoteModel(Base):
    """Maps to the 'quotes' table."""
    __tablename__ = "quotes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    title: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    selected_offer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    selected_provider_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Customer contact
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    company: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class ProviderModel(Base):
    """Maps to the 'providers' table."""
    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    provider_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    quoting_mode: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)


class DestinationModel(Base):
    """
    Maps to the 'rfq_destinations' table.

    `rfq_id` is the quote id.
    """
    __tablename__ = "rfq_destinations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    rfq_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # Lifecycle timestamps
    last_status_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class OfferModel(Base):
    """Maps to the 'rfq_offers' table."""
    __tablename__ = "rfq_offers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    rfq_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, default=_utcnow)


class QuoteMessageModel(Base):
    """Maps to the 'quote_messages' table."""
    __tablename__ = "quote_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    quote_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sender_role: Mapped[str] = mapped_column(String(50), nullable=False)
    body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class OpsEventModel(Base):
    """
    Maps to the append-only 'ops_events' table.

    Rows are never updated or deleted.
    """
    __tablename__ = "ops_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    quote_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    destination_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class OpsSettingsModel(Base):
    """Maps to the 'ops_settings' table (one logical row)."""
    __tablename__ = "ops_settings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    queued_max_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sent_no_reply_max_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
