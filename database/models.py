"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Contacts are keyed by their channel address; the primary key doubles as
    the create-if-absent guard.
  - referral_code is UNIQUE (NULLs allowed) so collisions surface as
    integrity errors even under concurrent writers.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Float, Index, Integer, JSON, String, Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Contacts
# ──────────────────────────────────────────────────────────────

class ContactRow(Base):
    __tablename__ = "contacts"

    address: Mapped[str] = mapped_column(String(32), primary_key=True)
    stage: Mapped[str] = mapped_column(String(32), default="initial")

    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    specialty: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    selected_track: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    video_watched: Mapped[bool] = mapped_column(Boolean, default=False)
    document_downloaded: Mapped[bool] = mapped_column(Boolean, default=False)
    call_booked: Mapped[bool] = mapped_column(Boolean, default=False)
    registered: Mapped[bool] = mapped_column(Boolean, default=False)
    referral_link_issued: Mapped[bool] = mapped_column(Boolean, default=False)

    referral_code: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    referral_link: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    referred_by: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    referral_earnings: Mapped[float] = mapped_column(Float, default=0.0)

    status: Mapped[str] = mapped_column(String(32), default="active")
    last_interaction_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    follow_up_count: Mapped[int] = mapped_column(Integer, default=0)
    next_follow_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    follow_up_history: Mapped[Any] = mapped_column(JSON, default=list)

    source: Mapped[str] = mapped_column(String(64), default="whatsapp_leaflet")
    tags: Mapped[Any] = mapped_column(JSON, default=list)
    notes: Mapped[str] = mapped_column(Text, default="")
    recent_message_ids: Mapped[Any] = mapped_column(JSON, default=list)

    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_contacts_status", "status"),
        Index("ix_contacts_next_follow_up", "next_follow_up_at"),
        Index("ix_contacts_city", "city"),
    )


# ──────────────────────────────────────────────────────────────
#  Interactions (append-only)
# ──────────────────────────────────────────────────────────────

class InteractionRow(Base):
    __tablename__ = "interactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    contact_address: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    details: Mapped[Any] = mapped_column(JSON, default=dict)

    __table_args__ = (
        Index("ix_interactions_contact", "contact_address"),
        Index("ix_interactions_timestamp", "timestamp"),
        Index("ix_interactions_kind", "kind"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversation log
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    contact_address: Mapped[str] = mapped_column(String(32), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    message_type: Mapped[str] = mapped_column(String(32), default="text")
    message_id: Mapped[str] = mapped_column(String(128), default="")
    status: Mapped[str] = mapped_column(String(32), default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messages_contact", "contact_address"),
        Index("ix_messages_timestamp", "timestamp"),
    )
