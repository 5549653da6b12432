"""
SqlContactStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Concurrency guarantees come from the database itself:
  - create-if-absent relies on the address primary key
  - saves are `UPDATE ... WHERE address = ? AND version = ?`
  - referral codes are protected by a UNIQUE constraint
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, func, not_, or_, select, update
from sqlalchemy.exc import IntegrityError

from database.models import ContactRow, InteractionRow, MessageRow
from database.session import as_utc, get_session, init_db
from database.store_base import (
    DUE_STATUSES, BaseContactStore, ContactNotFoundError,
    ReferralCodeConflictError, VersionConflictError,
)
from models.schemas import (
    Contact, ContactStage, ConversationMessage, InteractionKind,
    InteractionRecord, LeadStatus,
)

logger = structlog.get_logger()


class SqlContactStore(BaseContactStore):
    """
    Persistent contact store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    async def initialize(self) -> None:
        await init_db()

    # ── Contact operations ─────────────────────────────────

    async def get_contact(self, address: str) -> Optional[Contact]:
        async with get_session() as db:
            row = await db.get(ContactRow, address)
            return self._row_to_contact(row) if row else None

    async def create_contact_if_absent(self, contact: Contact) -> tuple[Contact, bool]:
        try:
            async with get_session() as db:
                db.add(ContactRow(**self._contact_to_values(contact)))
        except IntegrityError:
            existing = await self.get_contact(contact.address)
            if existing is None:
                raise
            return existing, False
        logger.info("contact_created", address=contact.address)
        return contact.model_copy(deep=True), True

    async def save_contact(self, contact: Contact) -> Contact:
        saved = contact.model_copy(update={"version": contact.version + 1}, deep=True)
        values = self._contact_to_values(saved)
        values.pop("address")
        code = contact.referral.code

        try:
            async with get_session() as db:
                if code:
                    owner = await db.scalar(
                        select(ContactRow.address).where(
                            ContactRow.referral_code == code,
                            ContactRow.address != contact.address,
                        )
                    )
                    if owner:
                        raise ReferralCodeConflictError(code, contact.address)

                result = await db.execute(
                    update(ContactRow)
                    .where(
                        ContactRow.address == contact.address,
                        ContactRow.version == contact.version,
                    )
                    .values(**values)
                )
                if result.rowcount == 0:
                    actual = await db.scalar(
                        select(ContactRow.version).where(ContactRow.address == contact.address)
                    )
                    if actual is None:
                        raise ContactNotFoundError(contact.address)
                    raise VersionConflictError(contact.address, contact.version, actual)
        except IntegrityError as e:
            # Lost a race on the UNIQUE referral_code index
            raise ReferralCodeConflictError(code or "", contact.address) from e
        return saved

    async def find_due_contacts(self, now: datetime, max_follow_ups: int = 4,
                                limit: int = 500) -> list[Contact]:
        async with get_session() as db:
            stmt = (
                select(ContactRow)
                .where(
                    ContactRow.status.in_(DUE_STATUSES),
                    ContactRow.next_follow_up_at.is_not(None),
                    ContactRow.next_follow_up_at <= as_utc(now),
                    ContactRow.follow_up_count < max_follow_ups,
                    not_(and_(ContactRow.registered.is_(True), ContactRow.call_booked.is_(True))),
                )
                .order_by(ContactRow.next_follow_up_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_contact(r) for r in result.scalars().all()]

    async def list_contacts(
        self,
        status: Optional[LeadStatus] = None,
        stage: Optional[ContactStage] = None,
        city: Optional[str] = None,
        specialty: Optional[str] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Contact]:
        stmt = select(ContactRow)
        if status:
            stmt = stmt.where(ContactRow.status == LeadStatus(status).value)
        if stage:
            stmt = stmt.where(ContactRow.stage == ContactStage(stage).value)
        if city:
            stmt = stmt.where(ContactRow.city.ilike(f"%{city}%"))
        if specialty:
            stmt = stmt.where(ContactRow.specialty.ilike(f"%{specialty}%"))
        if query:
            stmt = stmt.where(or_(
                ContactRow.name.ilike(f"%{query}%"),
                ContactRow.address.contains(query),
            ))
        stmt = stmt.order_by(ContactRow.created_at.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with get_session() as db:
            result = await db.execute(stmt)
            return [self._row_to_contact(r) for r in result.scalars().all()]

    # ── Interactions ───────────────────────────────────────

    async def append_interaction(self, record: InteractionRecord) -> None:
        data = record.model_dump(mode="json")
        async with get_session() as db:
            db.add(InteractionRow(
                id=record.id,
                contact_address=record.contact_address,
                kind=record.kind.value,
                timestamp=as_utc(record.timestamp),
                details=data["details"],
            ))

    async def list_interactions(
        self,
        address: Optional[str] = None,
        since: Optional[datetime] = None,
        kind: Optional[InteractionKind] = None,
        limit: Optional[int] = None,
    ) -> list[InteractionRecord]:
        stmt = select(InteractionRow)
        if address:
            stmt = stmt.where(InteractionRow.contact_address == address)
        if since:
            stmt = stmt.where(InteractionRow.timestamp >= as_utc(since))
        if kind:
            stmt = stmt.where(InteractionRow.kind == InteractionKind(kind).value)
        if limit:
            stmt = stmt.order_by(InteractionRow.timestamp.desc()).limit(limit)
        else:
            stmt = stmt.order_by(InteractionRow.timestamp)
        async with get_session() as db:
            result = await db.execute(stmt)
            rows = list(result.scalars().all())
        if limit:
            rows.reverse()
        return [
            InteractionRecord(
                id=r.id, contact_address=r.contact_address, kind=InteractionKind(r.kind),
                timestamp=as_utc(r.timestamp), details=r.details or {},
            )
            for r in rows
        ]

    # ── Conversation log ───────────────────────────────────

    async def add_message(self, message: ConversationMessage) -> None:
        async with get_session() as db:
            db.add(MessageRow(
                contact_address=message.contact_address,
                direction=message.direction.value,
                content=message.content,
                message_type=message.message_type,
                message_id=message.message_id,
                status=message.status,
                timestamp=as_utc(message.timestamp),
            ))

    async def get_messages(self, address: str, limit: int = 50) -> list[ConversationMessage]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.contact_address == address)
                .order_by(MessageRow.timestamp.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            rows = result.scalars().all()
            return [self._row_to_message(r) for r in reversed(rows)]

    async def list_conversations(self, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        last_at = func.max(MessageRow.timestamp).label("last_message_at")
        stmt = (
            select(MessageRow.contact_address, func.count(MessageRow.id), last_at)
            .group_by(MessageRow.contact_address)
            .order_by(last_at.desc())
            .offset(offset)
            .limit(limit)
        )
        async with get_session() as db:
            groups = (await db.execute(stmt)).all()
            summaries = []
            for address, count, last in groups:
                latest = await db.scalar(
                    select(MessageRow.content)
                    .where(MessageRow.contact_address == address)
                    .order_by(MessageRow.timestamp.desc())
                    .limit(1)
                )
                summaries.append({
                    "address": address,
                    "message_count": count,
                    "last_message_at": as_utc(last).isoformat() if last else None,
                    "last_message": latest or "",
                })
            return summaries

    async def search_messages(self, query: str, limit: int = 50) -> list[ConversationMessage]:
        async with get_session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.content.ilike(f"%{query}%"))
                .order_by(MessageRow.timestamp.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars().all()]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _contact_to_values(contact: Contact) -> dict[str, Any]:
        lc = contact.lifecycle
        flags = contact.engagement
        return {
            "address": contact.address,
            "stage": contact.stage.value,
            "name": contact.profile.name,
            "city": contact.profile.city,
            "specialty": contact.profile.specialty,
            "selected_track": contact.selected_track.value if contact.selected_track else None,
            "video_watched": flags.video_watched,
            "document_downloaded": flags.document_downloaded,
            "call_booked": flags.call_booked,
            "registered": flags.registered,
            "referral_link_issued": flags.referral_link_issued,
            "referral_code": contact.referral.code,
            "referral_link": contact.referral.link,
            "referred_by": contact.referral.referred_by,
            "referral_earnings": contact.referral.earnings,
            "status": lc.status.value,
            "last_interaction_at": as_utc(lc.last_interaction_at),
            "follow_up_count": lc.follow_up_count,
            "next_follow_up_at": as_utc(lc.next_follow_up_at),
            "follow_up_history": [e.model_dump(mode="json") for e in lc.follow_up_history],
            "source": contact.source,
            "tags": list(contact.tags),
            "notes": contact.notes,
            "recent_message_ids": list(contact.recent_message_ids),
            "version": contact.version,
            "created_at": as_utc(contact.created_at),
            "updated_at": as_utc(contact.updated_at),
        }

    @staticmethod
    def _row_to_contact(row: ContactRow) -> Contact:
        return Contact.model_validate({
            "address": row.address,
            "stage": row.stage,
            "profile": {"name": row.name, "city": row.city, "specialty": row.specialty},
            "selected_track": row.selected_track,
            "engagement": {
                "video_watched": row.video_watched,
                "document_downloaded": row.document_downloaded,
                "call_booked": row.call_booked,
                "registered": row.registered,
                "referral_link_issued": row.referral_link_issued,
            },
            "referral": {
                "code": row.referral_code,
                "link": row.referral_link,
                "referred_by": row.referred_by,
                "earnings": row.referral_earnings or 0.0,
            },
            "lifecycle": {
                "status": row.status,
                "last_interaction_at": as_utc(row.last_interaction_at),
                "follow_up_count": row.follow_up_count,
                "next_follow_up_at": as_utc(row.next_follow_up_at),
                "follow_up_history": row.follow_up_history or [],
            },
            "source": row.source,
            "tags": row.tags or [],
            "notes": row.notes or "",
            "recent_message_ids": row.recent_message_ids or [],
            "version": row.version,
            "created_at": as_utc(row.created_at),
            "updated_at": as_utc(row.updated_at),
        })

    @staticmethod
    def _row_to_message(row: MessageRow) -> ConversationMessage:
        return ConversationMessage(
            contact_address=row.contact_address,
            direction=row.direction,
            content=row.content or "",
            message_type=row.message_type,
            message_id=row.message_id or "",
            status=row.status or "",
            timestamp=as_utc(row.timestamp),
        )
