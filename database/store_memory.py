"""
InMemoryContactStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlContactStore
  - Compare-and-set creation and version checks are atomic because no
    method awaits between its read and its write (single event loop)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional

from database.store_base import (
    DUE_STATUSES, BaseContactStore, ContactNotFoundError,
    ReferralCodeConflictError, VersionConflictError,
)
from models.schemas import (
    Contact, ContactStage, ConversationMessage, InteractionKind,
    InteractionRecord, LeadStatus,
)

logger = structlog.get_logger()


class InMemoryContactStore(BaseContactStore):
    """
    Full-featured in-memory store with the same interface as SqlContactStore.
    Records are kept as JSON-ready dicts so the file backend can persist them as-is.
    """

    def __init__(self):
        self._contacts: dict[str, dict] = {}                          # address → contact dict
        self._interactions: list[dict] = []                           # append-only
        self._messages: dict[str, list[dict]] = defaultdict(list)     # address → [message dicts]

        # Indexes
        self._referral_index: dict[str, str] = {}                     # referral code → address
        logger.info("inmemory_store_initialized")

    # ── Contacts ──────────────────────────────────────────

    async def get_contact(self, address: str) -> Optional[Contact]:
        data = self._contacts.get(address)
        return Contact.model_validate(data) if data else None

    async def create_contact_if_absent(self, contact: Contact) -> tuple[Contact, bool]:
        existing = self._contacts.get(contact.address)
        if existing is not None:
            return Contact.model_validate(existing), False
        self._put_contact(contact)
        logger.info("contact_created", address=contact.address)
        return contact.model_copy(deep=True), True

    async def save_contact(self, contact: Contact) -> Contact:
        stored = self._contacts.get(contact.address)
        if stored is None:
            raise ContactNotFoundError(contact.address)
        if stored["version"] != contact.version:
            raise VersionConflictError(contact.address, contact.version, stored["version"])

        code = contact.referral.code
        if code:
            owner = self._referral_index.get(code)
            if owner and owner != contact.address:
                raise ReferralCodeConflictError(code, contact.address)

        saved = contact.model_copy(update={"version": contact.version + 1}, deep=True)
        self._put_contact(saved)
        return saved

    def _put_contact(self, contact: Contact) -> None:
        self._contacts[contact.address] = contact.model_dump(mode="json")
        if contact.referral.code:
            self._referral_index[contact.referral.code] = contact.address

    async def find_due_contacts(self, now: datetime, max_follow_ups: int = 4,
                                limit: int = 500) -> list[Contact]:
        due = []
        for data in self._contacts.values():
            lc = data["lifecycle"]
            if lc["status"] not in DUE_STATUSES or lc["follow_up_count"] >= max_follow_ups:
                continue
            if not lc.get("next_follow_up_at"):
                continue
            flags = data["engagement"]
            if flags.get("registered") and flags.get("call_booked"):
                continue
            contact = Contact.model_validate(data)
            if contact.lifecycle.next_follow_up_at <= now:
                due.append(contact)
        due.sort(key=lambda c: c.lifecycle.next_follow_up_at)
        return due[:limit]

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
        contacts = [Contact.model_validate(d) for d in self._contacts.values()]
        if status:
            contacts = [c for c in contacts if c.lifecycle.status == status]
        if stage:
            contacts = [c for c in contacts if c.stage == stage]
        if city:
            contacts = [c for c in contacts if _icontains(c.profile.city, city)]
        if specialty:
            contacts = [c for c in contacts if _icontains(c.profile.specialty, specialty)]
        if query:
            contacts = [
                c for c in contacts
                if _icontains(c.profile.name, query) or query in c.address
            ]
        contacts.sort(key=lambda c: c.created_at, reverse=True)
        end = offset + limit if limit is not None else None
        return contacts[offset:end]

    # ── Interactions ──────────────────────────────────────

    async def append_interaction(self, record: InteractionRecord) -> None:
        self._interactions.append(record.model_dump(mode="json"))

    async def list_interactions(
        self,
        address: Optional[str] = None,
        since: Optional[datetime] = None,
        kind: Optional[InteractionKind] = None,
        limit: Optional[int] = None,
    ) -> list[InteractionRecord]:
        records = [InteractionRecord.model_validate(r) for r in self._interactions]
        if address:
            records = [r for r in records if r.contact_address == address]
        if since:
            records = [r for r in records if r.timestamp >= since]
        if kind:
            records = [r for r in records if r.kind == kind]
        records.sort(key=lambda r: r.timestamp)
        return records[-limit:] if limit else records

    # ── Conversation log ──────────────────────────────────

    async def add_message(self, message: ConversationMessage) -> None:
        self._messages[message.contact_address].append(message.model_dump(mode="json"))

    async def get_messages(self, address: str, limit: int = 50) -> list[ConversationMessage]:
        msgs = self._messages.get(address, [])
        # Return last N messages in chronological order
        return [ConversationMessage.model_validate(m) for m in msgs[-limit:]]

    async def list_conversations(self, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        summaries = []
        for address, msgs in self._messages.items():
            if not msgs:
                continue
            summaries.append({
                "address": address,
                "message_count": len(msgs),
                "last_message_at": msgs[-1]["timestamp"],
                "last_message": msgs[-1]["content"],
            })
        summaries.sort(key=lambda s: s["last_message_at"], reverse=True)
        return summaries[offset:offset + limit]

    async def search_messages(self, query: str, limit: int = 50) -> list[ConversationMessage]:
        needle = query.lower()
        hits = [
            ConversationMessage.model_validate(m)
            for msgs in self._messages.values()
            for m in msgs
            if needle in (m.get("content") or "").lower()
        ]
        hits.sort(key=lambda m: m.timestamp, reverse=True)
        return hits[:limit]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "contacts": len(self._contacts),
            "interactions": len(self._interactions),
            "messages": sum(len(v) for v in self._messages.values()),
        }


def _icontains(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle.lower() in value.lower()
