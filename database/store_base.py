"""
Abstract Contact Store — Interface for all storage backends.

Implementations:
  - SqlContactStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryContactStore (dict-based, single-process, no persistence)
  - FileContactStore     (JSON files on disk, single-process, durable)

Contract highlights:
  - create_contact_if_absent() is a compare-and-set on the address; the
    loser of a race gets the winner's record back with created=False.
  - save_contact() is optimistic: the caller's `version` must match the
    stored one, and the returned copy carries the bumped version.
  - referral codes are unique across contacts; save_contact() raises
    ReferralCodeConflictError instead of silently overwriting.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Contact, ContactStage, ConversationMessage, InteractionKind,
    InteractionRecord, LeadStatus,
)

DUE_STATUSES = (LeadStatus.ACTIVE.value, LeadStatus.WARM_LEAD.value)


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class StoreError(Exception):
    """Base exception for persistence failures."""


class ContactNotFoundError(StoreError):
    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Contact {address} not found")


class VersionConflictError(StoreError):
    """The stored contact changed since the caller read it."""

    def __init__(self, address: str, expected: int, actual: Optional[int] = None):
        self.address = address
        self.expected = expected
        self.actual = actual
        super().__init__(f"Version conflict for {address}: expected {expected}, found {actual}")


class ReferralCodeConflictError(StoreError):
    """The referral code is already held by another contact."""

    def __init__(self, code: str, address: str):
        self.code = code
        self.address = address
        super().__init__(f"Referral code {code} already taken (requested by {address})")


# ──────────────────────────────────────────────────────────────
#  Interface
# ──────────────────────────────────────────────────────────────

class BaseContactStore(ABC):
    """Interface that all contact store backends must implement."""

    async def initialize(self) -> None:
        """Prepare the backend (create tables, open files). Default: nothing to do."""

    async def close(self) -> None:
        """Release backend resources. Default: nothing to do."""

    # ── Contacts ──────────────────────────────────────────────

    @abstractmethod
    async def get_contact(self, address: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def create_contact_if_absent(self, contact: Contact) -> tuple[Contact, bool]:
        """Insert `contact` unless its address exists. Returns (stored contact, created)."""
        ...

    @abstractmethod
    async def save_contact(self, contact: Contact) -> Contact:
        """Persist `contact` if its version matches. Returns the stored copy (version + 1)."""
        ...

    @abstractmethod
    async def find_due_contacts(self, now: datetime, max_follow_ups: int = 4,
                                limit: int = 500) -> list[Contact]:
        """Contacts in active/warm_lead, due by `now`, under the cap and not both registered and booked."""
        ...

    @abstractmethod
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
        """Newest first. `query` matches name or address, case-insensitive."""
        ...

    async def search_contacts(self, query: str, limit: int = 50) -> list[Contact]:
        return await self.list_contacts(query=query, limit=limit)

    # ── Interactions (append-only) ────────────────────────────

    @abstractmethod
    async def append_interaction(self, record: InteractionRecord) -> None:
        ...

    @abstractmethod
    async def list_interactions(
        self,
        address: Optional[str] = None,
        since: Optional[datetime] = None,
        kind: Optional[InteractionKind] = None,
        limit: Optional[int] = None,
    ) -> list[InteractionRecord]:
        """Chronological; with `limit`, the most recent `limit` records."""
        ...

    # ── Conversation log ──────────────────────────────────────

    @abstractmethod
    async def add_message(self, message: ConversationMessage) -> None:
        ...

    @abstractmethod
    async def get_messages(self, address: str, limit: int = 50) -> list[ConversationMessage]:
        """Chronological, most recent `limit` messages."""
        ...

    @abstractmethod
    async def list_conversations(self, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        """Per-contact summaries, most recently active first."""
        ...

    @abstractmethod
    async def search_messages(self, query: str, limit: int = 50) -> list[ConversationMessage]:
        ...
