"""
Follow-up Scheduler — drip re-engagement rules for silent contacts.

Cadence (defaults): first follow-up 24h after signup (set when the contact
is created), then every 2 days, at most 4 messages. After the 4th the contact
is marked non_responsive and nothing more is scheduled.

    day 1 → reminder
    day 3 → success story
    day 5 → benefits recap, limited slots
    day 7 → final notice with booking link

Everything here is pure; the ticker in core/ticker.py does the I/O.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Iterable, Optional

from config.settings import FollowUpConfig
from context.catalog import FOLLOW_UP_KEYS, ContentCatalog
from models.schemas import Contact, FollowUpEntry, LeadStatus, SendText

logger = structlog.get_logger()

ELIGIBLE_STATUSES = (LeadStatus.ACTIVE, LeadStatus.WARM_LEAD)


# ──────────────────────────────────────────────────────────────
#  Follow-up Action
# ──────────────────────────────────────────────────────────────

class FollowUpAction:
    """What one tick decided for one contact."""

    def __init__(
        self,
        contact: Contact,
        message: SendText,
        sequence: int,
        next_follow_up_at: Optional[datetime],
        status: LeadStatus,
    ):
        self.contact = contact              # updated snapshot, ready to persist
        self.message = message
        self.sequence = sequence            # == new follow_up_count
        self.next_follow_up_at = next_follow_up_at
        self.status = status

    @property
    def address(self) -> str:
        return self.contact.address

    @property
    def is_final(self) -> bool:
        return self.next_follow_up_at is None

    def __repr__(self):
        return (f"<FollowUp #{self.sequence} → {self.address} "
                f"next={self.next_follow_up_at.isoformat() if self.next_follow_up_at else None}>")


# ──────────────────────────────────────────────────────────────
#  Scheduler
# ──────────────────────────────────────────────────────────────

class FollowUpScheduler:
    """Eligibility, message selection and cadence for the drip sequence."""

    def __init__(self, catalog: ContentCatalog = None, config: FollowUpConfig = None):
        self.catalog = catalog or ContentCatalog()
        self.config = config or FollowUpConfig()

    @property
    def max_follow_ups(self) -> int:
        return self.config.max_follow_ups

    def ineligibility_reason(self, contact: Contact, now: datetime,
                             ignore_schedule: bool = False) -> Optional[str]:
        """
        Why `contact` must not get a follow-up now, or None when it may.

        Eligible means due, still in the funnel, under the cap, and not both
        registered and booked. Either flag alone does not exempt a contact.
        `ignore_schedule` skips the due-time check (manual sends).
        """
        lc = contact.lifecycle
        if lc.status not in ELIGIBLE_STATUSES:
            return f"status_{lc.status.value}"
        if lc.follow_up_count >= self.max_follow_ups:
            return "cap_reached"
        if contact.engagement.registered and contact.engagement.call_booked:
            return "exempt"
        if not ignore_schedule and (lc.next_follow_up_at is None or lc.next_follow_up_at > now):
            return "not_due"
        return None

    def is_eligible(self, contact: Contact, now: datetime) -> bool:
        return self.ineligibility_reason(contact, now) is None

    def select_message(self, sequence: int, contact: Contact) -> SendText:
        """Message for follow-up number `sequence` (1-based)."""
        return self.catalog.follow_up(sequence, contact)

    def plan(self, contact: Contact, now: datetime,
             ignore_schedule: bool = False) -> Optional[FollowUpAction]:
        """Compute the next follow-up for `contact`, or None when it is not eligible."""
        if self.ineligibility_reason(contact, now, ignore_schedule) is not None:
            return None

        sequence = contact.lifecycle.follow_up_count + 1
        updated = self.record_sent(contact, sequence, now)
        lc = updated.lifecycle

        return FollowUpAction(
            contact=updated,
            message=self.select_message(sequence, contact),
            sequence=sequence,
            next_follow_up_at=lc.next_follow_up_at,
            status=lc.status,
        )

    def record_sent(self, contact: Contact, sequence: int, now: datetime) -> Contact:
        """Return a copy of `contact` with follow-up `sequence` recorded as sent at `now`."""
        updated = contact.model_copy(deep=True)
        lc = updated.lifecycle
        lc.follow_up_count = sequence
        lc.follow_up_history.append(FollowUpEntry(
            sent_at=now,
            sequence=sequence,
            message_key=FOLLOW_UP_KEYS.get(sequence, f"day_{sequence * 2 - 1}"),
        ))
        if sequence >= self.max_follow_ups:
            if lc.status in ELIGIBLE_STATUSES:
                lc.status = LeadStatus.NON_RESPONSIVE
            lc.next_follow_up_at = None
        else:
            lc.next_follow_up_at = now + timedelta(days=self.config.cadence_days)
        updated.updated_at = now
        return updated

    def tick(self, now: datetime, contacts: Iterable[Contact]) -> list[FollowUpAction]:
        """Plan follow-ups for every eligible contact in `contacts`."""
        actions = []
        for contact in contacts:
            action = self.plan(contact, now)
            if action:
                actions.append(action)
        logger.debug("followup_tick_planned", planned=len(actions))
        return actions
