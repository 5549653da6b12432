"""
Analytics — read-only funnel reporting over the contact store.

All figures are computed from store queries on demand; nothing here writes.
Aggregation happens in Python so every store backend answers the same way.
"""
from __future__ import annotations

import structlog
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from database.store_base import BaseContactStore
from models.schemas import Contact, InteractionKind, LeadStatus, Track, utcnow

logger = structlog.get_logger()

TOP_N = 10

# Daily activity columns → interaction kind
ACTIVITY_COLUMNS = {
    "messages": InteractionKind.MESSAGE_RECEIVED,
    "buttons": InteractionKind.BUTTON_CLICKED,
    "options": InteractionKind.OPTION_SELECTED,
    "videos": InteractionKind.VIDEO_WATCHED,
    "documents": InteractionKind.DOCUMENT_SENT,
    "calls": InteractionKind.CALL_SCHEDULED,
    "referrals": InteractionKind.REFERRAL_ISSUED,
    "follow_ups": InteractionKind.FOLLOW_UP_SENT,
}


def _percentage(count: int, total: int) -> float:
    return round(count / total * 100, 1) if total else 0.0


def _top(counter: Counter, key: str) -> list[dict[str, Any]]:
    return [{key: value, "count": n} for value, n in counter.most_common(TOP_N)]


def contact_summary(contact: Contact) -> dict[str, Any]:
    """Compact listing row for a contact."""
    lc = contact.lifecycle
    return {
        "address": contact.address,
        "name": contact.profile.name,
        "city": contact.profile.city,
        "specialty": contact.profile.specialty,
        "stage": contact.stage.value,
        "selected_track": contact.selected_track.value if contact.selected_track else None,
        "status": lc.status.value,
        "follow_up_count": lc.follow_up_count,
        "created_at": contact.created_at.isoformat(),
        "last_interaction_at": lc.last_interaction_at.isoformat() if lc.last_interaction_at else None,
    }


class AnalyticsService:
    """Dashboard, funnel and activity queries."""

    def __init__(self, store: BaseContactStore, clock: Callable[[], datetime] = None):
        self.store = store
        self.clock = clock or utcnow

    async def dashboard(self) -> dict[str, Any]:
        contacts = await self.store.list_contacts()
        by_status = Counter(c.lifecycle.status.value for c in contacts)
        by_track = Counter(c.selected_track.value for c in contacts if c.selected_track)

        return {
            "total": len(contacts),
            "by_status": {s.value: by_status.get(s.value, 0) for s in LeadStatus},
            "engagement": {
                "registered": sum(c.engagement.registered for c in contacts),
                "calls_booked": sum(c.engagement.call_booked for c in contacts),
                "videos_watched": sum(c.engagement.video_watched for c in contacts),
                "documents_downloaded": sum(c.engagement.document_downloaded for c in contacts),
                "referral_links_issued": sum(c.engagement.referral_link_issued for c in contacts),
            },
            "by_track": {t.value: by_track.get(t.value, 0) for t in Track},
            "by_stage": dict(Counter(c.stage.value for c in contacts)),
            "by_city": _top(Counter(c.profile.city for c in contacts if c.profile.city), "city"),
            "by_specialty": _top(
                Counter(c.profile.specialty for c in contacts if c.profile.specialty), "specialty"
            ),
        }

    async def funnel(self) -> dict[str, Any]:
        contacts = await self.store.list_contacts()
        total = len(contacts)
        counts = [
            ("Total Contacts", total),
            ("Completed Profile", sum(c.profile.is_complete for c in contacts)),
            ("Selected Option", sum(c.selected_track is not None for c in contacts)),
            ("Engaged", sum(c.engagement.is_engaged for c in contacts)),
            ("Converted", sum(
                c.engagement.registered or c.lifecycle.status == LeadStatus.CONVERTED
                for c in contacts
            )),
        ]
        return {
            "stages": [
                {"name": name, "count": count, "percentage": _percentage(count, total)}
                for name, count in counts
            ],
        }

    async def daily_activity(self, days: int = 7) -> list[dict[str, Any]]:
        """Per-day interaction counts for the last `days` days, oldest first."""
        since = self.clock() - timedelta(days=days)
        records = await self.store.list_interactions(since=since)

        buckets: dict[str, Counter] = defaultdict(Counter)
        for record in records:
            buckets[record.timestamp.strftime("%Y-%m-%d")][record.kind] += 1

        return [
            {"date": day, **{col: counter.get(kind, 0) for col, kind in ACTIVITY_COLUMNS.items()}}
            for day, counter in sorted(buckets.items())
        ]

    async def recent_contacts(self, limit: int = 20) -> list[dict[str, Any]]:
        contacts = await self.store.list_contacts(limit=limit)
        return [contact_summary(c) for c in contacts]

    async def contact_detail(self, address: str, interaction_limit: int = 50) -> Optional[dict[str, Any]]:
        contact = await self.store.get_contact(address)
        if contact is None:
            return None
        interactions = await self.store.list_interactions(address=address, limit=interaction_limit)
        return {
            "contact": contact.model_dump(mode="json"),
            "interactions": [r.model_dump(mode="json") for r in reversed(interactions)],
        }

    async def conversation_stats(self) -> dict[str, Any]:
        summaries = await self.store.list_conversations(limit=100_000)
        day_ago = self.clock() - timedelta(hours=24)
        recent = sum(
            1 for s in summaries
            if s["last_message_at"] and datetime.fromisoformat(s["last_message_at"]) >= day_ago
        )
        total_messages = sum(s["message_count"] for s in summaries)
        top = sorted(summaries, key=lambda s: s["message_count"], reverse=True)[:5]
        return {
            "total": len(summaries),
            "recent_activity": recent,
            "total_messages": total_messages,
            "average_messages": round(total_messages / len(summaries), 1) if summaries else 0.0,
            "top_active": [
                {"address": s["address"], "message_count": s["message_count"],
                 "last_message_at": s["last_message_at"]}
                for s in top
            ],
        }
