"""
Tests for the Orchestrator — inbound handling, deferred commands,
follow-ups and signals against the in-memory store.
"""
import asyncio
import pytest
from datetime import timedelta

from context.referral import derive_referral_code, referral_disambiguator
from core.orchestrator import InboundStatus, Orchestrator
from database.store_base import ContactNotFoundError
from database.store_memory import InMemoryContactStore
from job_queue.message_queue import Queues
from models.schemas import (
    ContactStage, InteractionKind, LeadStatus, MessageDirection, ReferralInfo, SendText,
)

from conftest import ADDRESS, T0, RecordingChannel, make_contact


def build(store, channel, stage_machine, scheduler, queue, clock):
    return Orchestrator(store=store, channel=channel, state_machine=stage_machine,
                        scheduler=scheduler, queue=queue, clock=clock)


# ── Store doubles ─────────────────────────────────────

class HidingStore(InMemoryContactStore):
    """Pretends the contact is missing on the first read (lost create race)."""

    def __init__(self):
        super().__init__()
        self.hide_next_read = True

    async def get_contact(self, address):
        if self.hide_next_read:
            self.hide_next_read = False
            return None
        return await super().get_contact(address)


class InterferingStore(InMemoryContactStore):
    """Another writer updates the contact right before each of our saves."""

    def __init__(self, interferences: int = 1):
        super().__init__()
        self.interferences = interferences

    async def save_contact(self, contact):
        if self.interferences > 0:
            self.interferences -= 1
            current = await self.get_contact(contact.address)
            current.tags.append("edited_elsewhere")
            await super().save_contact(current)
        return await super().save_contact(contact)


class BrokenStore(InMemoryContactStore):
    async def get_contact(self, address):
        raise RuntimeError("database unavailable")


# ══════════════════════════════════════════════════════════════
#  INBOUND
# ══════════════════════════════════════════════════════════════

class TestInbound:
    @pytest.mark.asyncio
    async def test_first_message_creates_contact(self, orchestrator, store, channel, events):
        outcome = await orchestrator.handle_inbound(events.text("Hi"))
        assert outcome.status == InboundStatus.PROCESSED
        assert outcome.acknowledged
        assert outcome.from_stage == "initial"
        assert outcome.to_stage == "collecting_name"
        assert outcome.sent == 1

        contact = await store.get_contact(ADDRESS)
        assert contact.stage == ContactStage.COLLECTING_NAME
        assert contact.version == 1
        assert contact.lifecycle.next_follow_up_at == T0 + timedelta(hours=24)
        assert channel.operations() == ["mark_read", "send_text"]

    @pytest.mark.asyncio
    async def test_conversation_log_and_interactions(self, orchestrator, store, events):
        await orchestrator.handle_inbound(events.text("Hi"))
        messages = await store.get_messages(ADDRESS)
        assert [m.direction for m in messages] == [MessageDirection.INBOUND, MessageDirection.OUTBOUND]
        assert messages[0].content == "Hi"

        interactions = await store.list_interactions(address=ADDRESS)
        assert [r.kind for r in interactions] == [
            InteractionKind.MESSAGE_RECEIVED, InteractionKind.MESSAGE_SENT,
        ]
        assert interactions[1].details["status"] == "sent"

    @pytest.mark.asyncio
    async def test_onboarding_defers_menu(self, orchestrator, store, queue, events):
        for text in ("Hi", "Ali Khan", "Karachi", "Cardiologist"):
            outcome = await orchestrator.handle_inbound(events.text(text))

        assert outcome.to_stage == "menu"
        assert outcome.sent == 1
        assert outcome.deferred == 1
        assert await queue.queue_length(Queues.DELAYED) == 1
        job = (await queue.peek(Queues.DELAYED))[0]
        assert job.command_type == "send_list"
        assert job.address == ADDRESS

        contact = await store.get_contact(ADDRESS)
        assert contact.profile.is_complete
        assert contact.version == 4

    @pytest.mark.asyncio
    async def test_duplicate_delivery(self, orchestrator, store, channel, clock, events):
        event = events.text("Hi")
        await orchestrator.handle_inbound(event)
        calls_after_first = len(channel.calls)
        messages_after_first = len(await store.get_messages(ADDRESS))

        clock.advance(hours=2)
        outcome = await orchestrator.handle_inbound(event)
        assert outcome.status == InboundStatus.DUPLICATE
        assert outcome.acknowledged
        assert len(channel.calls) == calls_after_first
        assert len(await store.get_messages(ADDRESS)) == messages_after_first

        contact = await store.get_contact(ADDRESS)
        assert contact.stage == ContactStage.COLLECTING_NAME
        assert contact.lifecycle.last_interaction_at == clock.now
        received = await store.list_interactions(address=ADDRESS,
                                                 kind=InteractionKind.MESSAGE_RECEIVED)
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_malformed_payload_dropped(self, orchestrator, store):
        outcome = await orchestrator.ingest({"address": ADDRESS, "kind": "text"})
        assert outcome.status == InboundStatus.DROPPED
        assert outcome.acknowledged
        assert await store.get_contact(ADDRESS) is None

    @pytest.mark.asyncio
    async def test_ingest_valid_payload(self, orchestrator):
        outcome = await orchestrator.ingest({
            "address": ADDRESS, "message_id": "wamid.x", "kind": "text", "text": "Hello",
        })
        assert outcome.status == InboundStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_send_failure_keeps_transition(self, store, stage_machine, scheduler,
                                                 queue, clock, events):
        channel = RecordingChannel(fail_for={"send_text"})
        orchestrator = build(store, channel, stage_machine, scheduler, queue, clock)

        outcome = await orchestrator.handle_inbound(events.text("Hi"))
        assert outcome.status == InboundStatus.PROCESSED
        assert outcome.send_failures == 1
        assert (await store.get_contact(ADDRESS)).stage == ContactStage.COLLECTING_NAME

        sent = await store.list_interactions(address=ADDRESS, kind=InteractionKind.MESSAGE_SENT)
        assert sent[0].details["status"] == "failed"

    @pytest.mark.asyncio
    async def test_same_contact_events_serialized(self, orchestrator, store, events):
        first, second = events.text("Hi"), events.text("Ali Khan")
        outcomes = await asyncio.gather(
            orchestrator.handle_inbound(first),
            orchestrator.handle_inbound(second),
        )
        assert all(o.status == InboundStatus.PROCESSED for o in outcomes)
        contact = await store.get_contact(ADDRESS)
        assert contact.version == 2
        assert contact.stage == ContactStage.COLLECTING_CITY
        assert contact.profile.name == "Ali Khan"

    @pytest.mark.asyncio
    async def test_different_contacts_independent(self, orchestrator, store, events):
        await asyncio.gather(
            orchestrator.handle_inbound(events.text("Hi", address="1111")),
            orchestrator.handle_inbound(events.text("Hi", address="2222")),
        )
        assert (await store.get_contact("1111")).stage == ContactStage.COLLECTING_NAME
        assert (await store.get_contact("2222")).stage == ContactStage.COLLECTING_NAME


class TestInboundFailures:
    @pytest.mark.asyncio
    async def test_lost_create_race_uses_existing_record(self, channel, stage_machine,
                                                         scheduler, queue, clock, events):
        store = HidingStore()
        await store.create_contact_if_absent(make_contact())
        orchestrator = build(store, channel, stage_machine, scheduler, queue, clock)

        outcome = await orchestrator.handle_inbound(events.text("menu"))
        assert outcome.status == InboundStatus.PROCESSED
        assert outcome.from_stage == "menu"
        assert (await store.get_contact(ADDRESS)).profile.name == "Ali Khan"

    @pytest.mark.asyncio
    async def test_version_conflict_rereads_once(self, channel, stage_machine,
                                                 scheduler, queue, clock, events):
        store = InterferingStore(interferences=1)
        await store.create_contact_if_absent(make_contact())
        orchestrator = build(store, channel, stage_machine, scheduler, queue, clock)

        outcome = await orchestrator.handle_inbound(events.list_reply("referral"))
        assert outcome.status == InboundStatus.PROCESSED
        contact = await store.get_contact(ADDRESS)
        assert contact.stage == ContactStage.REFERRAL
        assert contact.tags == ["edited_elsewhere"]
        assert contact.version == 2

    @pytest.mark.asyncio
    async def test_repeated_conflict_fails(self, channel, stage_machine,
                                           scheduler, queue, clock, events):
        store = InterferingStore(interferences=5)
        await store.create_contact_if_absent(make_contact())
        orchestrator = build(store, channel, stage_machine, scheduler, queue, clock)

        outcome = await orchestrator.handle_inbound(events.list_reply("referral"))
        assert outcome.status == InboundStatus.FAILED
        assert not outcome.acknowledged
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_store_outage_is_unacknowledged(self, channel, stage_machine,
                                                  scheduler, queue, clock, events):
        orchestrator = build(BrokenStore(), channel, stage_machine, scheduler, queue, clock)
        outcome = await orchestrator.handle_inbound(events.text("Hi"))
        assert outcome.status == InboundStatus.UNACKNOWLEDGED
        assert not outcome.acknowledged
        assert "database unavailable" in outcome.error

    @pytest.mark.asyncio
    async def test_referral_collision_rederives(self, orchestrator, store, events):
        contact = make_contact(stage=ContactStage.REFERRAL)
        taken = derive_referral_code("Ali Khan", referral_disambiguator(contact, 0))
        holder = make_contact(address="923009999999")
        holder.referral = ReferralInfo(code=taken, link=f"https://angill.pk/join?ref={taken}")
        await store.create_contact_if_absent(holder)
        await store.create_contact_if_absent(contact)

        outcome = await orchestrator.handle_inbound(events.button("yes_referral"))
        assert outcome.status == InboundStatus.PROCESSED
        saved = await store.get_contact(ADDRESS)
        assert saved.referral.code == derive_referral_code(
            "Ali Khan", referral_disambiguator(contact, 1))
        assert saved.referral.code != taken


# ══════════════════════════════════════════════════════════════
#  DEFERRED COMMANDS
# ══════════════════════════════════════════════════════════════

class TestDeferredDispatch:
    @pytest.mark.asyncio
    async def test_dispatch_sends_and_logs(self, orchestrator, store, channel):
        await store.create_contact_if_absent(make_contact())
        result = await orchestrator.dispatch_deferred(SendText(to=ADDRESS, body="later"))
        assert result["status"] == "sent"
        assert channel.calls[-1] == ("send_text", {"to": ADDRESS, "body": "later"})
        sent = await store.list_interactions(address=ADDRESS, kind=InteractionKind.MESSAGE_SENT)
        assert sent[-1].details["deferred"] is True

    @pytest.mark.asyncio
    async def test_opted_out_contact_skipped(self, orchestrator, store, channel):
        await store.create_contact_if_absent(make_contact(status=LeadStatus.OPTED_OUT))
        result = await orchestrator.dispatch_deferred(SendText(to=ADDRESS, body="later"))
        assert result == {"status": "skipped", "reason": "opted_out"}
        assert channel.calls == []


# ══════════════════════════════════════════════════════════════
#  FOLLOW-UPS
# ══════════════════════════════════════════════════════════════

class TestFollowUp:
    @pytest.mark.asyncio
    async def test_due_follow_up_sent_and_persisted(self, orchestrator, store, channel, clock):
        await store.create_contact_if_absent(make_contact(next_follow_up_at=T0))
        result = await orchestrator.follow_up(ADDRESS)
        assert result["status"] == "sent"
        assert result["sequence"] == 1
        assert result["next_follow_up_at"] == (T0 + timedelta(days=2)).isoformat()

        contact = await store.get_contact(ADDRESS)
        assert contact.lifecycle.follow_up_count == 1
        assert "quick reminder" in channel.calls[-1][1]["body"]
        records = await store.list_interactions(address=ADDRESS, kind=InteractionKind.FOLLOW_UP_SENT)
        assert records[0].details["sequence"] == 1

    @pytest.mark.asyncio
    async def test_not_due_skipped(self, orchestrator, store, channel):
        await store.create_contact_if_absent(make_contact(next_follow_up_at=T0 + timedelta(hours=2)))
        result = await orchestrator.follow_up(ADDRESS)
        assert result["status"] == "skipped"
        assert result["reason"] == "not_due"
        assert channel.calls == []

    @pytest.mark.asyncio
    async def test_failed_send_not_persisted(self, store, stage_machine, scheduler, queue, clock):
        channel = RecordingChannel(fail_for={ADDRESS})
        orchestrator = build(store, channel, stage_machine, scheduler, queue, clock)
        await store.create_contact_if_absent(make_contact(next_follow_up_at=T0))

        result = await orchestrator.follow_up(ADDRESS)
        assert result["status"] == "failed"
        contact = await store.get_contact(ADDRESS)
        assert contact.lifecycle.follow_up_count == 0
        assert contact.lifecycle.next_follow_up_at == T0

    @pytest.mark.asyncio
    async def test_version_conflict_after_send_reapplied(self, channel, stage_machine,
                                                         scheduler, queue, clock):
        store = InterferingStore(interferences=1)
        await store.create_contact_if_absent(make_contact(next_follow_up_at=T0))
        orchestrator = build(store, channel, stage_machine, scheduler, queue, clock)

        result = await orchestrator.follow_up(ADDRESS)
        assert result["status"] == "sent"
        contact = await store.get_contact(ADDRESS)
        assert contact.tags == ["edited_elsewhere"]
        assert contact.lifecycle.follow_up_count == 1
        assert contact.lifecycle.next_follow_up_at == T0 + timedelta(days=2)
        assert [e.sequence for e in contact.lifecycle.follow_up_history] == [1]

        again = await orchestrator.follow_up(ADDRESS)
        assert again["status"] == "skipped"
        assert again["reason"] == "not_due"
        assert len([c for c in channel.calls if c[0] == "send_text"]) == 1

    @pytest.mark.asyncio
    async def test_manual_send_ignores_schedule(self, orchestrator, store):
        await store.create_contact_if_absent(make_contact(next_follow_up_at=T0 + timedelta(days=1)))
        result = await orchestrator.send_manual_follow_up(ADDRESS)
        assert result["status"] == "sent"

    @pytest.mark.asyncio
    async def test_manual_send_respects_opt_out(self, orchestrator, store):
        await store.create_contact_if_absent(make_contact(status=LeadStatus.OPTED_OUT))
        result = await orchestrator.send_manual_follow_up(ADDRESS)
        assert result["status"] == "skipped"
        assert result["reason"] == "status_opted_out"

    @pytest.mark.asyncio
    async def test_unknown_contact(self, orchestrator):
        with pytest.raises(ContactNotFoundError):
            await orchestrator.follow_up("000")

    @pytest.mark.asyncio
    async def test_reply_reschedule_is_respected(self, orchestrator, store, events):
        # Contact opted out after the due query was taken
        await store.create_contact_if_absent(make_contact(next_follow_up_at=T0))
        await orchestrator.handle_inbound(events.text("stop"))
        result = await orchestrator.follow_up(ADDRESS)
        assert result["status"] == "skipped"


# ══════════════════════════════════════════════════════════════
#  SIGNALS
# ══════════════════════════════════════════════════════════════

class TestSignals:
    @pytest.mark.asyncio
    async def test_registration_signal(self, orchestrator, store):
        await store.create_contact_if_absent(make_contact(next_follow_up_at=T0))
        contact = await orchestrator.apply_signal(ADDRESS, "registered")
        assert contact.lifecycle.status == LeadStatus.CONVERTED
        assert (await store.get_contact(ADDRESS)).engagement.registered
        records = await store.list_interactions(kind=InteractionKind.REGISTRATION_COMPLETED)
        assert len(records) == 1

    @pytest.mark.asyncio
    async def test_unknown_signal(self, orchestrator, store):
        await store.create_contact_if_absent(make_contact())
        with pytest.raises(ValueError):
            await orchestrator.apply_signal(ADDRESS, "paid")

    @pytest.mark.asyncio
    async def test_unknown_contact(self, orchestrator):
        with pytest.raises(ContactNotFoundError):
            await orchestrator.apply_signal("000", "registered")
