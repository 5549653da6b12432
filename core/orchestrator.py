"""
Orchestrator — The central coordinator for the funnel conversation.

Architecture:
  Inbound:  webhook / normalized event → per-contact lock
            → read or create contact → StageMachine.transition()
            → save (optimistic version check) → append interaction facts
            → execute immediate commands → publish deferred commands

  Deferred: queue consumer → dispatch_deferred() → channel

  Follow-up: ticker / manual API → follow_up() → scheduler plan
            → send → persist (only after a successful send)

  Signals:  registration / video callbacks → apply_signal()

The stage machine decides, the orchestrator performs. Nothing here knows
which stage comes next or what a message says.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import ValidationError

from channels.base import ChannelAdapter
from context.state_machine import StageMachine, TransitionResult
from database.store_base import (
    BaseContactStore, ContactNotFoundError, ReferralCodeConflictError,
    VersionConflictError,
)
from job_queue.message_queue import CommandJob, MessageQueue
from models.schemas import (
    Contact, ConversationMessage, InboundEvent, InteractionKind,
    InteractionRecord, LeadStatus, MarkRead, MessageDirection,
    command_summary, utcnow,
)
from rules.followup import FollowUpScheduler
from utils.locks import KeyedAsyncLock, LockUnavailableError

logger = structlog.get_logger()

DELIVERED_STATUSES = {"sent", "mock_sent"}


# ──────────────────────────────────────────────────────────────
#  Inbound outcome
# ──────────────────────────────────────────────────────────────

class InboundStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"                  # malformed, never retried
    UNACKNOWLEDGED = "unacknowledged"    # nothing happened; safe to redeliver
    FAILED = "failed"                    # record not updated; safe to redeliver


@dataclass
class InboundOutcome:
    status: InboundStatus
    address: str = ""
    message_id: str = ""
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None
    sent: int = 0
    send_failures: int = 0
    deferred: int = 0
    error: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def acknowledged(self) -> bool:
        return self.status in (InboundStatus.PROCESSED, InboundStatus.DUPLICATE,
                               InboundStatus.DROPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "address": self.address,
            "message_id": self.message_id,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "sent": self.sent,
            "send_failures": self.send_failures,
            "deferred": self.deferred,
            "error": self.error,
        }


class Orchestrator:
    """
    Performs what the stage machine and the follow-up scheduler decide.

    This class:
    1. Serializes work per contact (keyed lock) and guards saves with the
       record version
    2. Executes immediate commands and queues deferred ones
    3. Keeps the interaction audit trail and the conversation log
    4. Sends drip follow-ups, persisting only after a successful send
    """

    def __init__(
        self,
        store: BaseContactStore,
        channel: ChannelAdapter,
        state_machine: StageMachine,
        scheduler: FollowUpScheduler,
        queue: MessageQueue,
        lock: KeyedAsyncLock = None,
        clock: Callable[[], datetime] = None,
        deferred_max_attempts: int = 2,
    ):
        self.store = store
        self.channel = channel
        self.state_machine = state_machine
        self.scheduler = scheduler
        self.queue = queue
        self.lock = lock or KeyedAsyncLock()
        self.clock = clock or utcnow
        self.deferred_max_attempts = deferred_max_attempts

    # ══════════════════════════════════════════════════════════
    #  INBOUND — Event received from a contact
    # ══════════════════════════════════════════════════════════

    async def ingest(self, payload: dict[str, Any]) -> InboundOutcome:
        """Validate a raw normalized event and handle it. Malformed events are dropped."""
        try:
            event = InboundEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning("inbound_event_dropped",
                           address=payload.get("address", "") if isinstance(payload, dict) else "",
                           message_id=payload.get("message_id", "") if isinstance(payload, dict) else "",
                           reason="malformed",
                           error=str(e))
            return InboundOutcome(status=InboundStatus.DROPPED, error="malformed event")
        return await self.handle_inbound(event)

    async def handle_inbound(self, event: InboundEvent) -> InboundOutcome:
        """
        Main entry point for inbound chat events.

        Flow:
        1. Per-contact lock
        2. Read the contact, creating it if this address is new
        3. Transition; save with version check (one re-read on conflict,
           one re-derivation on a referral code collision)
        4. Append interaction facts and the inbound log entry
        5. Mark read, send immediate commands, queue deferred ones
        """
        logger.info("inbound_event",
                    address=event.address,
                    message_id=event.message_id,
                    kind=event.kind.value,
                    payload=event.payload[:100])
        try:
            async with self.lock.hold(event.address):
                return await self._handle_locked(event)
        except LockUnavailableError as e:
            logger.error("inbound_lock_unavailable", address=event.address, error=str(e))
            return InboundOutcome(status=InboundStatus.UNACKNOWLEDGED, address=event.address,
                                  message_id=event.message_id, error=str(e))

    async def _handle_locked(self, event: InboundEvent) -> InboundOutcome:
        now = self.clock()
        address = event.address

        try:
            contact = await self._load_or_create(address, now)
        except Exception as e:
            logger.error("contact_load_failed", address=address, error=str(e))
            return InboundOutcome(status=InboundStatus.UNACKNOWLEDGED, address=address,
                                  message_id=event.message_id, error=str(e))

        try:
            result = await self._transition_and_save(contact, event, now)
        except Exception as e:
            logger.error("inbound_processing_failed",
                         address=address, message_id=event.message_id, error=str(e))
            return InboundOutcome(status=InboundStatus.FAILED, address=address,
                                  message_id=event.message_id, error=str(e))

        outcome = InboundOutcome(
            status=InboundStatus.PROCESSED,
            address=address,
            message_id=event.message_id,
            from_stage=result.from_stage.value,
            to_stage=result.to_stage.value,
        )
        await self._append_interactions(result.interactions)
        if result.duplicate:
            outcome.status = InboundStatus.DUPLICATE
            return outcome

        await self._log_message(ConversationMessage(
            contact_address=address,
            direction=MessageDirection.INBOUND,
            content=event.payload,
            message_type=event.kind.value,
            message_id=event.message_id,
            status="received",
            timestamp=event.timestamp,
        ))

        if event.message_id:
            await self.channel.execute(MarkRead(message_id=event.message_id))

        for command in result.immediate_commands(now):
            send = await self._send(command, address, now)
            if send.get("status") in DELIVERED_STATUSES:
                outcome.sent += 1
            else:
                outcome.send_failures += 1

        for command in result.deferred_commands(now):
            job = CommandJob.for_command(address, command, now, self.deferred_max_attempts)
            try:
                await self.queue.schedule(job)
                outcome.deferred += 1
            except Exception as e:
                outcome.send_failures += 1
                logger.error("deferred_publish_failed", address=address,
                             command=command.type, error=str(e))

        logger.info("inbound_processed", **{k: v for k, v in outcome.to_dict().items() if v})
        return outcome

    async def _load_or_create(self, address: str, now: datetime) -> Contact:
        contact = await self.store.get_contact(address)
        if contact is not None:
            return contact
        contact, created = await self.store.create_contact_if_absent(
            self.state_machine.new_contact(address, now)
        )
        if not created:
            logger.info("contact_create_race_lost", address=address)
        return contact

    async def _transition_and_save(self, contact: Contact, event: InboundEvent,
                                   now: datetime) -> TransitionResult:
        referral_attempt = 0
        reread = False
        while True:
            result = self.state_machine.transition(contact, event, now, referral_attempt)
            try:
                result.contact = await self.store.save_contact(result.contact)
                return result
            except VersionConflictError as e:
                if reread:
                    raise
                reread = True
                logger.warning("contact_version_conflict", address=contact.address,
                               expected=e.expected, actual=e.actual)
                contact = await self.store.get_contact(contact.address)
                if contact is None:
                    raise ContactNotFoundError(event.address) from e
            except ReferralCodeConflictError as e:
                if referral_attempt >= 1:
                    raise
                referral_attempt += 1
                logger.warning("referral_code_collision", address=contact.address, code=e.code)

    # ══════════════════════════════════════════════════════════
    #  OUTBOUND — Commands and logging
    # ══════════════════════════════════════════════════════════

    async def _send(self, command: Any, address: str, now: datetime,
                    kind: InteractionKind = InteractionKind.MESSAGE_SENT,
                    **details: Any) -> dict[str, Any]:
        """Execute one command and record the attempt, whatever its result."""
        result = await self.channel.execute(command)
        status = result.get("status", "failed")
        if status not in DELIVERED_STATUSES:
            logger.warning("outbound_send_failed", address=address, command=command.type,
                           status=status, error=result.get("error", ""))

        await self._append_interactions([InteractionRecord(
            contact_address=address,
            kind=kind,
            timestamp=now,
            details={
                "command": command.type,
                "status": status,
                "channel_message_id": result.get("channel_message_id", ""),
                "error": result.get("error", ""),
                **details,
            },
        )])
        await self._log_message(ConversationMessage(
            contact_address=address,
            direction=MessageDirection.OUTBOUND,
            content=command_summary(command),
            message_type=command.type,
            message_id=result.get("channel_message_id", ""),
            status=status,
            timestamp=now,
        ))
        return result

    async def _append_interactions(self, records: list[InteractionRecord]):
        for record in records:
            try:
                await self.store.append_interaction(record)
            except Exception as e:
                logger.error("interaction_append_failed", address=record.contact_address,
                             kind=record.kind.value, error=str(e))

    async def _log_message(self, message: ConversationMessage):
        try:
            await self.store.add_message(message)
        except Exception as e:
            logger.error("conversation_log_failed", address=message.contact_address,
                         direction=message.direction.value, error=str(e))

    async def dispatch_deferred(self, command: Any) -> dict[str, Any]:
        """
        Send one deferred command now. Called by the queue consumer once the
        command's not_before has passed. Contacts who opted out in the
        meantime are skipped.
        """
        address = getattr(command, "to", "")
        if address:
            contact = await self.store.get_contact(address)
            if contact and contact.lifecycle.status == LeadStatus.OPTED_OUT:
                logger.info("deferred_command_skipped", address=address,
                            command=command.type, reason="opted_out")
                return {"status": "skipped", "reason": "opted_out"}
        return await self._send(command, address, self.clock(), deferred=True)

    # ══════════════════════════════════════════════════════════
    #  FOLLOW-UPS
    # ══════════════════════════════════════════════════════════

    async def follow_up(self, address: str, now: datetime = None,
                        manual: bool = False) -> dict[str, Any]:
        """
        Send the next drip follow-up to one contact.

        Runs under the contact lock and re-reads the record, so a reply that
        landed since the due query was taken is respected. The record is
        persisted only after the send succeeded; a failed send leaves it
        untouched for the next tick.
        """
        now = now or self.clock()
        async with self.lock.hold(address):
            contact = await self.store.get_contact(address)
            if contact is None:
                raise ContactNotFoundError(address)

            action = self.scheduler.plan(contact, now, ignore_schedule=manual)
            if action is None:
                reason = self.scheduler.ineligibility_reason(contact, now, ignore_schedule=manual)
                return {"status": "skipped", "address": address, "reason": reason}

            send = await self._send(action.message, address, now,
                                    kind=InteractionKind.FOLLOW_UP_SENT,
                                    sequence=action.sequence, manual=manual)
            if send.get("status") not in DELIVERED_STATUSES:
                return {"status": "failed", "address": address, "sequence": action.sequence,
                        "error": send.get("error") or send.get("status", "")}

            saved = await self._save_follow_up(action, now)
            logger.info("follow_up_sent",
                        address=address,
                        sequence=action.sequence,
                        status=saved.lifecycle.status.value,
                        next_follow_up_at=action.next_follow_up_at.isoformat()
                        if action.next_follow_up_at else None,
                        manual=manual)
            return {
                "status": "sent",
                "address": address,
                "sequence": action.sequence,
                "lead_status": saved.lifecycle.status.value,
                "next_follow_up_at": action.next_follow_up_at.isoformat()
                if action.next_follow_up_at else None,
            }

    async def _save_follow_up(self, action, now: datetime) -> Contact:
        """Persist a sent follow-up, re-applying it to a fresh read on a version conflict."""
        try:
            return await self.store.save_contact(action.contact)
        except VersionConflictError as e:
            logger.warning("follow_up_version_conflict", address=action.address,
                           sequence=action.sequence, expected=e.expected, actual=e.actual)
            fresh = await self.store.get_contact(action.address)
            if fresh is None:
                raise ContactNotFoundError(action.address) from e
            if fresh.lifecycle.follow_up_count >= action.sequence:
                return fresh
            return await self.store.save_contact(
                self.scheduler.record_sent(fresh, action.sequence, now)
            )

    async def send_manual_follow_up(self, address: str) -> dict[str, Any]:
        """Send the next follow-up now, regardless of its scheduled time."""
        return await self.follow_up(address, manual=True)

    # ══════════════════════════════════════════════════════════
    #  SIGNALS — Facts reported outside the chat
    # ══════════════════════════════════════════════════════════

    async def apply_signal(self, address: str, signal: str) -> Contact:
        """
        Apply an external engagement signal (registered, video_watched).
        Raises ValueError for unknown signals, ContactNotFoundError for
        unknown addresses.
        """
        async with self.lock.hold(address):
            now = self.clock()
            contact = await self.store.get_contact(address)
            if contact is None:
                raise ContactNotFoundError(address)
            try:
                result = self.state_machine.apply_signal(contact, signal, now)
                saved = await self.store.save_contact(result.contact)
            except VersionConflictError:
                contact = await self.store.get_contact(address)
                result = self.state_machine.apply_signal(contact, signal, now)
                saved = await self.store.save_contact(result.contact)
            await self._append_interactions(result.interactions)
            return saved
