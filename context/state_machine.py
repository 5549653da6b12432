"""
Stage Machine — interprets one inbound event against a contact's stage.

The machine is pure: it takes a contact snapshot, a normalized inbound event
and the current time, and returns a new snapshot plus the outbound commands
and interaction facts the event produced. Executing those commands and
persisting the snapshot is the orchestrator's job.

Stage graph:

    initial → collecting_name → collecting_city → collecting_specialty → menu
                                                                         ↕
                         {online_doctor | cyber_clinic | referral | smart_calendar}

Once the profile is complete the contact never leaves the menu region.
Handlers are registered per stage and checked for completeness when the
machine is built, so adding a stage without a handler fails at startup.

Usage:
    sm = StageMachine(catalog, pacing)
    result = sm.transition(contact, event, now)
    # result.contact, result.commands, result.interactions
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from config.settings import FollowUpConfig, PacingConfig
from context.catalog import ContentCatalog
from context.referral import derive_referral_code, referral_disambiguator, referral_link
from models.schemas import (
    Contact, ContactStage, EventKind, InboundEvent, InteractionKind,
    InteractionRecord, LeadStatus, Lifecycle, Track,
)

logger = structlog.get_logger()

RECENT_MESSAGE_WINDOW = 20
OPT_OUT_WORDS = {"stop", "unsubscribe"}
OPT_OUT_BUTTON = "opt_out"


class ButtonAction(str, Enum):
    BOOK_CALL = "book_call"
    DECLINE = "decline"
    SEND_ROI = "send_roi"
    SEND_COST_PLAN = "send_cost_plan"
    ISSUE_REFERRAL = "issue_referral"


# Per-track button tables. A button id belongs to exactly one track.
TRACK_BUTTONS: dict[Track, dict[str, ButtonAction]] = {
    Track.ONLINE_DOCTOR: {
        "yes_call": ButtonAction.BOOK_CALL,
        "no_call": ButtonAction.DECLINE,
    },
    Track.CYBER_CLINIC: {
        "schedule_call": ButtonAction.BOOK_CALL,
        "roi_calc": ButtonAction.SEND_ROI,
        "cost_plan": ButtonAction.SEND_COST_PLAN,
    },
    Track.REFERRAL: {
        "yes_referral": ButtonAction.ISSUE_REFERRAL,
        "no_referral": ButtonAction.DECLINE,
    },
    Track.SMART_CALENDAR: {
        "yes_demo": ButtonAction.BOOK_CALL,
        "no_demo": ButtonAction.DECLINE,
    },
}

BUTTON_OWNER: dict[str, Track] = {
    button_id: track
    for track, buttons in TRACK_BUTTONS.items()
    for button_id in buttons
}

SIGNALS = ("registered", "video_watched")


def is_menu_request(text: str) -> bool:
    lowered = text.strip().lower()
    return "menu" in lowered or lowered == "back"


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of applying one inbound event (or signal) to a contact."""

    def __init__(
        self,
        contact: Contact,
        from_stage: ContactStage,
        to_stage: ContactStage,
        commands: list = None,
        interactions: list[InteractionRecord] = None,
        duplicate: bool = False,
    ):
        self.contact = contact
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.commands = commands or []
        self.interactions = interactions or []
        self.duplicate = duplicate

    @property
    def transitioned(self) -> bool:
        return self.from_stage != self.to_stage

    def immediate_commands(self, now: datetime) -> list:
        return [c for c in self.commands if c.is_due(now)]

    def deferred_commands(self, now: datetime) -> list:
        return [c for c in self.commands if not c.is_due(now)]

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return (f"<Transition {self.from_stage.value} → {self.to_stage.value} "
                    f"[{len(self.commands)} commands]>")
        return f"<NoTransition {self.to_stage.value} [{len(self.commands)} commands]>"


class _Turn:
    """Mutable scratch space for one transition. Owns a private copy of the contact."""

    def __init__(self, contact: Contact, event: Optional[InboundEvent], now: datetime,
                 referral_attempt: int = 0):
        self.contact = contact.model_copy(deep=True)
        self.event = event
        self.now = now
        self.referral_attempt = referral_attempt
        self.commands: list = []
        self.facts: list[InteractionRecord] = []

    def emit(self, command) -> None:
        self.commands.append(command)

    def fact(self, kind: InteractionKind, **details: Any) -> None:
        self.facts.append(InteractionRecord(
            contact_address=self.contact.address,
            kind=kind,
            timestamp=self.now,
            details=details,
        ))

    def after(self, seconds: float) -> datetime:
        return self.now + timedelta(seconds=seconds)

    def move_to(self, stage: ContactStage) -> None:
        self.contact.stage = stage


# ──────────────────────────────────────────────────────────────
#  Stage Machine
# ──────────────────────────────────────────────────────────────

class StageMachine:
    """Conversation stage machine for the lead funnel."""

    def __init__(
        self,
        catalog: ContentCatalog = None,
        pacing: PacingConfig = None,
        followup: FollowUpConfig = None,
    ):
        self.catalog = catalog or ContentCatalog()
        self.pacing = pacing or PacingConfig()
        self.followup = followup or FollowUpConfig()
        self._handlers: dict[ContactStage, Callable[[_Turn], None]] = {
            ContactStage.INITIAL: self._on_initial,
            ContactStage.COLLECTING_NAME: self._on_collecting_name,
            ContactStage.COLLECTING_CITY: self._on_collecting_city,
            ContactStage.COLLECTING_SPECIALTY: self._on_collecting_specialty,
            ContactStage.MENU: self._on_menu,
            ContactStage.ONLINE_DOCTOR: self._on_track,
            ContactStage.CYBER_CLINIC: self._on_track,
            ContactStage.REFERRAL: self._on_track,
            ContactStage.SMART_CALENDAR: self._on_track,
        }
        self._validate_handlers()

    def _validate_handlers(self):
        missing = [s.value for s in ContactStage if s not in self._handlers]
        if missing:
            raise RuntimeError(f"Stage machine has no handler for stages: {', '.join(missing)}")

    # ── Contact creation ──────────────────────────────────────

    def new_contact(self, address: str, now: datetime) -> Contact:
        """Fresh record for an unseen address, with the first follow-up scheduled."""
        return Contact(
            address=address,
            stage=ContactStage.INITIAL,
            lifecycle=Lifecycle(
                status=LeadStatus.ACTIVE,
                last_interaction_at=now,
                next_follow_up_at=now + timedelta(hours=self.followup.first_delay_hours),
            ),
            created_at=now,
            updated_at=now,
        )

    # ── Transition ────────────────────────────────────────────

    def transition(
        self,
        contact: Contact,
        event: InboundEvent,
        now: datetime,
        referral_attempt: int = 0,
    ) -> TransitionResult:
        """
        Apply one inbound event. Never mutates `contact`.

        `referral_attempt` selects the referral disambiguator; the caller
        bumps it after the store rejects a colliding code.
        """
        turn = _Turn(contact, event, now, referral_attempt)
        c = turn.contact
        from_stage = c.stage

        c.lifecycle.last_interaction_at = now
        turn.fact(
            InteractionKind.MESSAGE_RECEIVED,
            message_id=event.message_id,
            event_kind=event.kind.value,
            content=event.payload,
        )

        if event.message_id and event.message_id in c.recent_message_ids:
            logger.info("inbound_duplicate_ignored",
                        address=c.address,
                        message_id=event.message_id,
                        stage=c.stage.value)
            c.updated_at = now
            return TransitionResult(c, from_stage, c.stage, interactions=turn.facts, duplicate=True)

        if event.message_id:
            c.recent_message_ids = (c.recent_message_ids + [event.message_id])[-RECENT_MESSAGE_WINDOW:]

        if self._is_opt_out(event):
            self._opt_out(turn)
        else:
            self._handlers[c.stage](turn)

        c.updated_at = now
        result = TransitionResult(c, from_stage, c.stage, turn.commands, turn.facts)
        if result.transitioned:
            logger.info("stage_transition",
                        address=c.address,
                        transition=f"{from_stage.value} → {c.stage.value}",
                        event_kind=event.kind.value,
                        commands=len(result.commands))
        return result

    # ── External signals ──────────────────────────────────────

    def apply_signal(self, contact: Contact, signal: str, now: datetime) -> TransitionResult:
        """
        Record an engagement fact reported outside the chat, e.g. a
        completed registration on the website.
        """
        if signal not in SIGNALS:
            raise ValueError(f"Unknown signal '{signal}'")

        turn = _Turn(contact, None, now)
        c = turn.contact
        if signal == "registered":
            c.engagement.registered = True
            if c.lifecycle.status != LeadStatus.OPTED_OUT:
                c.lifecycle.status = LeadStatus.CONVERTED
            c.lifecycle.next_follow_up_at = None
            turn.fact(InteractionKind.REGISTRATION_COMPLETED)
        else:
            c.engagement.video_watched = True
            turn.fact(InteractionKind.VIDEO_WATCHED)

        c.updated_at = now
        logger.info("contact_signal_applied", address=c.address, signal=signal,
                    status=c.lifecycle.status.value)
        return TransitionResult(c, contact.stage, c.stage, interactions=turn.facts)

    # ── Referral issuance ─────────────────────────────────────

    def issue_referral(self, contact: Contact, now: datetime, attempt: int = 0) -> Contact:
        """Return a copy of `contact` holding a referral code. An existing code is kept."""
        turn = _Turn(contact, None, now, attempt)
        self._ensure_referral(turn)
        return turn.contact

    def _ensure_referral(self, turn: _Turn) -> bool:
        """Returns True when a new code was derived."""
        c = turn.contact
        c.engagement.referral_link_issued = True
        if c.referral.code:
            if not c.referral.link:
                c.referral.link = referral_link(self.catalog.config.referral_base_url, c.referral.code)
            return False
        disambiguator = referral_disambiguator(c, turn.referral_attempt)
        c.referral.code = derive_referral_code(c.profile.name or "", disambiguator)
        c.referral.link = referral_link(self.catalog.config.referral_base_url, c.referral.code)
        return True

    # ── Profile collection handlers ───────────────────────────

    def _on_initial(self, turn: _Turn):
        turn.emit(self.catalog.welcome(turn.contact.address))
        turn.move_to(ContactStage.COLLECTING_NAME)

    def _on_collecting_name(self, turn: _Turn):
        if not self._expect_text(turn):
            return
        c = turn.contact
        c.profile.name = turn.event.text.strip()
        turn.move_to(ContactStage.COLLECTING_CITY)
        turn.emit(self.catalog.ask_city(c.address, c.profile.name))

    def _on_collecting_city(self, turn: _Turn):
        if not self._expect_text(turn):
            return
        c = turn.contact
        c.profile.city = turn.event.text.strip()
        turn.move_to(ContactStage.COLLECTING_SPECIALTY)
        turn.emit(self.catalog.ask_specialty(c.address, c.profile.city))

    def _on_collecting_specialty(self, turn: _Turn):
        if not self._expect_text(turn):
            return
        c = turn.contact
        c.profile.specialty = turn.event.text.strip()
        turn.move_to(ContactStage.MENU)
        turn.emit(self.catalog.profile_confirmation(c))
        turn.emit(self.catalog.main_menu(c.address, not_before=turn.after(self.pacing.menu_delay)))

    def _expect_text(self, turn: _Turn) -> bool:
        """Profile stages only take free text; anything else re-asks the open question."""
        if turn.event.kind == EventKind.TEXT:
            return True
        logger.info("profile_stage_non_text_event",
                    address=turn.contact.address,
                    stage=turn.contact.stage.value,
                    event_kind=turn.event.kind.value)
        turn.emit(self.catalog.prompt_for_stage(turn.contact))
        return False

    # ── Menu region handlers ──────────────────────────────────

    def _on_menu(self, turn: _Turn):
        kind = turn.event.kind
        if kind == EventKind.LIST:
            self._select_track(turn)
        elif kind == EventKind.BUTTON:
            self._press_button(turn)
        elif is_menu_request(turn.event.text):
            turn.emit(self.catalog.main_menu(turn.contact.address))
        else:
            turn.emit(self.catalog.menu_nudge(turn.contact.address))

    def _on_track(self, turn: _Turn):
        kind = turn.event.kind
        if kind == EventKind.LIST:
            self._select_track(turn)
        elif kind == EventKind.BUTTON:
            self._press_button(turn)
        elif is_menu_request(turn.event.text):
            turn.move_to(ContactStage.MENU)
            turn.emit(self.catalog.main_menu(turn.contact.address))
        else:
            turn.emit(self.catalog.general_help(turn.contact.address))

    def _select_track(self, turn: _Turn):
        c = turn.contact
        try:
            track = Track(turn.event.list_id)
        except ValueError:
            logger.warning("unknown_list_selection", address=c.address, list_id=turn.event.list_id)
            turn.emit(self.catalog.main_menu(c.address))
            return

        c.selected_track = track
        turn.move_to(track.stage)
        turn.fact(InteractionKind.OPTION_SELECTED, option=track.value)
        turn.emit(self.catalog.track_intro(track, c))

        if track == Track.CYBER_CLINIC:
            turn.emit(self.catalog.brochure(c.address, not_before=turn.after(self.pacing.brochure_delay)))
            c.engagement.document_downloaded = True
            turn.fact(InteractionKind.DOCUMENT_SENT, document="brochure")
            prompt_at = turn.after(self.pacing.cyber_clinic_prompt_delay)
        else:
            prompt_at = turn.after(self.pacing.track_prompt_delay)
        turn.emit(self.catalog.track_prompt(track, c.address, not_before=prompt_at))

    def _press_button(self, turn: _Turn):
        c = turn.contact
        button_id = turn.event.button_id
        track = BUTTON_OWNER.get(button_id)
        if track is None:
            logger.warning("unknown_button", address=c.address, button_id=button_id, stage=c.stage.value)
            turn.emit(self.catalog.general_help(c.address))
            return

        action = TRACK_BUTTONS[track][button_id]
        turn.fact(InteractionKind.BUTTON_CLICKED, button_id=button_id, track=track.value)

        if action == ButtonAction.BOOK_CALL:
            turn.emit(self.catalog.booking_link(c))
            c.engagement.call_booked = True
            self._mark_warm(c)
            turn.fact(InteractionKind.CALL_SCHEDULED, track=track.value)
        elif action == ButtonAction.DECLINE:
            self._mark_warm(c)
            turn.emit(self.catalog.decline_reply(button_id, c.address))
        elif action == ButtonAction.SEND_ROI:
            turn.emit(self.catalog.roi_document(c.address))
            turn.fact(InteractionKind.DOCUMENT_SENT, document="roi")
        elif action == ButtonAction.SEND_COST_PLAN:
            turn.emit(self.catalog.cost_plan_document(c.address))
            turn.fact(InteractionKind.DOCUMENT_SENT, document="cost_plan")
        elif action == ButtonAction.ISSUE_REFERRAL:
            created = self._ensure_referral(turn)
            turn.fact(InteractionKind.REFERRAL_ISSUED, code=c.referral.code, reused=not created)
            turn.emit(self.catalog.referral_message(c))

    # ── Lifecycle helpers ─────────────────────────────────────

    @staticmethod
    def _mark_warm(contact: Contact):
        # converted / opted-out / non-responsive are never downgraded
        if contact.lifecycle.status == LeadStatus.ACTIVE:
            contact.lifecycle.status = LeadStatus.WARM_LEAD

    @staticmethod
    def _is_opt_out(event: InboundEvent) -> bool:
        if event.kind == EventKind.BUTTON:
            return event.button_id == OPT_OUT_BUTTON
        if event.kind == EventKind.TEXT:
            return event.text.strip().lower() in OPT_OUT_WORDS
        return False

    def _opt_out(self, turn: _Turn):
        c = turn.contact
        c.lifecycle.status = LeadStatus.OPTED_OUT
        c.lifecycle.next_follow_up_at = None
        turn.fact(InteractionKind.OPTED_OUT)
        turn.emit(self.catalog.opt_out_ack(c.address))
        logger.info("contact_opted_out", address=c.address)
