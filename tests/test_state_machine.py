"""Tests for StageMachine — the funnel conversation engine."""
import pytest
from datetime import timedelta

from context.referral import derive_referral_code, referral_disambiguator
from context.state_machine import (
    BUTTON_OWNER, RECENT_MESSAGE_WINDOW, TRACK_BUTTONS, StageMachine,
)
from models.schemas import (
    ContactStage, InteractionKind, LeadStatus, MENU_REGION, SendButtons,
    SendDocument, SendList, SendText, Track,
)

from conftest import ADDRESS, T0, make_contact


def kinds(result):
    return [r.kind for r in result.interactions]


class TestConstruction:
    def test_every_stage_has_a_handler(self, stage_machine):
        assert set(stage_machine._handlers) == set(ContactStage)

    def test_missing_handler_fails_fast(self, catalog):
        class Incomplete(StageMachine):
            def _validate_handlers(self):
                self._handlers.pop(ContactStage.REFERRAL)
                super()._validate_handlers()

        with pytest.raises(RuntimeError, match="referral"):
            Incomplete(catalog)

    def test_button_ids_belong_to_one_track(self):
        all_ids = [b for buttons in TRACK_BUTTONS.values() for b in buttons]
        assert len(all_ids) == len(set(all_ids)) == len(BUTTON_OWNER)

    def test_new_contact_schedules_first_follow_up(self, stage_machine):
        contact = stage_machine.new_contact(ADDRESS, T0)
        assert contact.stage == ContactStage.INITIAL
        assert contact.lifecycle.status == LeadStatus.ACTIVE
        assert contact.lifecycle.next_follow_up_at == T0 + timedelta(hours=24)
        assert contact.created_at == T0


# ══════════════════════════════════════════════════════════════
#  PROFILE COLLECTION
# ══════════════════════════════════════════════════════════════

class TestOnboarding:
    def test_full_onboarding_scenario(self, stage_machine, events):
        contact = stage_machine.new_contact(ADDRESS, T0)

        r1 = stage_machine.transition(contact, events.text("Hi"), T0)
        assert r1.to_stage == ContactStage.COLLECTING_NAME
        assert len(r1.commands) == 1
        assert "Full Name" in r1.commands[0].body

        r2 = stage_machine.transition(r1.contact, events.text("  Ali Khan "), T0)
        assert r2.to_stage == ContactStage.COLLECTING_CITY
        assert r2.contact.profile.name == "Ali Khan"
        assert "Which city" in r2.commands[0].body

        r3 = stage_machine.transition(r2.contact, events.text("Karachi"), T0)
        assert r3.to_stage == ContactStage.COLLECTING_SPECIALTY
        assert r3.contact.profile.city == "Karachi"

        r4 = stage_machine.transition(r3.contact, events.text("Cardiologist"), T0)
        assert r4.to_stage == ContactStage.MENU
        assert r4.contact.profile.is_complete

        confirmation, menu = r4.commands
        assert isinstance(confirmation, SendText)
        assert "Cardiologist" in confirmation.body
        assert isinstance(menu, SendList)
        assert menu.not_before == T0 + timedelta(seconds=2)
        assert r4.immediate_commands(T0) == [confirmation]
        assert r4.deferred_commands(T0) == [menu]

    def test_initial_accepts_any_event_kind(self, stage_machine, events):
        contact = stage_machine.new_contact(ADDRESS, T0)
        result = stage_machine.transition(contact, events.button("yes_call"), T0)
        assert result.to_stage == ContactStage.COLLECTING_NAME

    def test_non_text_in_profile_stage_reprompts(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.COLLECTING_CITY, city=None, specialty=None)
        result = stage_machine.transition(contact, events.list_reply("referral"), T0)
        assert result.to_stage == ContactStage.COLLECTING_CITY
        assert result.contact.profile.city is None
        assert "Which city" in result.commands[0].body

    def test_transition_never_mutates_input(self, stage_machine, events):
        contact = stage_machine.new_contact(ADDRESS, T0)
        before = contact.model_dump()
        stage_machine.transition(contact, events.text("Hi"), T0 + timedelta(minutes=1))
        assert contact.model_dump() == before

    def test_last_interaction_updated(self, stage_machine, events):
        contact = stage_machine.new_contact(ADDRESS, T0)
        later = T0 + timedelta(hours=3)
        result = stage_machine.transition(contact, events.text("Hi"), later)
        assert result.contact.lifecycle.last_interaction_at == later
        assert result.contact.updated_at == later


# ══════════════════════════════════════════════════════════════
#  IDEMPOTENCE
# ══════════════════════════════════════════════════════════════

class TestDuplicateDelivery:
    def test_redelivered_event_is_ignored(self, stage_machine, events):
        contact = stage_machine.new_contact(ADDRESS, T0)
        event = events.text("Hi")
        first = stage_machine.transition(contact, event, T0)
        again = stage_machine.transition(first.contact, event, T0)

        assert again.duplicate
        assert again.commands == []
        assert again.to_stage == ContactStage.COLLECTING_NAME
        assert again.contact.profile == first.contact.profile

    def test_redelivered_profile_answer_does_not_skip_stage(self, stage_machine, events):
        contact = stage_machine.new_contact(ADDRESS, T0)
        r1 = stage_machine.transition(contact, events.text("Hi"), T0)
        name_event = events.text("Ali Khan")
        r2 = stage_machine.transition(r1.contact, name_event, T0)
        r3 = stage_machine.transition(r2.contact, name_event, T0)
        assert r3.duplicate
        assert r3.contact.profile.city is None
        assert r3.to_stage == ContactStage.COLLECTING_CITY

    def test_message_id_window_is_bounded(self, stage_machine, events, contact_factory):
        contact = contact_factory()
        for i in range(RECENT_MESSAGE_WINDOW + 5):
            contact = stage_machine.transition(contact, events.text("hello"), T0).contact
        assert len(contact.recent_message_ids) == RECENT_MESSAGE_WINDOW
        assert contact.recent_message_ids[-1] == f"wamid.in{RECENT_MESSAGE_WINDOW + 5}"


# ══════════════════════════════════════════════════════════════
#  MENU & TRACKS
# ══════════════════════════════════════════════════════════════

class TestMenu:
    def test_select_online_doctor(self, stage_machine, events, contact_factory):
        result = stage_machine.transition(contact_factory(), events.list_reply("online_doctor"), T0)
        assert result.to_stage == ContactStage.ONLINE_DOCTOR
        assert result.contact.selected_track == Track.ONLINE_DOCTOR
        intro, prompt = result.commands
        assert intro.not_before is None
        assert isinstance(prompt, SendButtons)
        assert [o.id for o in prompt.options] == ["yes_call", "no_call"]
        assert prompt.not_before == T0 + timedelta(seconds=2)
        assert InteractionKind.OPTION_SELECTED in kinds(result)

    def test_select_cyber_clinic_sends_brochure(self, stage_machine, events, contact_factory):
        result = stage_machine.transition(contact_factory(), events.list_reply("cyber_clinic"), T0)
        assert result.to_stage == ContactStage.CYBER_CLINIC
        intro, brochure, prompt = result.commands
        assert isinstance(brochure, SendDocument)
        assert brochure.not_before == T0 + timedelta(seconds=1.5)
        assert prompt.not_before == T0 + timedelta(seconds=3)
        assert result.contact.engagement.document_downloaded
        assert InteractionKind.DOCUMENT_SENT in kinds(result)

    def test_unknown_list_selection_resends_menu(self, stage_machine, events, contact_factory):
        result = stage_machine.transition(contact_factory(), events.list_reply("telehealth"), T0)
        assert result.to_stage == ContactStage.MENU
        assert isinstance(result.commands[0], SendList)

    def test_free_text_in_menu_nudges(self, stage_machine, events, contact_factory):
        result = stage_machine.transition(contact_factory(), events.text("how much?"), T0)
        assert result.to_stage == ContactStage.MENU
        assert "menu" in result.commands[0].body

    def test_menu_keyword_resends_menu(self, stage_machine, events, contact_factory):
        result = stage_machine.transition(contact_factory(), events.text("Main Menu"), T0)
        assert isinstance(result.commands[0], SendList)

    def test_switch_track_from_track(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.ONLINE_DOCTOR)
        result = stage_machine.transition(contact, events.list_reply("smart_calendar"), T0)
        assert result.to_stage == ContactStage.SMART_CALENDAR
        assert result.contact.selected_track == Track.SMART_CALENDAR


class TestTracks:
    def test_menu_keyword_returns_to_menu(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.REFERRAL)
        result = stage_machine.transition(contact, events.text("back"), T0)
        assert result.to_stage == ContactStage.MENU
        assert isinstance(result.commands[0], SendList)

    def test_free_text_in_track_offers_help(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.SMART_CALENDAR)
        result = stage_machine.transition(contact, events.text("thanks"), T0)
        assert result.to_stage == ContactStage.SMART_CALENDAR
        assert "How else can I help" in result.commands[0].body

    def test_book_call_marks_warm(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.ONLINE_DOCTOR)
        result = stage_machine.transition(contact, events.button("yes_call"), T0)
        assert result.contact.engagement.call_booked
        assert result.contact.lifecycle.status == LeadStatus.WARM_LEAD
        assert stage_machine.catalog.config.calendly_url in result.commands[0].body
        assert InteractionKind.CALL_SCHEDULED in kinds(result)
        assert InteractionKind.BUTTON_CLICKED in kinds(result)

    def test_decline_marks_warm(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.SMART_CALENDAR)
        result = stage_machine.transition(contact, events.button("no_demo"), T0)
        assert result.contact.lifecycle.status == LeadStatus.WARM_LEAD
        assert not result.contact.engagement.call_booked
        assert "video is quite informative" in result.commands[0].body

    def test_cyber_clinic_documents(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.CYBER_CLINIC)
        roi = stage_machine.transition(contact, events.button("roi_calc"), T0)
        assert roi.commands[0].url == stage_machine.catalog.config.roi_pdf_url
        assert roi.contact.lifecycle.status == LeadStatus.ACTIVE

        cost = stage_machine.transition(roi.contact, events.button("cost_plan"), T0)
        assert cost.commands[0].url == stage_machine.catalog.config.cost_plan_pdf_url

    def test_button_interpreted_by_owning_track(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.ONLINE_DOCTOR)
        result = stage_machine.transition(contact, events.button("roi_calc"), T0)
        assert result.to_stage == ContactStage.ONLINE_DOCTOR
        assert isinstance(result.commands[0], SendDocument)
        clicked = [r for r in result.interactions if r.kind == InteractionKind.BUTTON_CLICKED]
        assert clicked[0].details["track"] == "cyber_clinic"

    def test_unknown_button(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.ONLINE_DOCTOR)
        result = stage_machine.transition(contact, events.button("mystery"), T0)
        assert result.to_stage == ContactStage.ONLINE_DOCTOR
        assert "How else can I help" in result.commands[0].body

    def test_converted_contact_not_downgraded(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.ONLINE_DOCTOR, status=LeadStatus.CONVERTED)
        result = stage_machine.transition(contact, events.button("yes_call"), T0)
        assert result.contact.lifecycle.status == LeadStatus.CONVERTED


class TestStageMonotonicity:
    def test_menu_region_is_never_left(self, stage_machine, events, contact_factory):
        contact = contact_factory()
        script = [
            events.text("hello"), events.list_reply("referral"), events.text("menu"),
            events.button("yes_call"), events.list_reply("cyber_clinic"), events.text("x"),
            events.button("unknown"), events.list_reply("bogus"), events.text("stop"),
            events.button("no_demo"), events.text("back"),
        ]
        for event in script:
            contact = stage_machine.transition(contact, event, T0).contact
            assert contact.stage in MENU_REGION
            assert contact.profile.is_complete


# ══════════════════════════════════════════════════════════════
#  REFERRAL
# ══════════════════════════════════════════════════════════════

class TestReferral:
    def test_referral_scenario(self, stage_machine, events, contact_factory):
        contact = contact_factory()
        r1 = stage_machine.transition(contact, events.list_reply("referral"), T0)
        assert r1.to_stage == ContactStage.REFERRAL

        r2 = stage_machine.transition(r1.contact, events.button("yes_referral"), T0)
        code = derive_referral_code("Ali Khan", referral_disambiguator(contact, 0))
        assert r2.contact.referral.code == code
        assert r2.contact.referral.link == f"https://angill.pk/join?ref={code}"
        assert r2.contact.engagement.referral_link_issued
        assert code in r2.commands[0].body
        issued = [r for r in r2.interactions if r.kind == InteractionKind.REFERRAL_ISSUED]
        assert issued[0].details == {"code": code, "reused": False}

    def test_referral_is_idempotent(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.REFERRAL)
        first = stage_machine.transition(contact, events.button("yes_referral"), T0)
        later = T0 + timedelta(days=3)
        second = stage_machine.transition(first.contact, events.button("yes_referral"), later)
        assert second.contact.referral.code == first.contact.referral.code
        issued = [r for r in second.interactions if r.kind == InteractionKind.REFERRAL_ISSUED]
        assert issued[0].details["reused"] is True

    def test_retry_attempt_uses_next_disambiguator(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.REFERRAL)
        result = stage_machine.transition(contact, events.button("yes_referral"), T0,
                                          referral_attempt=1)
        expected = derive_referral_code("Ali Khan", referral_disambiguator(contact, 1))
        assert result.contact.referral.code == expected

    def test_issue_referral_keeps_existing_code(self, stage_machine, contact_factory):
        contact = stage_machine.issue_referral(contact_factory(), T0)
        again = stage_machine.issue_referral(contact, T0, attempt=1)
        assert again.referral.code == contact.referral.code

    def test_decline_referral(self, stage_machine, events, contact_factory):
        contact = contact_factory(stage=ContactStage.REFERRAL)
        result = stage_machine.transition(contact, events.button("no_referral"), T0)
        assert result.contact.referral.code is None
        assert result.contact.lifecycle.status == LeadStatus.WARM_LEAD


# ══════════════════════════════════════════════════════════════
#  OPT-OUT & SIGNALS
# ══════════════════════════════════════════════════════════════

class TestOptOut:
    @pytest.mark.parametrize("text", ["STOP", " stop ", "Unsubscribe"])
    def test_keywords(self, stage_machine, events, contact_factory, text):
        contact = contact_factory(next_follow_up_at=T0 + timedelta(days=1))
        result = stage_machine.transition(contact, events.text(text), T0)
        assert result.contact.lifecycle.status == LeadStatus.OPTED_OUT
        assert result.contact.lifecycle.next_follow_up_at is None
        assert result.to_stage == ContactStage.MENU
        assert "unsubscribed" in result.commands[0].body
        assert InteractionKind.OPTED_OUT in kinds(result)

    def test_opt_out_button(self, stage_machine, events, contact_factory):
        result = stage_machine.transition(contact_factory(), events.button("opt_out"), T0)
        assert result.contact.lifecycle.status == LeadStatus.OPTED_OUT

    def test_opt_out_during_profile_keeps_stage(self, stage_machine, events):
        contact = stage_machine.new_contact(ADDRESS, T0)
        r1 = stage_machine.transition(contact, events.text("Hi"), T0)
        r2 = stage_machine.transition(r1.contact, events.text("stop"), T0)
        assert r2.to_stage == ContactStage.COLLECTING_NAME
        assert r2.contact.profile.name is None

    def test_opted_out_contact_can_still_converse(self, stage_machine, events, contact_factory):
        contact = contact_factory(status=LeadStatus.OPTED_OUT)
        result = stage_machine.transition(contact, events.list_reply("online_doctor"), T0)
        assert result.to_stage == ContactStage.ONLINE_DOCTOR
        booked = stage_machine.transition(result.contact, events.button("yes_call"), T0)
        assert booked.contact.lifecycle.status == LeadStatus.OPTED_OUT


class TestSignals:
    def test_registration_converts(self, stage_machine, contact_factory):
        contact = contact_factory(next_follow_up_at=T0 + timedelta(days=1))
        result = stage_machine.apply_signal(contact, "registered", T0)
        assert result.contact.engagement.registered
        assert result.contact.lifecycle.status == LeadStatus.CONVERTED
        assert result.contact.lifecycle.next_follow_up_at is None
        assert kinds(result) == [InteractionKind.REGISTRATION_COMPLETED]
        assert not contact.engagement.registered

    def test_registration_keeps_opt_out(self, stage_machine, contact_factory):
        contact = contact_factory(status=LeadStatus.OPTED_OUT)
        result = stage_machine.apply_signal(contact, "registered", T0)
        assert result.contact.lifecycle.status == LeadStatus.OPTED_OUT

    def test_video_watched(self, stage_machine, contact_factory):
        result = stage_machine.apply_signal(contact_factory(), "video_watched", T0)
        assert result.contact.engagement.video_watched
        assert result.contact.lifecycle.status == LeadStatus.ACTIVE

    def test_unknown_signal(self, stage_machine, contact_factory):
        with pytest.raises(ValueError):
            stage_machine.apply_signal(contact_factory(), "paid", T0)
