"""
Content Catalog — every scripted message the funnel sends.

Pure: builds outbound command values from a contact snapshot and the
configured URLs. Nothing here performs I/O or decides stage changes.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from config.settings import ContentConfig
from models.schemas import (
    ButtonOption, Contact, ListRow, ListSection, SendButtons, SendDocument,
    SendList, SendText, Track,
)


MENU_SECTION_TITLE = "Angill Options"
MENU_BUTTON_TEXT = "Select Option"

MENU_ROWS: list[ListRow] = [
    ListRow(id=Track.ONLINE_DOCTOR.value, title="Online Doctor",
            description="Join as Online Consulting Doctor"),
    ListRow(id=Track.CYBER_CLINIC.value, title="Cyber Clinic",
            description="Convert clinic to Angill Cyber Clinic"),
    ListRow(id=Track.REFERRAL.value, title="Referral Program",
            description="Earn by referring doctors"),
    ListRow(id=Track.SMART_CALENDAR.value, title="Smart Calendar",
            description="Patent Pending Dual Slot System"),
]

# Track → (prompt body, buttons)
TRACK_PROMPTS: dict[Track, tuple[str, list[ButtonOption]]] = {
    Track.ONLINE_DOCTOR: ("Schedule orientation call?", [
        ButtonOption(id="yes_call", title="✅ Yes, Book Call"),
        ButtonOption(id="no_call", title="❌ No, Later"),
    ]),
    Track.CYBER_CLINIC: ("What would you like to see?", [
        ButtonOption(id="roi_calc", title="💰 ROI Calculation"),
        ButtonOption(id="cost_plan", title="💳 Cost & Installment"),
        ButtonOption(id="schedule_call", title="📞 Schedule Call"),
    ]),
    Track.REFERRAL: ("Generate your referral link?", [
        ButtonOption(id="yes_referral", title="✅ Yes, Generate"),
        ButtonOption(id="no_referral", title="❌ Not Now"),
    ]),
    Track.SMART_CALENDAR: ("Schedule live demo?", [
        ButtonOption(id="yes_demo", title="✅ Yes, Show Me"),
        ButtonOption(id="no_demo", title="❌ Video is Enough"),
    ]),
}

DECLINE_REPLIES: dict[str, str] = {
    "no_call": "No problem! Feel free to message me when you're ready. 😊",
    "no_referral": (
        "No problem! Feel free to message me when you're ready. 😊\n\n"
        "_Type 'menu' to see main menu._"
    ),
    "no_demo": (
        "That's fine! The video is quite informative.\n\n"
        "If you need a live demo later, feel free to let me know! 😊\n\n"
        "_Main menu: Type 'menu'_"
    ),
}

# Follow-up sequence number → message key (elapsed day of the drip)
FOLLOW_UP_KEYS = {1: "day_1", 2: "day_3", 3: "day_5", 4: "day_7"}


class ContentCatalog:
    """Builds the funnel's outbound content. Instances are stateless."""

    def __init__(self, config: ContentConfig = None):
        self.config = config or ContentConfig()

    # ── Profile collection ────────────────────────────────────

    def welcome(self, to: str) -> SendText:
        body = (
            f"🙏 *Thank you for your interest in {self.config.brand_name}!*\n\n"
            "I'm here to help you.\n\n"
            "Before we proceed, may I know:\n\n"
            "*1️⃣ Your Full Name?*"
        )
        return SendText(to=to, body=body)

    def ask_city(self, to: str, name: str) -> SendText:
        return SendText(to=to, body=f"Great, *Dr. {name}*! 👨‍⚕️\n\n*2️⃣ Which city are you from?* 🏙️")

    def ask_specialty(self, to: str, city: str) -> SendText:
        return SendText(
            to=to,
            body=(
                f"Great! {city} 📍\n\n*3️⃣ What is your specialty?*\n\n"
                "_Example: Cardiologist, Dentist, Orthopedic, General Physician_"
            ),
        )

    def profile_confirmation(self, contact: Contact) -> SendText:
        p = contact.profile
        body = (
            f"✅ *Thank you Dr. {p.name}!*\n\n"
            "Your details have been saved:\n"
            f"📍 *City:* {p.city}\n"
            f"🩺 *Specialty:* {p.specialty}\n\n"
            "Let me show you the options... 👇"
        )
        return SendText(to=contact.address, body=body)

    def prompt_for_stage(self, contact: Contact) -> SendText:
        """Re-ask whichever profile field the contact still owes."""
        if contact.profile.name is None:
            return SendText(to=contact.address, body="*1️⃣ Your Full Name?*")
        if contact.profile.city is None:
            return self.ask_city(contact.address, contact.profile.name)
        return self.ask_specialty(contact.address, contact.profile.city or "")

    # ── Menu ──────────────────────────────────────────────────

    def main_menu(self, to: str, not_before: Optional[datetime] = None) -> SendList:
        return SendList(
            to=to,
            body="🔹 *Please choose what you want to explore:*",
            button_text=MENU_BUTTON_TEXT,
            sections=[ListSection(title=MENU_SECTION_TITLE, rows=MENU_ROWS)],
            not_before=not_before,
        )

    def menu_nudge(self, to: str) -> SendText:
        return SendText(to=to, body='Please select from the menu options or type "menu".')

    def general_help(self, to: str) -> SendText:
        return SendText(to=to, body='How else can I help you?\n\n_Type "menu" for main menu._')

    # ── Tracks ────────────────────────────────────────────────

    def track_intro(self, track: Track, contact: Contact) -> SendText:
        name = contact.display_name
        c = self.config
        if track == Track.ONLINE_DOCTOR:
            body = (
                f"🎥 *Dr. {name}, here's what you need:*\n\n"
                f"*Onboarding Video (2 min):*\n{c.onboarding_video_url}\n\n"
                "After watching the video, please register below:\n\n"
                f"👉 *Registration Link:*\n{c.registration_url}\n\n"
                "_After registration, our team will activate your profile within 24 hours._\n\n"
                "*Would you like to schedule a 5-minute orientation call?*"
            )
        elif track == Track.CYBER_CLINIC:
            body = (
                f"🏥 *Cyber Clinic - Dr. {name}*\n\n"
                "*A Cyber Clinic helps you:*\n"
                "✔ Increase daily consultations\n"
                "✔ Use Smart Calendar (Patent Pending)\n"
                "✔ Double booking capacity\n"
                "✔ Offer online + walk-in patients\n"
                "✔ Earn higher monthly income\n\n"
                "📄 *Cyber Clinic Brochure (PDF):*\n_Sending document..._"
            )
        elif track == Track.REFERRAL:
            body = (
                f"💰 *Referral Program - Dr. {name}*\n\n"
                "*Our referral program offers attractive earnings:*\n\n"
                "🔹 Earn *Rs. 7,500 instantly*\n"
                "🔹 Another *Rs. 7,500* after contract maturity\n"
                "🔹 *No limit* — earn from multiple referrals\n\n"
                "*Would you like to generate your unique referral link?*"
            )
        else:
            body = (
                f"📅 *Smart Calendar - Dr. {name}*\n\n"
                "*Our patent-pending Dual Slot Calendar:*\n"
                "✔ Doubles your appointment capacity\n"
                "✔ Syncs clinic + online slots\n"
                "✔ Auto-closes one when the other is booked\n"
                "✔ Increases profitability by ~25%\n\n"
                f"🎥 *Watch Demo:*\n{c.smart_calendar_demo_url}\n\n"
                "*Would you like a live demo?*"
            )
        return SendText(to=contact.address, body=body)

    def track_prompt(self, track: Track, to: str, not_before: Optional[datetime] = None) -> SendButtons:
        body, options = TRACK_PROMPTS[track]
        return SendButtons(to=to, body=body, options=options, not_before=not_before)

    def brochure(self, to: str, not_before: Optional[datetime] = None) -> SendDocument:
        return SendDocument(
            to=to, url=self.config.cyber_clinic_pdf_url,
            caption="Angill Cyber Clinic Brochure", filename="Cyber_Clinic_Brochure.pdf",
            not_before=not_before,
        )

    def roi_document(self, to: str) -> SendDocument:
        return SendDocument(
            to=to, url=self.config.roi_pdf_url,
            caption="ROI Calculation for Cyber Clinic", filename="ROI_Calculation.pdf",
        )

    def cost_plan_document(self, to: str) -> SendDocument:
        return SendDocument(
            to=to, url=self.config.cost_plan_pdf_url,
            caption="Cost & Installment Plan", filename="Cost_Plan.pdf",
        )

    def booking_link(self, contact: Contact) -> SendText:
        body = (
            f"📞 *Book Your Call - Dr. {contact.display_name}*\n\n"
            "Choose your preferred time slot:\n\n"
            f"🔗 *Calendly Link:*\n{self.config.calendly_url}\n\n"
            "_You'll receive a reminder before the call!_"
        )
        return SendText(to=contact.address, body=body)

    def decline_reply(self, button_id: str, to: str) -> SendText:
        return SendText(to=to, body=DECLINE_REPLIES[button_id])

    def referral_message(self, contact: Contact) -> SendText:
        body = (
            f"🎉 *Congratulations Dr. {contact.display_name}!*\n\n"
            "Your unique referral link is ready:\n\n"
            f"🔗 *Your Referral Link:*\n{contact.referral.link}\n\n"
            "*How it works:*\n"
            "1️⃣ Share this link with your doctor friends\n"
            "2️⃣ When they register via your link\n"
            "3️⃣ You earn *Rs. 7,500 instantly*\n"
            "4️⃣ Another *Rs. 7,500* after 6 months\n\n"
            f"*Referral Code:* `{contact.referral.code}`\n\n"
            "_Share and earn! 💰_"
        )
        return SendText(to=contact.address, body=body)

    def opt_out_ack(self, to: str) -> SendText:
        return SendText(
            to=to,
            body="You have been unsubscribed. We won't send you further reminders. 🙏\n\n"
                 '_Type "menu" anytime if you change your mind._',
        )

    # ── Follow-ups ────────────────────────────────────────────

    def follow_up(self, sequence: int, contact: Contact) -> SendText:
        """Drip message for follow-up number 1..4. Independent of the chosen track."""
        name = contact.display_name
        if sequence == 1:
            body = (
                f"👋 *Dr. {name}*\n\n"
                "This is a quick reminder.\n\n"
                "You had inquired about Angill. I hope you received all the details you needed.\n\n"
                "If you need any help or have any questions, please feel free to reply.\n\n"
                "_I'm here to help!_ 😊"
            )
        elif sequence == 2:
            body = (
                f"⭐ *Dr. {name}*\n\n"
                "I'd like to share a success story:\n\n"
                "*Dr. Ahmed (Karachi)* joined Angill 3 months ago. He increased his monthly "
                "income by *35%* just by using the Smart Calendar.\n\n"
                "He now has:\n"
                "✔ Double appointments\n"
                "✔ Online + clinic consultations\n"
                "✔ Better time management\n\n"
                "Would you also like these benefits?\n\n"
                "_Reply and I'll help you get started!_ 🚀"
            )
        elif sequence == 3:
            body = (
                f"📋 *Dr. {name}*\n\n"
                "Angill's *key benefits* at a glance:\n\n"
                "💰 *25-40% more income*\n"
                "📅 Smart Calendar (Patent Pending)\n"
                "🏥 Hybrid model (Online + Clinic)\n"
                "📱 Easy digital management\n"
                "💳 Flexible payment plans\n\n"
                "*Only 50 slots available for doctors.*\n\n"
                "Are you interested?\n\n"
                '_If yes, please reply "Yes"!_ ✅'
            )
        elif sequence == 4:
            body = (
                f"🕐 *Dr. {name}*\n\n"
                "This is my last message.\n\n"
                "Angill is onboarding the *next 50 doctors* with *early benefits + priority listing*.\n\n"
                "If you're interested, please:\n"
                '1️⃣ Reply "Interested"\n'
                f"2️⃣ Or book a call directly: {self.config.calendly_url}\n\n"
                "*If you're not interested*, that's okay — I won't disturb you anymore.\n\n"
                "_Best wishes!_ 🙏"
            )
        else:
            raise ValueError(f"No follow-up message for sequence {sequence}")
        return SendText(to=contact.address, body=body)
