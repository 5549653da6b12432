"""
Core data models for the LeadFlow funnel bot.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ContactStage(str, Enum):
    INITIAL = "initial"
    COLLECTING_NAME = "collecting_name"
    COLLECTING_CITY = "collecting_city"
    COLLECTING_SPECIALTY = "collecting_specialty"
    MENU = "menu"
    ONLINE_DOCTOR = "online_doctor"
    CYBER_CLINIC = "cyber_clinic"
    REFERRAL = "referral"
    SMART_CALENDAR = "smart_calendar"


class Track(str, Enum):
    ONLINE_DOCTOR = "online_doctor"
    CYBER_CLINIC = "cyber_clinic"
    REFERRAL = "referral"
    SMART_CALENDAR = "smart_calendar"

    @property
    def stage(self) -> ContactStage:
        return ContactStage(self.value)


PROFILE_STAGES = (
    ContactStage.INITIAL,
    ContactStage.COLLECTING_NAME,
    ContactStage.COLLECTING_CITY,
    ContactStage.COLLECTING_SPECIALTY,
)
TRACK_STAGES = tuple(t.stage for t in Track)
MENU_REGION = (ContactStage.MENU,) + TRACK_STAGES


class LeadStatus(str, Enum):
    ACTIVE = "active"
    WARM_LEAD = "warm_lead"
    CONVERTED = "converted"
    NON_RESPONSIVE = "non_responsive"
    OPTED_OUT = "opted_out"


class EventKind(str, Enum):
    TEXT = "text"
    BUTTON = "button"
    LIST = "list"


class InteractionKind(str, Enum):
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    OPTION_SELECTED = "option_selected"
    BUTTON_CLICKED = "button_clicked"
    DOCUMENT_SENT = "document_sent"
    CALL_SCHEDULED = "call_scheduled"
    REFERRAL_ISSUED = "referral_issued"
    VIDEO_WATCHED = "video_watched"
    REGISTRATION_COMPLETED = "registration_completed"
    OPTED_OUT = "opted_out"
    FOLLOW_UP_SENT = "follow_up_sent"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# ──────────────────────────────────────────────────────────────
#  Contact — the lead being worked through the funnel
# ──────────────────────────────────────────────────────────────

class Profile(BaseModel):
    name: Optional[str] = None
    city: Optional[str] = None
    specialty: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return all(v is not None for v in (self.name, self.city, self.specialty))


class EngagementFlags(BaseModel):
    video_watched: bool = False
    document_downloaded: bool = False
    call_booked: bool = False
    registered: bool = False
    referral_link_issued: bool = False

    @property
    def is_engaged(self) -> bool:
        return self.video_watched or self.document_downloaded or self.call_booked


class ReferralInfo(BaseModel):
    code: Optional[str] = None
    link: Optional[str] = None
    referred_by: Optional[str] = None         # address of the referring contact
    earnings: float = 0.0


class FollowUpEntry(BaseModel):
    sent_at: datetime
    sequence: int                             # 1..4
    message_key: str                          # day_1, day_3, day_5, day_7


class Lifecycle(BaseModel):
    status: LeadStatus = LeadStatus.ACTIVE
    last_interaction_at: Optional[datetime] = None
    follow_up_count: int = Field(default=0, ge=0)
    next_follow_up_at: Optional[datetime] = None
    follow_up_history: list[FollowUpEntry] = []


class Contact(BaseModel):
    """A lead reachable on the chat channel, keyed by its address."""
    address: str                              # phone number as delivered by the channel
    stage: ContactStage = ContactStage.INITIAL
    profile: Profile = Field(default_factory=Profile)
    selected_track: Optional[Track] = None
    engagement: EngagementFlags = Field(default_factory=EngagementFlags)
    referral: ReferralInfo = Field(default_factory=ReferralInfo)
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)
    source: str = "whatsapp_leaflet"
    tags: list[str] = []
    notes: str = ""
    recent_message_ids: list[str] = []        # bounded window, newest last
    version: int = 0                          # optimistic concurrency counter
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return self.profile.name or "Doctor"


# ──────────────────────────────────────────────────────────────
#  Inbound event — normalized by the delivery surface
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    """
    One inbound chat event. Exactly one of text / button_id / list_id is
    populated, matching `kind`.
    """
    address: str
    message_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    kind: EventKind
    text: Optional[str] = None
    button_id: Optional[str] = None
    list_id: Optional[str] = None
    sender_name: str = ""

    @model_validator(mode="after")
    def _check_payload(self) -> InboundEvent:
        if not self.address:
            raise ValueError("address is required")
        fields = {
            EventKind.TEXT: "text",
            EventKind.BUTTON: "button_id",
            EventKind.LIST: "list_id",
        }
        expected = fields[self.kind]
        for name in fields.values():
            value = getattr(self, name)
            if name == expected:
                if not value or not value.strip():
                    raise ValueError(f"{self.kind.value} event requires {name}")
            elif value is not None:
                raise ValueError(f"{self.kind.value} event must not carry {name}")
        return self

    @property
    def payload(self) -> str:
        if self.kind == EventKind.TEXT:
            return self.text or ""
        if self.kind == EventKind.BUTTON:
            return self.button_id or ""
        return self.list_id or ""


# ──────────────────────────────────────────────────────────────
#  Outbound commands — side effects described as values
# ──────────────────────────────────────────────────────────────

class ButtonOption(BaseModel):
    id: str
    title: str


class ListRow(BaseModel):
    id: str
    title: str
    description: str = ""


class ListSection(BaseModel):
    title: str
    rows: list[ListRow]


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True)

    not_before: Optional[datetime] = None     # deferred until this instant

    def is_due(self, now: datetime) -> bool:
        return self.not_before is None or self.not_before <= now


class SendText(_Command):
    type: Literal["send_text"] = "send_text"
    to: str
    body: str


class SendButtons(_Command):
    type: Literal["send_buttons"] = "send_buttons"
    to: str
    body: str
    options: list[ButtonOption] = Field(min_length=1, max_length=3)


class SendList(_Command):
    type: Literal["send_list"] = "send_list"
    to: str
    body: str
    button_text: str
    sections: list[ListSection]


class SendDocument(_Command):
    type: Literal["send_document"] = "send_document"
    to: str
    url: str
    caption: str = ""
    filename: str = ""


class MarkRead(_Command):
    type: Literal["mark_read"] = "mark_read"
    message_id: str


OutboundCommand = Annotated[
    Union[SendText, SendButtons, SendList, SendDocument, MarkRead],
    Field(discriminator="type"),
]

command_adapter: TypeAdapter = TypeAdapter(OutboundCommand)


def command_summary(command: Any) -> str:
    """Short human-readable content of a command, for the conversation log."""
    if isinstance(command, SendDocument):
        return command.caption or command.filename or command.url
    if isinstance(command, MarkRead):
        return command.message_id
    return getattr(command, "body", "")


# ──────────────────────────────────────────────────────────────
#  Interaction record — append-only audit fact
# ──────────────────────────────────────────────────────────────

class InteractionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    contact_address: str
    kind: InteractionKind
    timestamp: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = {}


class ConversationMessage(BaseModel):
    """One entry of a contact's conversation log."""
    contact_address: str
    direction: MessageDirection
    content: str = ""
    message_type: str = "text"
    message_id: str = ""
    status: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
