"""Shared test fixtures for LeadFlow."""
import itertools
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any

from channels.base import ChannelAdapter, ChannelError
from config.settings import ContentConfig, FollowUpConfig, PacingConfig
from context.catalog import ContentCatalog
from context.state_machine import StageMachine
from core.orchestrator import Orchestrator
from database.store_memory import InMemoryContactStore
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import (
    Contact, ContactStage, EventKind, InboundEvent, Lifecycle, LeadStatus, Profile,
)
from rules.followup import FollowUpScheduler

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
ADDRESS = "923001234567"


class FakeClock:
    """Settable clock; call it to read the time."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class RecordingChannel(ChannelAdapter):
    """Channel that records every outbound call. Addresses or operations listed
    in `fail_for` raise a ChannelError instead."""

    channel_name = "recording"

    def __init__(self, fail_for: set[str] = None):
        super().__init__(failure_threshold=1000)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.fail_for = set(fail_for or ())
        self._ids = itertools.count(1)

    async def _record(self, operation: str, **payload) -> dict[str, Any]:
        if operation in self.fail_for or payload.get("to") in self.fail_for:
            raise ChannelError("send rejected", self.channel_name, status_code=400)
        self.calls.append((operation, payload))
        return {"status": "sent", "channel_message_id": f"wamid.test{next(self._ids)}"}

    async def _do_send_text(self, to, body):
        return await self._record("send_text", to=to, body=body)

    async def _do_send_buttons(self, to, body, options):
        return await self._record("send_buttons", to=to, body=body,
                                  button_ids=[o.id for o in options])

    async def _do_send_list(self, to, body, button_text, sections):
        return await self._record("send_list", to=to, body=body,
                                  row_ids=[r.id for s in sections for r in s.rows])

    async def _do_send_document(self, to, url, caption, filename):
        return await self._record("send_document", to=to, url=url, filename=filename)

    async def _do_mark_read(self, message_id):
        return await self._record("mark_read", message_id=message_id)

    def operations(self) -> list[str]:
        return [op for op, _ in self.calls]

    def sent_to(self, address: str) -> list[tuple[str, dict[str, Any]]]:
        return [(op, p) for op, p in self.calls if p.get("to") == address]


class EventFactory:
    """Builds inbound events with fresh message ids."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self._ids = itertools.count(1)

    def _next_id(self) -> str:
        return f"wamid.in{next(self._ids)}"

    def text(self, text: str, address: str = ADDRESS, message_id: str = None) -> InboundEvent:
        return InboundEvent(address=address, message_id=message_id or self._next_id(),
                            timestamp=self.clock(), kind=EventKind.TEXT, text=text)

    def button(self, button_id: str, address: str = ADDRESS, message_id: str = None) -> InboundEvent:
        return InboundEvent(address=address, message_id=message_id or self._next_id(),
                            timestamp=self.clock(), kind=EventKind.BUTTON, button_id=button_id)

    def list_reply(self, list_id: str, address: str = ADDRESS, message_id: str = None) -> InboundEvent:
        return InboundEvent(address=address, message_id=message_id or self._next_id(),
                            timestamp=self.clock(), kind=EventKind.LIST, list_id=list_id)


def make_contact(address: str = ADDRESS, stage: ContactStage = ContactStage.MENU,
                 name: str = "Ali Khan", city: str = "Karachi", specialty: str = "Cardiologist",
                 status: LeadStatus = LeadStatus.ACTIVE, next_follow_up_at: datetime = None,
                 follow_up_count: int = 0, created_at: datetime = T0) -> Contact:
    """A contact with a complete profile, parked at `stage`."""
    return Contact(
        address=address,
        stage=stage,
        profile=Profile(name=name, city=city, specialty=specialty),
        lifecycle=Lifecycle(
            status=status,
            last_interaction_at=created_at,
            follow_up_count=follow_up_count,
            next_follow_up_at=next_follow_up_at,
        ),
        created_at=created_at,
        updated_at=created_at,
    )


# ── Fixtures ──────────────────────────────────────────

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def events(clock) -> EventFactory:
    return EventFactory(clock)


@pytest.fixture
def contact_factory():
    return make_contact


@pytest.fixture
def catalog() -> ContentCatalog:
    return ContentCatalog(ContentConfig())


@pytest.fixture
def stage_machine(catalog) -> StageMachine:
    return StageMachine(catalog, PacingConfig(), FollowUpConfig())


@pytest.fixture
def scheduler(catalog) -> FollowUpScheduler:
    return FollowUpScheduler(catalog, FollowUpConfig())


@pytest.fixture
def store() -> InMemoryContactStore:
    return InMemoryContactStore()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def queue(clock) -> InMemoryMessageQueue:
    return InMemoryMessageQueue(clock=clock)


@pytest.fixture
def orchestrator(store, channel, stage_machine, scheduler, queue, clock) -> Orchestrator:
    return Orchestrator(
        store=store,
        channel=channel,
        state_machine=stage_machine,
        scheduler=scheduler,
        queue=queue,
        clock=clock,
    )
