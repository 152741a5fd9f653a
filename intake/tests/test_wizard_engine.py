from __future__ import annotations

import itertools

import pytest

from core import events
from core.config import AppConfig, SecurityConfig
from core.errors import (
    ConcurrentModificationError,
    RateLimitedError,
    SessionNotFoundError,
    ValidationError,
)
from core.events import RenderInstruction, WizardEvent
from database.models import FreeTextLocation, StructuredLocation
from support import WizardStack
from utils.constants import (
    FIELD_BUILDING,
    FIELD_CATEGORY,
    FIELD_FLOOR,
    FIELD_LOCATION,
    FIELD_PRIORITY,
    FIELD_ROOM,
    NAV_GOTO,
    NAV_MANUAL,
    STEP_CATEGORY,
    STEP_COMPLETE,
    STEP_LOCATION_BUILDING,
    STEP_LOCATION_FLOOR,
    STEP_LOCATION_ROOM,
    STEP_PRIORITY,
)

SID = "chat-1:msg-42"


async def _start(
    stack: WizardStack, session_id: str = SID, initiator: str = "u1", **kwargs
) -> RenderInstruction:
    return await stack.engine.handle(
        events.new_wizard(session_id, channel_id="chat-1", initiator_id=initiator, text="Light flickering", **kwargs)
    )


async def _fill_structured(stack: WizardStack, session_id: str = SID) -> RenderInstruction:
    instruction = None
    for field_name, value in (
        (FIELD_CATEGORY, "electrical"),
        (FIELD_PRIORITY, "high"),
        (FIELD_BUILDING, "A"),
        (FIELD_FLOOR, "2"),
        (FIELD_ROOM, "201"),
    ):
        instruction = await stack.engine.handle(events.set_field(session_id, field_name, value))
    assert instruction is not None
    return instruction


def _rendered(instruction: RenderInstruction, command: str, field_name: str | None = None) -> WizardEvent:
    for action in instruction.actions:
        payload = action.event.payload
        if payload.get("command") == command and payload.get("field") == field_name:
            return action.event
    raise AssertionError(f"no {command} action for {field_name} in {instruction.actions}")


@pytest.mark.asyncio
async def test_new_wizard_starts_at_category(stack: WizardStack) -> None:
    await _start(stack)

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.current_step == STEP_CATEGORY
    assert session.original_text == "Light flickering"
    assert session.expires_at == stack.clock.now + stack.engine.ttl


@pytest.mark.asyncio
async def test_new_wizard_with_initial_category_skips_to_priority(stack: WizardStack) -> None:
    await _start(stack, category="plumbing", media=["photo-a", "photo-a", "photo-b"])

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.category == "plumbing"
    assert session.current_step == STEP_PRIORITY
    assert session.attached_media == ["photo-a", "photo-b"]


@pytest.mark.asyncio
async def test_redelivered_new_wizard_does_not_reset_session(stack: WizardStack) -> None:
    await _start(stack)
    await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "electrical"))

    await _start(stack)

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.category == "electrical"
    assert session.current_step == STEP_PRIORITY


@pytest.mark.asyncio
async def test_set_category_twice_matches_single_application(stack: WizardStack) -> None:
    await _start(stack)

    event = events.set_field(SID, FIELD_CATEGORY, "electrical")
    await stack.engine.handle(event)
    once = await stack.session_repo.get(SID)
    await stack.engine.handle(event)
    twice = await stack.session_repo.get(SID)

    assert once == twice
    assert twice is not None
    assert twice.category == "electrical"
    assert twice.current_step == STEP_PRIORITY


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("has_category", "has_priority", "location_form"),
    list(itertools.product([True, False], [True, False], ["structured", "custom", "none"])),
)
async def test_submit_succeeds_only_when_complete(
    stack: WizardStack, has_category: bool, has_priority: bool, location_form: str
) -> None:
    await _start(stack)
    engine = stack.engine

    if has_category:
        await engine.handle(events.set_field(SID, FIELD_CATEGORY, "carpentry"))
    if has_priority:
        await engine.handle(events.set_field(SID, FIELD_PRIORITY, "low"))
    if location_form == "structured":
        await engine.handle(events.set_field(SID, FIELD_BUILDING, "B"))
        await engine.handle(events.set_field(SID, FIELD_FLOOR, "3"))
        await engine.handle(events.set_field(SID, FIELD_ROOM, "302"))
    elif location_form == "custom":
        await engine.handle(events.manual_entry(SID, FIELD_LOCATION))
        await engine.handle(events.free_text(SID, "Rooftop water tank"))

    instruction = await engine.handle(events.submit(SID))
    expected = has_category and has_priority and location_form != "none"

    session = await stack.session_repo.get(SID)
    if expected:
        assert instruction.ticket_id == "TCK-001"
        assert session is None
    else:
        assert instruction.ticket_id is None
        assert session is not None
        assert await stack.ticket_repo.get("TCK-001") is None


@pytest.mark.asyncio
async def test_partial_structured_location_is_not_complete(stack: WizardStack) -> None:
    await _start(stack)
    await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "it"))
    await stack.engine.handle(events.set_field(SID, FIELD_PRIORITY, "medium"))
    await stack.engine.handle(events.set_field(SID, FIELD_BUILDING, "C"))
    await stack.engine.handle(events.set_field(SID, FIELD_FLOOR, "1"))

    instruction = await stack.engine.handle(events.submit(SID))

    assert instruction.ticket_id is None
    session = await stack.session_repo.get(SID)
    assert session is not None
    assert not session.is_complete()
    assert session.current_step == STEP_LOCATION_ROOM


@pytest.mark.asyncio
async def test_back_from_room_twice_keeps_building(stack: WizardStack) -> None:
    await _start(stack)
    engine = stack.engine
    await engine.handle(events.set_field(SID, FIELD_CATEGORY, "electrical"))
    await engine.handle(events.set_field(SID, FIELD_PRIORITY, "high"))
    await engine.handle(events.set_field(SID, FIELD_BUILDING, "A"))
    await engine.handle(events.set_field(SID, FIELD_FLOOR, "2"))

    await engine.handle(events.back(SID, from_step=STEP_LOCATION_ROOM))
    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.current_step == STEP_LOCATION_FLOOR
    assert session.location == StructuredLocation(building="A", floor="2")

    await engine.handle(events.back(SID, from_step=STEP_LOCATION_FLOOR))
    # Redelivery of the first back is pinned to the room step and does nothing now.
    await engine.handle(events.back(SID, from_step=STEP_LOCATION_ROOM))

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.current_step == STEP_LOCATION_BUILDING
    assert session.structured_location is not None
    assert session.structured_location.building == "A"
    assert session.category == "electrical"
    assert session.priority == "high"


@pytest.mark.asyncio
async def test_redelivered_manual_entry_after_capture_is_ignored(stack: WizardStack) -> None:
    first = await _start(stack)
    manual = _rendered(first, NAV_MANUAL, FIELD_CATEGORY)

    await stack.engine.handle(manual)
    await stack.engine.handle(events.free_text(SID, "Pest control"))
    await stack.engine.handle(events.set_field(SID, FIELD_PRIORITY, "high"))
    await stack.engine.handle(manual)
    await stack.engine.handle(events.free_text(SID, "unrelated chat"))

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.category == "Pest control"
    assert session.priority == "high"
    assert session.awaiting_free_text is False
    assert session.current_step == STEP_LOCATION_BUILDING
    assert await stack.engine.find_awaiting_session("u1") is None


@pytest.mark.asyncio
async def test_redelivered_goto_after_reselection_is_ignored(stack: WizardStack) -> None:
    await _start(stack)
    rendered = await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "electrical"))
    change = _rendered(rendered, NAV_GOTO, FIELD_CATEGORY)

    await stack.engine.handle(change)
    await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "plumbing"))
    await stack.engine.handle(change)

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.category == "plumbing"
    assert session.current_step == STEP_PRIORITY


@pytest.mark.asyncio
async def test_change_replayed_on_complete_wizard_keeps_it_complete(stack: WizardStack) -> None:
    await _start(stack)
    done = await _fill_structured(stack)
    change = _rendered(done, NAV_GOTO, FIELD_PRIORITY)

    await stack.engine.handle(change)
    await stack.engine.handle(events.set_field(SID, FIELD_PRIORITY, "low"))
    # Same step as when the action was rendered, but the session has moved on since.
    await stack.engine.handle(change)

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.priority == "low"
    assert session.current_step == STEP_COMPLETE


@pytest.mark.asyncio
async def test_back_does_not_clear_category_or_priority(stack: WizardStack) -> None:
    await _start(stack)
    await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "plumbing"))
    await stack.engine.handle(events.set_field(SID, FIELD_PRIORITY, "low"))

    await stack.engine.handle(events.back(SID))
    await stack.engine.handle(events.back(SID))
    await stack.engine.handle(events.back(SID))

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.current_step == STEP_CATEGORY
    assert session.category == "plumbing"
    assert session.priority == "low"


@pytest.mark.asyncio
async def test_changing_building_clears_floor_and_room(stack: WizardStack) -> None:
    await _start(stack)
    await _fill_structured(stack)

    await stack.engine.handle(events.goto(SID, FIELD_LOCATION))
    await stack.engine.handle(events.set_field(SID, FIELD_BUILDING, "C"))

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.location == StructuredLocation(building="C")
    assert session.current_step == STEP_LOCATION_FLOOR
    assert not session.is_complete()


@pytest.mark.asyncio
async def test_floor_before_building_is_rejected(stack: WizardStack) -> None:
    await _start(stack)
    before = await stack.session_repo.get(SID)

    with pytest.raises(ValidationError):
        await stack.engine.handle(events.set_field(SID, FIELD_FLOOR, "2"))
    with pytest.raises(ValidationError):
        await stack.engine.handle(events.set_field(SID, FIELD_PRIORITY, "urgent"))
    with pytest.raises(ValidationError):
        await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "gardening"))

    assert await stack.session_repo.get(SID) == before


@pytest.mark.asyncio
async def test_room_must_belong_to_chosen_floor(stack: WizardStack) -> None:
    await _start(stack)
    await stack.engine.handle(events.set_field(SID, FIELD_BUILDING, "A"))
    await stack.engine.handle(events.set_field(SID, FIELD_FLOOR, "2"))

    with pytest.raises(ValidationError):
        await stack.engine.handle(events.set_field(SID, FIELD_ROOM, "101"))

    await stack.engine.handle(events.set_field(SID, FIELD_ROOM, "203"))
    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.location == StructuredLocation(building="A", floor="2", room="203")


@pytest.mark.asyncio
async def test_stray_free_text_does_not_alter_fields(stack: WizardStack) -> None:
    await _start(stack)
    await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "electrical"))
    before = await stack.session_repo.get(SID)

    await stack.engine.handle(events.free_text(SID, "Actually it is plumbing"))

    assert await stack.session_repo.get(SID) == before


@pytest.mark.asyncio
async def test_free_text_capture_is_single_shot(stack: WizardStack) -> None:
    await _start(stack)

    await stack.engine.handle(events.manual_entry(SID, FIELD_CATEGORY))
    awaiting = await stack.engine.find_awaiting_session("u1")
    assert awaiting is not None
    assert awaiting.session_id == SID

    await stack.engine.handle(events.free_text(SID, "Pest control"))
    await stack.engine.handle(events.free_text(SID, "Something else"))

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.category == "Pest control"
    assert session.awaiting_free_text is False
    assert session.free_text_target is None
    assert session.current_step == STEP_PRIORITY
    assert await stack.engine.find_awaiting_session("u1") is None


@pytest.mark.asyncio
async def test_custom_location_and_structured_location_replace_each_other(stack: WizardStack) -> None:
    await _start(stack)
    await _fill_structured(stack)

    await stack.engine.handle(events.manual_entry(SID, FIELD_LOCATION))
    await stack.engine.handle(events.free_text(SID, "Parking lot, level -1"))
    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.location == FreeTextLocation(text="Parking lot, level -1")
    assert session.structured_location is None
    assert session.current_step == STEP_COMPLETE

    await stack.engine.handle(events.set_field(SID, FIELD_BUILDING, "B"))
    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.location == StructuredLocation(building="B")
    assert session.custom_location is None


@pytest.mark.asyncio
async def test_goto_reopens_a_field_after_completion(stack: WizardStack) -> None:
    await _start(stack)
    await _fill_structured(stack)

    await stack.engine.handle(events.goto(SID, FIELD_PRIORITY))
    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.current_step == STEP_PRIORITY
    assert session.is_complete()

    await stack.engine.handle(events.set_field(SID, FIELD_PRIORITY, "low"))
    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.priority == "low"
    assert session.current_step == STEP_COMPLETE


@pytest.mark.asyncio
async def test_media_is_appended_without_moving_the_cursor(stack: WizardStack) -> None:
    await _start(stack)
    await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "housekeeping"))

    await stack.engine.handle(events.attach_media(SID, "file-1"))
    await stack.engine.handle(events.attach_media(SID, "file-1"))
    instruction = await stack.engine.handle(events.attach_media(SID, "file-2"))

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.attached_media == ["file-1", "file-2"]
    assert session.current_step == STEP_PRIORITY
    assert "2 attached" in instruction.text


@pytest.mark.asyncio
async def test_unknown_session_is_not_created_implicitly(stack: WizardStack) -> None:

    with pytest.raises(SessionNotFoundError):
        await stack.engine.handle(events.set_field("ghost", FIELD_CATEGORY, "electrical"))
    with pytest.raises(SessionNotFoundError):
        await stack.engine.handle(events.attach_media("ghost", "file-1"))

    assert await stack.session_repo.get("ghost") is None


@pytest.mark.asyncio
async def test_submit_creates_ticket_and_consumes_session(stack: WizardStack) -> None:
    await _start(stack, media=["photo-1"])
    await _fill_structured(stack)

    instruction = await stack.engine.handle(events.submit(SID))

    assert instruction.ticket_id == "TCK-001"
    assert instruction.actions == []
    ticket = await stack.ticket_repo.get("TCK-001")
    assert ticket is not None
    assert ticket.description == "Light flickering"
    assert ticket.category == "electrical"
    assert ticket.priority == "high"
    assert ticket.location == "A - Floor 2 - Room 201"
    assert ticket.photos == ["photo-1"]
    assert ticket.status == "pending"
    assert ticket.created_by == "u1"
    assert ticket.created_at == stack.clock.now
    assert ticket.source_session_id == SID

    assert await stack.session_repo.get(SID) is None
    with pytest.raises(SessionNotFoundError):
        await stack.engine.handle(events.submit(SID))

    logged = await stack.event_repo.list_recent("TCK-001")
    assert [row["event_type"] for row in logged] == ["create"]

    await _start(stack, session_id="chat-1:msg-43")
    await _fill_structured(stack, session_id="chat-1:msg-43")
    second = await stack.engine.handle(events.submit("chat-1:msg-43"))
    assert second.ticket_id == "TCK-002"


@pytest.mark.asyncio
async def test_expired_session_is_discarded(stack: WizardStack) -> None:
    await _start(stack)
    await _start(stack, session_id="other", initiator="u2")

    stack.clock.advance(seconds=stack.config.wizard.session_ttl_seconds + 1)

    with pytest.raises(SessionNotFoundError):
        await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "electrical"))
    assert await stack.session_repo.get(SID) is None
    assert await stack.engine.purge_expired() == 1
    assert await stack.session_repo.get("other") is None


@pytest.mark.asyncio
async def test_activity_extends_expiry(stack: WizardStack) -> None:
    await _start(stack)
    ttl = stack.config.wizard.session_ttl_seconds

    stack.clock.advance(seconds=ttl - 10)
    await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "electrical"))
    stack.clock.advance(seconds=ttl - 10)
    await stack.engine.handle(events.set_field(SID, FIELD_PRIORITY, "medium"))

    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.priority == "medium"


@pytest.mark.asyncio
async def test_new_wizard_is_throttled_per_initiator(stack_factory) -> None:
    config = AppConfig(security=SecurityConfig(wizard_start_cooldown_seconds=30, wizard_start_max_per_hour=10))
    stack = await stack_factory(config)
    await _start(stack)

    with pytest.raises(RateLimitedError):
        await _start(stack, session_id="second")
    await _start(stack, session_id="third", initiator="u2")
    # Redelivery of an existing start is not a new request.
    await _start(stack)

    assert await stack.session_repo.get("second") is None
    assert await stack.session_repo.get("third") is not None


@pytest.mark.asyncio
async def test_conflicting_write_is_retried(stack: WizardStack) -> None:
    await _start(stack)
    original_save = stack.session_repo.save
    calls = 0

    async def flaky_save(session):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise ConcurrentModificationError()
        return await original_save(session)

    stack.session_repo.save = flaky_save  # type: ignore[method-assign]
    await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "electrical"))

    assert calls == 2
    session = await stack.session_repo.get(SID)
    assert session is not None
    assert session.category == "electrical"
    assert session.version == 1


@pytest.mark.asyncio
async def test_render_offers_room_choices_for_the_floor(stack: WizardStack) -> None:
    await _start(stack)
    await stack.engine.handle(events.set_field(SID, FIELD_CATEGORY, "electrical"))
    await stack.engine.handle(events.set_field(SID, FIELD_PRIORITY, "high"))
    await stack.engine.handle(events.set_field(SID, FIELD_BUILDING, "A"))
    instruction = await stack.engine.handle(events.set_field(SID, FIELD_FLOOR, "3"))

    room_values = [
        action.event.payload["value"]
        for action in instruction.actions
        if action.event.payload.get("field") == FIELD_ROOM
    ]
    assert room_values == ["301", "302", "303"]
    assert instruction.actions[-1].event == events.back(SID, from_step=STEP_LOCATION_ROOM, from_version=4)
    assert "A - Floor 3" in instruction.text
    assert all(action.event.payload.get("command") != "submit" for action in instruction.actions)

    done = await stack.engine.handle(events.set_field(SID, FIELD_ROOM, "301"))
    assert done.actions[-1].event == events.submit(SID)
    assert "A - Floor 3 - Room 301" in done.text
