from __future__ import annotations

import logging
from dataclasses import replace
from datetime import timedelta

from core.config import AppConfig
from core.errors import RateLimitedError, SessionNotFoundError, ValidationError
from core.events import RenderInstruction, WizardEvent
from database.models import (
    FreeTextLocation,
    StructuredLocation,
    WizardSession,
    rooms_for_floor,
)
from database.repositories import SessionRepository
from services.cache import CacheBackend
from services.ticket_factory import TicketFactory
from utils.constants import (
    BACK_TARGETS,
    EVENT_ATTACH_MEDIA,
    EVENT_FREE_TEXT,
    EVENT_NAVIGATE,
    EVENT_NEW_WIZARD,
    EVENT_SET_FIELD,
    FIELD_BUILDING,
    FIELD_CATEGORY,
    FIELD_ENTRY_STEPS,
    FIELD_FLOOR,
    FIELD_LOCATION,
    FIELD_PRIORITY,
    FIELD_ROOM,
    FREE_TEXT_FIELDS,
    GOTO_FIELDS,
    NAV_BACK,
    NAV_COMMANDS,
    NAV_GOTO,
    NAV_MANUAL,
    NAV_SUBMIT,
    PRIORITY_LEVELS,
    SETTABLE_FIELDS,
    STEP_CATEGORY,
    STEP_COMPLETE,
    STEP_LOCATION_BUILDING,
    STEP_LOCATION_FLOOR,
    STEP_LOCATION_ROOM,
    STEP_PRIORITY,
)
from utils.locks import KeyedLock
from utils.rate_limit import DistributedRateLimiter
from utils.retry import retry_on_conflict
from utils.time import Clock, utc_now
from views.wizard_view import WizardView

LOGGER = logging.getLogger(__name__)

# Step a set_field event lands on; a repeat of the stored value from any other step is a redelivery.
_FIELD_STEPS = {
    FIELD_CATEGORY: STEP_CATEGORY,
    FIELD_PRIORITY: STEP_PRIORITY,
    FIELD_BUILDING: STEP_LOCATION_BUILDING,
    FIELD_FLOOR: STEP_LOCATION_FLOOR,
    FIELD_ROOM: STEP_LOCATION_ROOM,
}


def next_step(session: WizardSession) -> str:
    """First incomplete field in wizard order, or ``complete``."""
    if session.category is None:
        return STEP_CATEGORY
    if session.priority is None:
        return STEP_PRIORITY
    if session.location_complete:
        return STEP_COMPLETE
    structured = session.structured_location
    if structured is None:
        return STEP_LOCATION_BUILDING
    if structured.floor is None:
        return STEP_LOCATION_FLOOR
    return STEP_LOCATION_ROOM


def _rendered_from_older_state(session: WizardSession, event: WizardEvent) -> bool:
    """True when a pinned navigation event no longer matches the session it was rendered from."""
    from_step = event.text("from_step")
    if from_step is not None and from_step != session.current_step:
        return True
    from_version = event.text("from_version")
    return from_version is not None and from_version != str(session.version)


def _stored_value(session: WizardSession, field_name: str) -> str | None:
    if field_name == FIELD_CATEGORY:
        return session.category
    if field_name == FIELD_PRIORITY:
        return session.priority
    structured = session.structured_location
    if structured is None:
        return None
    return {
        FIELD_BUILDING: structured.building,
        FIELD_FLOOR: structured.floor,
        FIELD_ROOM: structured.room,
    }[field_name]


class WizardEngine:
    """Intake state machine.

    Each event is applied under a per-session lock; the store's version check
    catches writers in other processes, in which case the event is re-applied
    to the fresh session a bounded number of times.
    """

    def __init__(
        self,
        config: AppConfig,
        session_repo: SessionRepository,
        ticket_factory: TicketFactory,
        view: WizardView,
        cache: CacheBackend,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self.session_repo = session_repo
        self.ticket_factory = ticket_factory
        self.view = view
        self.rate_limiter = DistributedRateLimiter(cache, namespace="wizard")
        self.clock = clock
        self._locks = KeyedLock()

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.config.wizard.session_ttl_seconds)

    async def handle(self, event: WizardEvent) -> RenderInstruction:
        async with self._locks.hold(event.session_id):
            return await retry_on_conflict(
                lambda: self._apply(event),
                retries=self.config.lifecycle.max_conflict_retries,
                label=f"session:{event.session_id}",
            )

    async def _apply(self, event: WizardEvent) -> RenderInstruction:
        if event.kind == EVENT_NEW_WIZARD:
            return await self._start(event)

        session = await self._load(event.session_id)
        if event.kind == EVENT_NAVIGATE and event.text("command") == NAV_SUBMIT:
            return await self._submit(session)

        updated = self.transition(session, event)
        if updated is None:
            return self.view.render(session)
        saved = await self.session_repo.save(self._touch(updated))
        LOGGER.debug(
            "Wizard transition applied. session=%s kind=%s step=%s version=%s",
            saved.session_id,
            event.kind,
            saved.current_step,
            saved.version,
        )
        return self.view.render(saved)

    async def _load(self, session_id: str) -> WizardSession:
        session = await self.session_repo.get(session_id)
        if session is None:
            raise SessionNotFoundError()
        if session.is_expired(self.clock()):
            await self.session_repo.delete(session_id)
            LOGGER.info("Expired wizard session discarded. session=%s", session_id)
            raise SessionNotFoundError()
        return session

    def _touch(self, session: WizardSession) -> WizardSession:
        now = self.clock()
        return replace(session, updated_at=now, expires_at=now + self.ttl)

    async def _check_start_limits(self, initiator_id: str) -> None:
        # A zero cooldown or hourly cap switches that check off.
        security = self.config.security
        if security.wizard_start_cooldown_seconds > 0:
            cooldown_hit = await self.rate_limiter.hit(
                f"cooldown:{initiator_id}",
                limit=1,
                window_seconds=security.wizard_start_cooldown_seconds,
            )
            if not cooldown_hit.allowed:
                raise RateLimitedError(
                    f"Please wait {security.wizard_start_cooldown_seconds}s before starting another request."
                )
        if security.wizard_start_max_per_hour <= 0:
            return
        hour_hit = await self.rate_limiter.hit(
            f"hourly:{initiator_id}",
            limit=security.wizard_start_max_per_hour,
            window_seconds=3600,
        )
        if not hour_hit.allowed:
            raise RateLimitedError("Hourly request limit reached.")

    async def _start(self, event: WizardEvent) -> RenderInstruction:
        existing = await self.session_repo.get(event.session_id)
        if existing is not None:
            if not existing.is_expired(self.clock()):
                # Redelivered start event.
                return self.view.render(existing)
            await self.session_repo.delete(existing.session_id)

        channel_id = event.text("channel_id")
        initiator_id = event.text("initiator_id")
        text = event.text("text")
        if not channel_id or not initiator_id:
            raise ValidationError("channel_id and initiator_id are required.")
        if not text:
            raise ValidationError("Please describe the issue.")
        category = event.text("category")
        if category is not None:
            category = self._validate_category(category)
        media = event.payload.get("media") or []
        if not isinstance(media, list):
            raise ValidationError("media must be a list of references.")

        await self._check_start_limits(initiator_id)

        now = self.clock()
        attached: list[str] = []
        for item in media:
            reference = str(item).strip()
            if reference and reference not in attached:
                attached.append(reference)
        session = WizardSession(
            session_id=event.session_id,
            channel_id=channel_id,
            initiator_id=initiator_id,
            original_text=text,
            category=category,
            attached_media=attached,
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
        )
        session.current_step = next_step(session)
        saved = await self.session_repo.insert(session)
        LOGGER.info(
            "Wizard started. session=%s channel=%s initiator=%s photos=%s",
            saved.session_id,
            saved.channel_id,
            saved.initiator_id,
            len(saved.attached_media),
            extra={"session_id": saved.session_id, "actor": saved.initiator_id},
        )
        return self.view.render(saved)

    async def _submit(self, session: WizardSession) -> RenderInstruction:
        if not session.is_complete():
            LOGGER.debug("Submit ignored for incomplete wizard. session=%s", session.session_id)
            return self.view.render(session)
        ticket = await self.ticket_factory.create_ticket_from_wizard(session, created_by=session.initiator_id)
        return self.view.render_created(session, ticket)

    def transition(self, session: WizardSession, event: WizardEvent) -> WizardSession | None:
        """Apply one non-submit event; ``None`` means the event changes nothing."""
        if event.kind == EVENT_SET_FIELD:
            return self._set_field(session, event)
        if event.kind == EVENT_FREE_TEXT:
            return self._free_text(session, event)
        if event.kind == EVENT_ATTACH_MEDIA:
            return self._attach_media(session, event)
        if event.kind == EVENT_NAVIGATE:
            return self._navigate(session, event)
        raise ValidationError(f"Unsupported event kind: {event.kind}")

    def _validate_category(self, value: str) -> str:
        allowed = self.config.wizard.categories
        if allowed and value not in allowed:
            raise ValidationError(f"Unknown category: {value}")
        return value

    def _set_field(self, session: WizardSession, event: WizardEvent) -> WizardSession | None:
        field_name = event.text("field")
        value = event.text("value")
        if field_name not in SETTABLE_FIELDS:
            raise ValidationError(f"Unknown field: {field_name}")
        if value is None:
            raise ValidationError(f"A value is required for {field_name}.")
        if field_name == FIELD_PRIORITY:
            value = value.lower()

        if (
            not session.awaiting_free_text
            and _stored_value(session, field_name) == value
            and session.current_step != _FIELD_STEPS[field_name]
        ):
            return None

        wizard = self.config.wizard
        structured = session.structured_location
        if field_name == FIELD_CATEGORY:
            updated = replace(session, category=self._validate_category(value))
        elif field_name == FIELD_PRIORITY:
            if value not in PRIORITY_LEVELS:
                raise ValidationError(f"Invalid priority value. Use: {', '.join(PRIORITY_LEVELS)}")
            updated = replace(session, priority=value)
        elif field_name == FIELD_BUILDING:
            if value not in wizard.buildings:
                raise ValidationError(f"Unknown building: {value}")
            if structured is not None and structured.building == value:
                location = structured
            else:
                location = StructuredLocation(building=value)
            updated = replace(session, location=location)
        elif field_name == FIELD_FLOOR:
            if structured is None:
                raise ValidationError("Choose a building before the floor.")
            if value not in wizard.floors:
                raise ValidationError(f"Unknown floor: {value}")
            if structured.floor != value:
                structured = StructuredLocation(building=structured.building, floor=value)
            updated = replace(session, location=structured)
        else:
            if structured is None or structured.floor is None:
                raise ValidationError("Choose a building and floor before the room.")
            if value not in rooms_for_floor(structured.floor, wizard.rooms_per_floor):
                raise ValidationError(f"Unknown room on floor {structured.floor}: {value}")
            updated = replace(session, location=replace(structured, room=value))

        updated.awaiting_free_text = False
        updated.free_text_target = None
        updated.current_step = self._step_after(updated, field_name)
        return updated

    @staticmethod
    def _step_after(session: WizardSession, field_name: str) -> str:
        # Location is picked depth first: building, then floor, then room.
        if field_name == FIELD_BUILDING:
            return STEP_LOCATION_FLOOR
        if field_name == FIELD_FLOOR:
            return STEP_LOCATION_ROOM
        return next_step(session)

    def _free_text(self, session: WizardSession, event: WizardEvent) -> WizardSession | None:
        if not session.awaiting_free_text:
            LOGGER.debug("Stray free text ignored. session=%s", session.session_id)
            return None
        text = event.text("text")
        if text is None:
            raise ValidationError("Please type a value.")
        if session.free_text_target == FIELD_LOCATION:
            updated = replace(session, location=FreeTextLocation(text=text))
        else:
            updated = replace(session, category=text)
        updated.awaiting_free_text = False
        updated.free_text_target = None
        updated.current_step = next_step(updated)
        return updated

    def _attach_media(self, session: WizardSession, event: WizardEvent) -> WizardSession | None:
        reference = event.text("reference")
        if reference is None:
            raise ValidationError("A media reference is required.")
        if reference in session.attached_media:
            return None
        return replace(session, attached_media=[*session.attached_media, reference])

    def _navigate(self, session: WizardSession, event: WizardEvent) -> WizardSession | None:
        command = event.text("command")
        if command not in NAV_COMMANDS:
            raise ValidationError(f"Unknown navigation command: {command}")

        if command != NAV_SUBMIT and _rendered_from_older_state(session, event):
            LOGGER.debug("Stale navigation ignored. session=%s command=%s", session.session_id, command)
            return None

        if command == NAV_BACK:
            target = BACK_TARGETS.get(session.current_step)
            if target is None:
                return None
            return replace(session, current_step=target, awaiting_free_text=False, free_text_target=None)

        field_name = event.text("field")
        if command == NAV_GOTO:
            if field_name not in GOTO_FIELDS:
                raise ValidationError(f"Cannot go to field: {field_name}")
            step = FIELD_ENTRY_STEPS[field_name]
            if session.current_step == step and not session.awaiting_free_text:
                return None
            return replace(session, current_step=step, awaiting_free_text=False, free_text_target=None)

        if command == NAV_MANUAL:
            if field_name not in FREE_TEXT_FIELDS:
                raise ValidationError(f"Manual entry is not available for: {field_name}")
            step = FIELD_ENTRY_STEPS[field_name]
            if session.awaiting_free_text and session.free_text_target == field_name:
                return None
            return replace(session, current_step=step, awaiting_free_text=True, free_text_target=field_name)

        raise ValidationError("Submit is handled separately.")

    async def find_awaiting_session(self, initiator_id: str) -> WizardSession | None:
        """Newest live session of ``initiator_id`` that expects typed input."""
        return await self.session_repo.find_awaiting(initiator_id, self.clock())

    async def purge_expired(self) -> int:
        removed = await self.session_repo.purge_expired(self.clock())
        if removed:
            LOGGER.info("Purged expired wizard sessions. count=%s", removed)
        return removed
