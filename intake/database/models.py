from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from utils.constants import (
    FIELD_CATEGORY,
    FIELD_LOCATION,
    FIELD_PRIORITY,
    LOCATION_STEPS,
    STEP_CATEGORY,
    TICKET_STATUS_PENDING,
)


@dataclass(slots=True, frozen=True)
class StructuredLocation:
    building: str
    floor: str | None = None
    room: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.floor is not None and self.room is not None

    def describe(self) -> str:
        return f"{self.building} - Floor {self.floor} - Room {self.room}"


@dataclass(slots=True, frozen=True)
class FreeTextLocation:
    text: str

    @property
    def is_complete(self) -> bool:
        return bool(self.text)

    def describe(self) -> str:
        return self.text


Location = StructuredLocation | FreeTextLocation


def rooms_for_floor(floor: str, slots: int) -> list[str]:
    """Room numbers on a floor: ``<floor>0<n>`` for n in 1..slots, e.g. 201, 202, 203."""
    return [f"{floor}0{n}" for n in range(1, slots + 1)]


@dataclass(slots=True)
class WizardSession:
    session_id: str
    channel_id: str
    initiator_id: str
    original_text: str
    category: str | None = None
    priority: str | None = None
    location: Location | None = None
    current_step: str = STEP_CATEGORY
    awaiting_free_text: bool = False
    free_text_target: str | None = None
    attached_media: list[str] = field(default_factory=list)
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def structured_location(self) -> StructuredLocation | None:
        return self.location if isinstance(self.location, StructuredLocation) else None

    @property
    def custom_location(self) -> str | None:
        return self.location.text if isinstance(self.location, FreeTextLocation) else None

    @property
    def location_complete(self) -> bool:
        return self.location is not None and self.location.is_complete

    def is_complete(self) -> bool:
        """Completion predicate: category, priority and one complete location form."""
        return self.category is not None and self.priority is not None and self.location_complete

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


def coarse_step(step: str) -> str:
    """Collapse the location sub-steps into the single Location step."""
    if step in LOCATION_STEPS:
        return FIELD_LOCATION
    return step


def completed_fields(session: WizardSession) -> list[str]:
    done: list[str] = []
    if session.category is not None:
        done.append(FIELD_CATEGORY)
    if session.priority is not None:
        done.append(FIELD_PRIORITY)
    if session.location_complete:
        done.append(FIELD_LOCATION)
    return done


@dataclass(slots=True, frozen=True)
class ReopenEvent:
    """One Completed -> Pending transition.

    ``phase_duration`` is the wall-clock length of the phase that ended with
    this reopen, measured from ``previous_completed_at`` (or the ticket's
    creation time when absent). For a valid reopen that phase is the dormant,
    already-completed interval, not working time.
    """

    reopened_at: datetime
    reopened_by: str
    reason: str
    previous_status: str
    previous_completed_at: datetime | None
    previous_completed_by: str | None
    phase_duration: timedelta


@dataclass(slots=True)
class TicketRecord:
    ticket_id: str
    description: str
    category: str
    priority: str
    location: str
    created_by: str
    created_at: datetime
    sub_category: str | None = None
    photos: list[str] = field(default_factory=list)
    status: str = TICKET_STATUS_PENDING
    completed_at: datetime | None = None
    completed_by: str | None = None
    reopened_history: list[ReopenEvent] = field(default_factory=list)
    source_session_id: str | None = None
    channel_id: str | None = None
    version: int = 0
    updated_at: datetime | None = None
