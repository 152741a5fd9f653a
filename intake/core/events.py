"""Transport-agnostic messages exchanged with the messaging-channel adapter.

The adapter turns raw chat callbacks into :class:`WizardEvent` objects and
displays :class:`RenderInstruction` objects however its channel allows
(inline buttons, numbered menus, ...). Each action carries the exact event to
send back when the user activates it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from core.errors import ValidationError
from utils.constants import (
    EVENT_ATTACH_MEDIA,
    EVENT_FREE_TEXT,
    EVENT_KINDS,
    EVENT_NAVIGATE,
    EVENT_NEW_WIZARD,
    EVENT_SET_FIELD,
    NAV_BACK,
    NAV_GOTO,
    NAV_MANUAL,
    NAV_SUBMIT,
)


@dataclass(slots=True, frozen=True)
class WizardEvent:
    session_id: str
    kind: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WizardEvent:
        session_id = str(data.get("session_id") or "").strip()
        kind = str(data.get("kind") or "").strip().lower()
        payload = data.get("payload") or {}
        if not session_id:
            raise ValidationError("session_id is required.")
        if kind not in EVENT_KINDS:
            raise ValidationError(f"Unknown event kind: {kind or '<empty>'}")
        if not isinstance(payload, dict):
            raise ValidationError("payload must be an object.")
        return cls(session_id=session_id, kind=kind, payload=dict(payload))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def text(self, key: str) -> str | None:
        value = self.payload.get(key)
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None


def new_wizard(
    session_id: str,
    channel_id: str,
    initiator_id: str,
    text: str,
    media: list[str] | None = None,
    category: str | None = None,
) -> WizardEvent:
    payload: dict[str, Any] = {"channel_id": channel_id, "initiator_id": initiator_id, "text": text}
    if media:
        payload["media"] = list(media)
    if category:
        payload["category"] = category
    return WizardEvent(session_id=session_id, kind=EVENT_NEW_WIZARD, payload=payload)


def set_field(session_id: str, field_name: str, value: str) -> WizardEvent:
    return WizardEvent(session_id=session_id, kind=EVENT_SET_FIELD, payload={"field": field_name, "value": value})


def free_text(session_id: str, text: str) -> WizardEvent:
    return WizardEvent(session_id=session_id, kind=EVENT_FREE_TEXT, payload={"text": text})


def attach_media(session_id: str, reference: str) -> WizardEvent:
    return WizardEvent(session_id=session_id, kind=EVENT_ATTACH_MEDIA, payload={"reference": reference})


def _navigation(
    session_id: str,
    command: str,
    field_name: str | None = None,
    from_step: str | None = None,
    from_version: int | None = None,
) -> WizardEvent:
    # from_step / from_version pin the command to the render it came from.
    payload: dict[str, Any] = {"command": command}
    if field_name:
        payload["field"] = field_name
    if from_step:
        payload["from_step"] = from_step
    if from_version is not None:
        payload["from_version"] = from_version
    return WizardEvent(session_id=session_id, kind=EVENT_NAVIGATE, payload=payload)


def back(session_id: str, from_step: str | None = None, from_version: int | None = None) -> WizardEvent:
    return _navigation(session_id, NAV_BACK, from_step=from_step, from_version=from_version)


def goto(
    session_id: str,
    field_name: str,
    from_step: str | None = None,
    from_version: int | None = None,
) -> WizardEvent:
    return _navigation(session_id, NAV_GOTO, field_name, from_step, from_version)


def manual_entry(
    session_id: str,
    field_name: str,
    from_step: str | None = None,
    from_version: int | None = None,
) -> WizardEvent:
    return _navigation(session_id, NAV_MANUAL, field_name, from_step, from_version)


def submit(session_id: str) -> WizardEvent:
    return _navigation(session_id, NAV_SUBMIT)


@dataclass(slots=True, frozen=True)
class WizardAction:
    label: str
    event: WizardEvent


@dataclass(slots=True)
class RenderInstruction:
    session_id: str
    text: str
    actions: list[WizardAction] = field(default_factory=list)
    ticket_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "text": self.text,
            "actions": [{"label": action.label, "event": action.event.to_dict()} for action in self.actions],
            "ticket_id": self.ticket_id,
        }
