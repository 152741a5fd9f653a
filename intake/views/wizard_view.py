from __future__ import annotations

from typing import Any

from core import events
from core.config import WizardConfig
from core.events import RenderInstruction, WizardAction
from database.models import (
    StructuredLocation,
    TicketRecord,
    WizardSession,
    coarse_step,
    completed_fields,
    rooms_for_floor,
)
from utils.constants import (
    BACK_TARGETS,
    FIELD_BUILDING,
    FIELD_CATEGORY,
    FIELD_FLOOR,
    FIELD_LOCATION,
    FIELD_PRIORITY,
    FIELD_ROOM,
    GOTO_FIELDS,
    PRIORITY_LEVELS,
    STEP_CATEGORY,
    STEP_COMPLETE,
    STEP_LOCATION_BUILDING,
    STEP_LOCATION_FLOOR,
    STEP_LOCATION_ROOM,
    STEP_PRIORITY,
)
from utils.i18n import I18N


def display_name(value: str | None) -> str:
    if not value:
        return "-"
    return value[:1].upper() + value[1:]


def _pin(session: WizardSession) -> dict[str, Any]:
    # Navigation is tied to the render it appears on so a replay cannot act twice.
    return {"from_step": session.current_step, "from_version": session.version}


class WizardView:
    """Builds render instructions for a wizard session."""

    def __init__(self, i18n: I18N, wizard_config: WizardConfig) -> None:
        self.i18n = i18n
        self.wizard_config = wizard_config

    def _label(self, field_name: str) -> str:
        return self.i18n.t(f"field.{field_name}")

    def field_value(self, session: WizardSession, field_name: str) -> str:
        if field_name == FIELD_CATEGORY:
            return display_name(session.category)
        if field_name == FIELD_PRIORITY:
            return session.priority.upper() if session.priority else "-"
        if session.location is None:
            return "-"
        if isinstance(session.location, StructuredLocation) and not session.location.is_complete:
            return "-"
        return session.location.describe()

    def _location_progress(self, location: StructuredLocation) -> str:
        parts = [location.building]
        if location.floor is not None:
            parts.append(f"Floor {location.floor}")
        return " - ".join(parts)

    def render(self, session: WizardSession) -> RenderInstruction:
        t = self.i18n.t
        done = completed_fields(session)
        active = None if session.current_step == STEP_COMPLETE else coarse_step(session.current_step)
        if active in done:
            # Re-selecting an already filled field after a "change" action.
            done = [name for name in done if name != active]
        remaining = [name for name in GOTO_FIELDS if name not in done and name != active]

        lines = [t("wizard.title"), t("wizard.issue", text=session.original_text), ""]
        if done:
            lines.append(t("wizard.completed_header"))
            for name in done:
                lines.append(t("wizard.completed_item", label=self._label(name), value=self.field_value(session, name)))
            lines.append("")
        if active is not None:
            lines.append(t("wizard.active_header", label=self._label(active)))
            if session.awaiting_free_text:
                lines.append(t("wizard.awaiting_hint", label=self._label(session.free_text_target or active).lower()))
            else:
                lines.append(t("wizard.active_hint"))
            structured = session.structured_location
            if active == FIELD_LOCATION and structured is not None and not structured.is_complete:
                lines.append(t("wizard.location_progress", value=self._location_progress(structured)))
            lines.append("")
        if remaining:
            lines.append(t("wizard.remaining_header"))
            for name in remaining:
                lines.append(t("wizard.remaining_item", label=self._label(name)))
            lines.append("")
        if session.attached_media:
            lines.append(t("wizard.photos_some", count=len(session.attached_media)))
        else:
            lines.append(t("wizard.photos_none"))
        lines.append("")
        lines.append(t("wizard.status_complete") if session.is_complete() else t("wizard.status_incomplete"))

        return RenderInstruction(
            session_id=session.session_id,
            text="\n".join(lines),
            actions=self.build_actions(session, done),
        )

    def build_actions(self, session: WizardSession, done: list[str]) -> list[WizardAction]:
        sid = session.session_id
        t = self.i18n.t
        pin = _pin(session)
        if session.awaiting_free_text:
            target = session.free_text_target or FIELD_CATEGORY
            return [WizardAction(label=t("action.cancel"), event=events.goto(sid, target, **pin))]

        actions = [
            WizardAction(label=t("action.change", label=self._label(name)), event=events.goto(sid, name, **pin))
            for name in done
        ]
        actions.extend(self._step_options(session))
        if session.current_step in BACK_TARGETS:
            actions.append(
                WizardAction(label=t("action.back"), event=events.back(sid, **pin))
            )
        if session.is_complete():
            actions.append(WizardAction(label=t("action.submit"), event=events.submit(sid)))
        return actions

    def _step_options(self, session: WizardSession) -> list[WizardAction]:
        sid = session.session_id
        t = self.i18n.t
        step = session.current_step
        cfg = self.wizard_config

        if step == STEP_CATEGORY:
            options = [
                WizardAction(label=display_name(name), event=events.set_field(sid, FIELD_CATEGORY, name))
                for name in cfg.categories
            ]
            manual = events.manual_entry(sid, FIELD_CATEGORY, **_pin(session))
            options.append(WizardAction(label=t("action.manual_category"), event=manual))
            return options
        if step == STEP_PRIORITY:
            return [
                WizardAction(label=t(f"priority.{level}"), event=events.set_field(sid, FIELD_PRIORITY, level))
                for level in reversed(PRIORITY_LEVELS)
            ]
        if step == STEP_LOCATION_BUILDING:
            options = [
                WizardAction(label=t("option.building", value=name), event=events.set_field(sid, FIELD_BUILDING, name))
                for name in cfg.buildings
            ]
            manual = events.manual_entry(sid, FIELD_LOCATION, **_pin(session))
            options.append(WizardAction(label=t("action.manual_location"), event=manual))
            return options
        if step == STEP_LOCATION_FLOOR:
            return [
                WizardAction(label=t("option.floor", value=floor), event=events.set_field(sid, FIELD_FLOOR, floor))
                for floor in cfg.floors
            ]
        if step == STEP_LOCATION_ROOM:
            structured = session.structured_location
            if structured is None or structured.floor is None:
                return []
            return [
                WizardAction(label=t("option.room", value=room), event=events.set_field(sid, FIELD_ROOM, room))
                for room in rooms_for_floor(structured.floor, cfg.rooms_per_floor)
            ]
        return []

    def render_created(self, session: WizardSession, ticket: TicketRecord) -> RenderInstruction:
        text = self.i18n.t(
            "wizard.created",
            ticket_id=ticket.ticket_id,
            category=display_name(ticket.category),
            priority=ticket.priority.upper(),
            location=ticket.location,
        )
        return RenderInstruction(session_id=session.session_id, text=text, actions=[], ticket_id=ticket.ticket_id)
