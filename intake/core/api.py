from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from core.app import IntakeApp
from core.errors import install_error_handlers
from core.events import WizardEvent
from database.models import TicketRecord
from utils.constants import TICKET_STATUS_PENDING, TICKET_STATUSES
from utils.time import format_duration, to_iso


def _auth(x_api_key: str | None, expected: str) -> None:
    if not expected:
        return
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


class _Body(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")


class WizardEventBody(_Body):
    session_id: str = Field(min_length=1)
    kind: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class ActorBody(_Body):
    actor: str = Field(min_length=1, max_length=128)


class ReopenBody(ActorBody):
    reason: str = ""


class UpdateTicketBody(ActorBody):
    category: str | None = None
    sub_category: str | None = None
    priority: str | None = None
    location: str | None = None


def serialize_ticket(ticket: TicketRecord) -> dict[str, Any]:
    return {
        "ticket_id": ticket.ticket_id,
        "description": ticket.description,
        "category": ticket.category,
        "sub_category": ticket.sub_category,
        "priority": ticket.priority,
        "location": ticket.location,
        "photos": ticket.photos,
        "created_by": ticket.created_by,
        "created_at": to_iso(ticket.created_at),
        "status": ticket.status,
        "completed_at": to_iso(ticket.completed_at),
        "completed_by": ticket.completed_by,
        "reopened_history": [
            {
                "reopened_at": to_iso(entry.reopened_at),
                "reopened_by": entry.reopened_by,
                "reason": entry.reason,
                "previous_status": entry.previous_status,
                "previous_completed_at": to_iso(entry.previous_completed_at),
                "previous_completed_by": entry.previous_completed_by,
                "dormant_seconds": entry.phase_duration.total_seconds(),
            }
            for entry in ticket.reopened_history
        ],
        "version": ticket.version,
    }


def create_api_app(intake: IntakeApp) -> FastAPI:
    app = FastAPI(title="Maintenance Intake API", version="1.0.0")
    install_error_handlers(app)
    api_key = intake.config.fastapi.api_key

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/wizard/events")
    async def wizard_event(
        body: WizardEventBody,
        x_api_key: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        instruction = await intake.wizard_engine.handle(WizardEvent.from_dict(body.model_dump()))
        return instruction.to_dict()

    @app.get("/wizard/awaiting/{initiator_id}")
    async def awaiting_session(initiator_id: str, x_api_key: str | None = Header(default=None)) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        session = await intake.wizard_engine.find_awaiting_session(initiator_id)
        return {"session_id": session.session_id if session else None}

    @app.get("/tickets")
    async def list_tickets(
        status: str = TICKET_STATUS_PENDING,
        limit: int = 100,
        x_api_key: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        if status not in TICKET_STATUSES:
            raise HTTPException(status_code=422, detail=f"status must be one of: {', '.join(TICKET_STATUSES)}")
        rows = await intake.ticket_service.list_by_status(status, limit=min(max(limit, 1), 500))
        return {"items": [serialize_ticket(row) for row in rows]}

    @app.get("/tickets/{ticket_id}")
    async def get_ticket(ticket_id: str, x_api_key: str | None = Header(default=None)) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        return serialize_ticket(await intake.ticket_service.get(ticket_id))

    @app.patch("/tickets/{ticket_id}")
    async def update_ticket(
        ticket_id: str,
        body: UpdateTicketBody,
        x_api_key: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        ticket = await intake.ticket_service.update_details(
            ticket_id,
            body.actor,
            category=body.category,
            sub_category=body.sub_category,
            priority=body.priority,
            location=body.location,
        )
        return serialize_ticket(ticket)

    @app.post("/tickets/{ticket_id}/complete")
    async def complete_ticket(
        ticket_id: str,
        body: ActorBody,
        x_api_key: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        return serialize_ticket(await intake.ticket_service.complete(ticket_id, body.actor))

    @app.post("/tickets/{ticket_id}/reopen")
    async def reopen_ticket(
        ticket_id: str,
        body: ReopenBody,
        x_api_key: str | None = Header(default=None),
    ) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        return serialize_ticket(await intake.ticket_service.reopen(ticket_id, body.actor, body.reason))

    @app.get("/tickets/{ticket_id}/duration")
    async def ticket_duration(ticket_id: str, x_api_key: str | None = Header(default=None)) -> dict[str, Any]:
        _auth(x_api_key, api_key)
        breakdown = await intake.ticket_service.duration(ticket_id)
        return {
            "ticket_id": ticket_id,
            "total_seconds": breakdown.total.total_seconds(),
            "dormant_seconds": breakdown.dormant.total_seconds(),
            "active_seconds": breakdown.active.total_seconds(),
            "active": format_duration(breakdown.active),
            "reopen_count": breakdown.reopen_count,
        }

    return app
