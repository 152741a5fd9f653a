"""Ticket status transitions.

Both functions are pure: they return a new :class:`TicketRecord` and never
touch the one they were given, so a rejected transition leaves the caller's
copy exactly as it was. Persisting the result atomically is the job of
:class:`services.ticket_service.TicketService`.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from core.errors import InvalidTransitionError
from database.models import ReopenEvent, TicketRecord
from utils.constants import TICKET_STATUS_COMPLETED, TICKET_STATUS_PENDING
from utils.time import clamp_non_negative


def complete(ticket: TicketRecord, by: str, at: datetime) -> TicketRecord:
    if ticket.status != TICKET_STATUS_PENDING:
        raise InvalidTransitionError(f"Ticket {ticket.ticket_id} is already completed.")
    return replace(
        ticket,
        status=TICKET_STATUS_COMPLETED,
        completed_at=at,
        completed_by=by,
        updated_at=at,
    )


def reopen(ticket: TicketRecord, by: str, reason: str, at: datetime) -> TicketRecord:
    if ticket.status != TICKET_STATUS_COMPLETED:
        raise InvalidTransitionError(f"Ticket {ticket.ticket_id} is not completed, so it cannot be reopened.")
    phase_start = ticket.completed_at or ticket.created_at
    event = ReopenEvent(
        reopened_at=at,
        reopened_by=by,
        reason=reason,
        previous_status=ticket.status,
        previous_completed_at=ticket.completed_at,
        previous_completed_by=ticket.completed_by,
        phase_duration=clamp_non_negative(at - phase_start),
    )
    return replace(
        ticket,
        status=TICKET_STATUS_PENDING,
        completed_at=None,
        completed_by=None,
        reopened_history=[*ticket.reopened_history, event],
        updated_at=at,
    )
