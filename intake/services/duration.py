"""Active working time for tickets that may have been reopened.

Only time spent Pending counts. Every interval during which a ticket sat
completed before somebody reopened it is dormant and gets subtracted from the
creation-to-final-completion span. Everything here is derived from the
ticket's own fields and never blocks.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from database.models import ReopenEvent, TicketRecord
from utils.time import clamp_non_negative


@dataclass(slots=True, frozen=True)
class DurationBreakdown:
    total: timedelta
    dormant: timedelta
    active: timedelta
    reopen_count: int


def _dormant_gap(entry: ReopenEvent, created_at: datetime) -> timedelta:
    # reopened_at earlier than the completion it follows means clock skew.
    start = entry.previous_completed_at or created_at
    return clamp_non_negative(entry.reopened_at - start)


def dormant_duration(ticket: TicketRecord) -> timedelta:
    return sum(
        (_dormant_gap(entry, ticket.created_at) for entry in ticket.reopened_history),
        timedelta(0),
    )


def _end_of(ticket: TicketRecord, until: datetime | None) -> datetime | None:
    if ticket.completed_at is not None:
        return ticket.completed_at
    return until


def duration_breakdown(ticket: TicketRecord, until: datetime | None = None) -> DurationBreakdown | None:
    """Total, dormant and active time, or ``None`` while there is no end instant.

    A pending ticket has no end instant unless the caller passes ``until``
    (usually "now"), in which case the open phase is measured up to it.
    """
    end = _end_of(ticket, until)
    if end is None:
        return None
    total = clamp_non_negative(end - ticket.created_at)
    dormant = dormant_duration(ticket)
    return DurationBreakdown(
        total=total,
        dormant=dormant,
        active=clamp_non_negative(total - dormant),
        reopen_count=len(ticket.reopened_history),
    )


def active_duration(ticket: TicketRecord, until: datetime | None = None) -> timedelta | None:
    breakdown = duration_breakdown(ticket, until)
    if breakdown is None:
        return None
    return breakdown.active
