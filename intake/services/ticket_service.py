from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from core.config import AppConfig
from core.errors import TicketNotFound, ValidationError
from database.models import TicketRecord
from database.repositories import EventRepository, Runner, TicketRepository
from services import lifecycle
from services.duration import DurationBreakdown, duration_breakdown
from utils.constants import PRIORITY_LEVELS
from utils.locks import KeyedLock
from utils.retry import retry_on_conflict
from utils.time import Clock, to_iso, utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class TicketServiceDeps:
    ticket_repo: TicketRepository
    event_repo: EventRepository


def _reopen_audit(ticket: TicketRecord) -> dict[str, Any]:
    entry = ticket.reopened_history[-1]
    return {
        "reason": entry.reason,
        "previous_completed_at": to_iso(entry.previous_completed_at),
        "previous_completed_by": entry.previous_completed_by,
        "dormant_seconds": entry.phase_duration.total_seconds(),
    }


class TicketService:
    """Operator-side ticket operations.

    Every read-modify-write runs under a per-ticket lock and is saved with a
    version check, so concurrent complete/reopen calls can neither interleave
    nor lose a reopen entry.
    """

    def __init__(self, config: AppConfig, deps: TicketServiceDeps, clock: Clock = utc_now) -> None:
        self.config = config
        self.deps = deps
        self.clock = clock
        self._locks = KeyedLock()

    async def get(self, ticket_id: str) -> TicketRecord:
        ticket = await self.deps.ticket_repo.get(ticket_id)
        if not ticket:
            raise TicketNotFound()
        return ticket

    async def _mutate(
        self,
        ticket_id: str,
        actor: str,
        action: str,
        at: datetime,
        change: Callable[[TicketRecord], TicketRecord],
        audit: Callable[[TicketRecord], dict[str, Any]],
    ) -> TicketRecord:
        async def attempt() -> TicketRecord:
            current = await self.get(ticket_id)
            updated = change(current)

            async def record(conn: Runner) -> None:
                await self.deps.event_repo.log(ticket_id, actor, action, audit(updated), at, conn=conn)

            return await self.deps.ticket_repo.save(updated, after=record)

        async with self._locks.hold(ticket_id):
            return await retry_on_conflict(
                attempt,
                retries=self.config.lifecycle.max_conflict_retries,
                label=f"ticket:{ticket_id}:{action}",
            )

    async def complete(self, ticket_id: str, actor: str) -> TicketRecord:
        at = self.clock()
        saved = await self._mutate(
            ticket_id,
            actor,
            "complete",
            at,
            lambda ticket: lifecycle.complete(ticket, actor, at),
            lambda ticket: {"completed_at": to_iso(at)},
        )
        LOGGER.info(
            "Ticket completed. ticket=%s by=%s",
            ticket_id,
            actor,
            extra={"ticket_id": ticket_id, "actor": actor},
        )
        return saved

    async def reopen(self, ticket_id: str, actor: str, reason: str) -> TicketRecord:
        reason = reason.strip()
        if self.config.lifecycle.require_reopen_reason and not reason:
            raise ValidationError("Reopen reason is required.")
        at = self.clock()
        saved = await self._mutate(
            ticket_id,
            actor,
            "reopen",
            at,
            lambda ticket: lifecycle.reopen(ticket, actor, reason, at),
            _reopen_audit,
        )
        LOGGER.info(
            "Ticket reopened. ticket=%s by=%s reopen_count=%s",
            ticket_id,
            actor,
            len(saved.reopened_history),
            extra={"ticket_id": ticket_id, "actor": actor},
        )
        return saved

    async def update_details(
        self,
        ticket_id: str,
        actor: str,
        *,
        category: str | None = None,
        sub_category: str | None = None,
        priority: str | None = None,
        location: str | None = None,
    ) -> TicketRecord:
        changes: dict[str, str] = {}
        if category is not None:
            if not category.strip():
                raise ValidationError("Category cannot be empty.")
            changes["category"] = category.strip()
        if sub_category is not None:
            changes["sub_category"] = sub_category.strip()
        if priority is not None:
            priority = priority.strip().lower()
            if priority not in PRIORITY_LEVELS:
                raise ValidationError(f"Invalid priority value. Use: {', '.join(PRIORITY_LEVELS)}")
            changes["priority"] = priority
        if location is not None:
            if not location.strip():
                raise ValidationError("Location cannot be empty.")
            changes["location"] = location.strip()
        if not changes:
            raise ValidationError("Nothing to update.")

        at = self.clock()
        saved = await self._mutate(
            ticket_id,
            actor,
            "update",
            at,
            lambda ticket: replace(ticket, updated_at=at, **changes),
            lambda ticket: dict(changes),
        )
        LOGGER.info("Ticket updated. ticket=%s by=%s fields=%s", ticket_id, actor, ",".join(sorted(changes)))
        return saved

    async def duration(self, ticket_id: str) -> DurationBreakdown:
        """Breakdown up to final completion, or up to now for a pending ticket."""
        ticket = await self.get(ticket_id)
        breakdown = duration_breakdown(ticket, until=self.clock())
        assert breakdown is not None
        return breakdown

    async def list_by_status(self, status: str, limit: int = 100) -> list[TicketRecord]:
        return await self.deps.ticket_repo.list_by_status(status, limit)
