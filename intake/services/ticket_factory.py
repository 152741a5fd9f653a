from __future__ import annotations

import logging

from core.config import LifecycleConfig
from core.errors import ConcurrentModificationError, IncompleteWizardError
from database.base import Database
from database.models import TicketRecord, WizardSession
from database.repositories import EventRepository, SessionRepository, TicketRepository
from utils.constants import TICKET_STATUS_PENDING
from utils.time import Clock, utc_now

LOGGER = logging.getLogger(__name__)


def resolve_location(session: WizardSession) -> str:
    if session.location is None or not session.location.is_complete:
        raise IncompleteWizardError()
    return session.location.describe()


class TicketFactory:
    """Sole creation path for tickets: turns a complete wizard session into a pending ticket."""

    def __init__(
        self,
        database: Database,
        lifecycle_config: LifecycleConfig,
        session_repo: SessionRepository,
        ticket_repo: TicketRepository,
        event_repo: EventRepository,
        clock: Clock = utc_now,
    ) -> None:
        self.database = database
        self.lifecycle_config = lifecycle_config
        self.session_repo = session_repo
        self.ticket_repo = ticket_repo
        self.event_repo = event_repo
        self.clock = clock

    async def create_ticket_from_wizard(self, session: WizardSession, created_by: str) -> TicketRecord:
        if not session.is_complete():
            raise IncompleteWizardError()
        assert session.category is not None and session.priority is not None

        now = self.clock()
        location = resolve_location(session)
        async with self.database.transaction() as tx:
            ticket_id = await self.ticket_repo.next_ticket_id(
                tx,
                self.lifecycle_config.ticket_id_prefix,
                self.lifecycle_config.ticket_id_width,
            )
            ticket = TicketRecord(
                ticket_id=ticket_id,
                description=session.original_text,
                category=session.category,
                priority=session.priority,
                location=location,
                created_by=created_by,
                created_at=now,
                photos=list(session.attached_media),
                status=TICKET_STATUS_PENDING,
                source_session_id=session.session_id,
                channel_id=session.channel_id,
                updated_at=now,
            )
            await self.ticket_repo.insert(ticket, conn=tx)
            # The session is consumed in the same transaction; losing this race rolls the ticket back.
            deleted = await self.session_repo.delete(session.session_id, version=session.version, conn=tx)
            if deleted == 0:
                raise ConcurrentModificationError()
            await self.event_repo.log(
                ticket_id,
                created_by,
                "create",
                {
                    "session_id": session.session_id,
                    "category": ticket.category,
                    "priority": ticket.priority,
                    "location": ticket.location,
                    "photos": len(ticket.photos),
                },
                now,
                conn=tx,
            )

        LOGGER.info(
            "Ticket created. ticket=%s session=%s created_by=%s category=%s priority=%s",
            ticket.ticket_id,
            session.session_id,
            created_by,
            ticket.category,
            ticket.priority,
            extra={"ticket_id": ticket.ticket_id, "session_id": session.session_id, "actor": created_by},
        )
        return ticket
