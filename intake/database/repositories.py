from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

from core.errors import ConcurrentModificationError
from database.base import Database, Transaction
from database.models import (
    FreeTextLocation,
    ReopenEvent,
    StructuredLocation,
    TicketRecord,
    WizardSession,
)
from utils.constants import TICKET_EVENT_TYPES
from utils.time import parse_iso, to_iso

LOCATION_KIND_STRUCTURED = "structured"
LOCATION_KIND_FREE_TEXT = "free_text"


class Runner(Protocol):
    async def execute(self, query: str, params: Sequence[Any] | None = None) -> int: ...
    async def fetchone(self, query: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None: ...
    async def fetchall(self, query: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]: ...


def _json_load(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _location_columns(session: WizardSession) -> list[Any]:
    location = session.location
    if isinstance(location, StructuredLocation):
        return [LOCATION_KIND_STRUCTURED, location.building, location.floor, location.room, None]
    if isinstance(location, FreeTextLocation):
        return [LOCATION_KIND_FREE_TEXT, None, None, None, location.text]
    return [None, None, None, None, None]


def _row_to_location(row: dict[str, Any]) -> StructuredLocation | FreeTextLocation | None:
    kind = row.get("location_kind")
    if kind == LOCATION_KIND_STRUCTURED and row.get("building"):
        return StructuredLocation(building=row["building"], floor=row.get("floor"), room=row.get("room"))
    if kind == LOCATION_KIND_FREE_TEXT and row.get("custom_location"):
        return FreeTextLocation(text=row["custom_location"])
    return None


class SessionRepository:
    """Wizard session store with compare-and-swap on ``version``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> WizardSession:
        return WizardSession(
            session_id=row["session_id"],
            channel_id=row["channel_id"],
            initiator_id=row["initiator_id"],
            original_text=row["original_text"],
            category=row["category"],
            priority=row["priority"],
            location=_row_to_location(row),
            current_step=row["current_step"],
            awaiting_free_text=bool(row["awaiting_free_text"]),
            free_text_target=row["free_text_target"],
            attached_media=[str(item) for item in _json_load(row["attached_media_json"], [])],
            version=int(row["version"]),
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
            expires_at=parse_iso(row["expires_at"]),
        )

    async def get(self, session_id: str) -> WizardSession | None:
        row = await self.db.fetchone("SELECT * FROM wizard_sessions WHERE session_id = ?;", [session_id])
        if not row:
            return None
        return self._row_to_session(row)

    async def insert(self, session: WizardSession) -> WizardSession:
        inserted = await self.db.execute(
            """
            INSERT INTO wizard_sessions(
                session_id, channel_id, initiator_id, original_text, category, priority,
                location_kind, building, floor, room, custom_location, current_step,
                awaiting_free_text, free_text_target, attached_media_json, version,
                created_at, updated_at, expires_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
            ON CONFLICT(session_id) DO NOTHING;
            """,
            [
                session.session_id,
                session.channel_id,
                session.initiator_id,
                session.original_text,
                session.category,
                session.priority,
                *_location_columns(session),
                session.current_step,
                int(session.awaiting_free_text),
                session.free_text_target,
                _json_dump(session.attached_media),
                to_iso(session.created_at),
                to_iso(session.updated_at),
                to_iso(session.expires_at),
            ],
        )
        if inserted == 0:
            raise ConcurrentModificationError()
        return replace(session, version=0)

    async def save(self, session: WizardSession) -> WizardSession:
        updated = await self.db.execute(
            """
            UPDATE wizard_sessions
            SET category = ?, priority = ?, location_kind = ?, building = ?, floor = ?, room = ?,
                custom_location = ?, current_step = ?, awaiting_free_text = ?, free_text_target = ?,
                attached_media_json = ?, updated_at = ?, expires_at = ?, version = version + 1
            WHERE session_id = ? AND version = ?;
            """,
            [
                session.category,
                session.priority,
                *_location_columns(session),
                session.current_step,
                int(session.awaiting_free_text),
                session.free_text_target,
                _json_dump(session.attached_media),
                to_iso(session.updated_at),
                to_iso(session.expires_at),
                session.session_id,
                session.version,
            ],
        )
        if updated == 0:
            raise ConcurrentModificationError()
        return replace(session, version=session.version + 1)

    async def delete(self, session_id: str, version: int | None = None, conn: Runner | None = None) -> int:
        runner = conn or self.db
        if version is None:
            return await runner.execute("DELETE FROM wizard_sessions WHERE session_id = ?;", [session_id])
        return await runner.execute(
            "DELETE FROM wizard_sessions WHERE session_id = ? AND version = ?;",
            [session_id, version],
        )

    async def find_awaiting(self, initiator_id: str, now: datetime) -> WizardSession | None:
        row = await self.db.fetchone(
            """
            SELECT * FROM wizard_sessions
            WHERE initiator_id = ? AND awaiting_free_text = 1 AND expires_at > ?
            ORDER BY created_at DESC
            LIMIT 1;
            """,
            [initiator_id, to_iso(now)],
        )
        if not row:
            return None
        return self._row_to_session(row)

    async def purge_expired(self, now: datetime) -> int:
        return await self.db.execute(
            "DELETE FROM wizard_sessions WHERE expires_at <= ?;",
            [to_iso(now)],
        )


class TicketRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def next_ticket_id(self, conn: Runner, prefix: str, width: int) -> str:
        await conn.execute("UPDATE ticket_counters SET value = value + 1 WHERE name = 'ticket';")
        row = await conn.fetchone("SELECT value FROM ticket_counters WHERE name = 'ticket';")
        if not row:
            raise RuntimeError("ticket_counters row is missing; run migrations first")
        return f"{prefix}{int(row['value']):0{width}d}"

    async def insert(self, ticket: TicketRecord, conn: Runner | None = None) -> None:
        runner = conn or self.db
        await runner.execute(
            """
            INSERT INTO tickets(
                ticket_id, description, category, sub_category, priority, location,
                photos_json, created_by, created_at, status, completed_at, completed_by,
                source_session_id, channel_id, version, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                ticket.ticket_id,
                ticket.description,
                ticket.category,
                ticket.sub_category,
                ticket.priority,
                ticket.location,
                _json_dump(ticket.photos),
                ticket.created_by,
                to_iso(ticket.created_at),
                ticket.status,
                to_iso(ticket.completed_at),
                ticket.completed_by,
                ticket.source_session_id,
                ticket.channel_id,
                ticket.version,
                to_iso(ticket.updated_at or ticket.created_at),
            ],
        )

    async def get(self, ticket_id: str) -> TicketRecord | None:
        row = await self.db.fetchone("SELECT * FROM tickets WHERE ticket_id = ?;", [ticket_id])
        if not row:
            return None
        history_rows = await self.db.fetchall(
            "SELECT * FROM ticket_reopen_events WHERE ticket_id = ? ORDER BY seq ASC;",
            [ticket_id],
        )
        return self._row_to_ticket(row, history_rows)

    async def list_by_status(self, status: str, limit: int = 100) -> list[TicketRecord]:
        rows = await self.db.fetchall(
            """
            SELECT ticket_id FROM tickets
            WHERE status = ?
            ORDER BY created_at DESC
            LIMIT ?;
            """,
            [status, limit],
        )
        tickets: list[TicketRecord] = []
        for row in rows:
            ticket = await self.get(row["ticket_id"])
            if ticket:
                tickets.append(ticket)
        return tickets

    async def save(
        self,
        ticket: TicketRecord,
        after: Callable[[Runner], Awaitable[None]] | None = None,
    ) -> TicketRecord:
        """Write mutable fields and append new reopen events, guarded by ``version``.

        ``after`` runs inside the same transaction, so rows it writes commit or
        roll back together with the ticket.
        """
        async with self.db.transaction() as tx:
            updated = await tx.execute(
                """
                UPDATE tickets
                SET category = ?, sub_category = ?, priority = ?, location = ?, status = ?,
                    completed_at = ?, completed_by = ?, updated_at = ?, version = version + 1
                WHERE ticket_id = ? AND version = ?;
                """,
                [
                    ticket.category,
                    ticket.sub_category,
                    ticket.priority,
                    ticket.location,
                    ticket.status,
                    to_iso(ticket.completed_at),
                    ticket.completed_by,
                    to_iso(ticket.updated_at),
                    ticket.ticket_id,
                    ticket.version,
                ],
            )
            if updated == 0:
                raise ConcurrentModificationError()

            row = await tx.fetchone(
                "SELECT COUNT(*) AS total FROM ticket_reopen_events WHERE ticket_id = ?;",
                [ticket.ticket_id],
            )
            stored = int(row["total"]) if row else 0
            if stored > len(ticket.reopened_history):
                raise ConcurrentModificationError()
            for seq in range(stored, len(ticket.reopened_history)):
                await self._insert_reopen_event(tx, ticket.ticket_id, seq, ticket.reopened_history[seq])
            if after is not None:
                await after(tx)
        return replace(ticket, version=ticket.version + 1)

    @staticmethod
    async def _insert_reopen_event(tx: Transaction, ticket_id: str, seq: int, event: ReopenEvent) -> None:
        await tx.execute(
            """
            INSERT INTO ticket_reopen_events(
                ticket_id, seq, reopened_at, reopened_by, reason, previous_status,
                previous_completed_at, previous_completed_by, phase_duration_seconds
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                ticket_id,
                seq,
                to_iso(event.reopened_at),
                event.reopened_by,
                event.reason,
                event.previous_status,
                to_iso(event.previous_completed_at),
                event.previous_completed_by,
                event.phase_duration.total_seconds(),
            ],
        )

    @staticmethod
    def _row_to_reopen_event(row: dict[str, Any]) -> ReopenEvent:
        reopened_at = parse_iso(row["reopened_at"])
        assert reopened_at is not None
        return ReopenEvent(
            reopened_at=reopened_at,
            reopened_by=row["reopened_by"],
            reason=row["reason"],
            previous_status=row["previous_status"],
            previous_completed_at=parse_iso(row["previous_completed_at"]),
            previous_completed_by=row["previous_completed_by"],
            phase_duration=timedelta(seconds=float(row["phase_duration_seconds"])),
        )

    def _row_to_ticket(self, row: dict[str, Any], history_rows: list[dict[str, Any]]) -> TicketRecord:
        created_at = parse_iso(row["created_at"])
        assert created_at is not None
        return TicketRecord(
            ticket_id=row["ticket_id"],
            description=row["description"],
            category=row["category"],
            sub_category=row["sub_category"],
            priority=row["priority"],
            location=row["location"],
            photos=[str(item) for item in _json_load(row["photos_json"], [])],
            created_by=row["created_by"],
            created_at=created_at,
            status=row["status"],
            completed_at=parse_iso(row["completed_at"]),
            completed_by=row["completed_by"],
            reopened_history=[self._row_to_reopen_event(item) for item in history_rows],
            source_session_id=row["source_session_id"],
            channel_id=row["channel_id"],
            version=int(row["version"]),
            updated_at=parse_iso(row["updated_at"]),
        )


class EventRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def log(
        self,
        ticket_id: str,
        actor: str,
        event_type: str,
        payload: dict[str, Any],
        at: datetime,
        conn: Runner | None = None,
    ) -> None:
        if event_type not in TICKET_EVENT_TYPES:
            raise ValueError(f"Unknown ticket event type: {event_type}")
        runner = conn or self.db
        await runner.execute(
            """
            INSERT INTO ticket_events(id, ticket_id, actor, event_type, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            [str(uuid4()), ticket_id, actor, event_type, _json_dump(payload), to_iso(at)],
        )

    async def list_recent(self, ticket_id: str, limit: int = 25) -> list[dict[str, Any]]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM ticket_events
            WHERE ticket_id = ?
            ORDER BY created_at DESC
            LIMIT ?;
            """,
            [ticket_id, limit],
        )
        for row in rows:
            row["payload"] = _json_load(row.get("payload_json"), {})
        return rows
