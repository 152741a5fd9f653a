from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from core.config import AppConfig, SecurityConfig
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import EventRepository, SessionRepository, TicketRepository
from services.cache import MemoryCache
from services.ticket_factory import TicketFactory
from services.wizard_service import WizardEngine
from utils.i18n import I18N
from views.wizard_view import WizardView

LOCALES_DIR = Path(__file__).resolve().parents[1] / "config" / "locales"
T0 = datetime(2024, 3, 1, 8, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass(slots=True)
class WizardStack:
    db: Database
    config: AppConfig
    clock: FakeClock
    session_repo: SessionRepository
    ticket_repo: TicketRepository
    event_repo: EventRepository
    factory: TicketFactory
    engine: WizardEngine


def unthrottled_config() -> AppConfig:
    return AppConfig(security=SecurityConfig(wizard_start_cooldown_seconds=0, wizard_start_max_per_hour=0))


async def open_database(tmp_path: Path) -> Database:
    db = Database(url=f"sqlite:///{tmp_path / 'intake.db'}")
    await db.connect()
    await run_migrations(db)
    return db


async def build_wizard_stack(tmp_path: Path, config: AppConfig | None = None) -> WizardStack:
    config = config or unthrottled_config()
    db = await open_database(tmp_path)
    clock = FakeClock()
    session_repo = SessionRepository(db)
    ticket_repo = TicketRepository(db)
    event_repo = EventRepository(db)
    factory = TicketFactory(db, config.lifecycle, session_repo, ticket_repo, event_repo, clock=clock)
    view = WizardView(I18N(LOCALES_DIR, config.i18n.default_locale), config.wizard)
    engine = WizardEngine(config, session_repo, factory, view, MemoryCache(), clock=clock)
    return WizardStack(
        db=db,
        config=config,
        clock=clock,
        session_repo=session_repo,
        ticket_repo=ticket_repo,
        event_repo=event_repo,
        factory=factory,
        engine=engine,
    )
