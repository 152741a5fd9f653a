from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from types import TracebackType

from core.config import AppConfig
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import EventRepository, SessionRepository, TicketRepository
from services.cache import CacheBackend, build_cache
from services.ticket_factory import TicketFactory
from services.ticket_service import TicketService, TicketServiceDeps
from services.wizard_service import WizardEngine
from utils.i18n import I18N
from utils.time import Clock, utc_now
from views.wizard_view import WizardView

LOGGER = logging.getLogger(__name__)


class IntakeApp:
    """Wires the database, cache, repositories and services together."""

    def __init__(self, config: AppConfig, clock: Clock = utc_now) -> None:
        self.config = config
        self.clock = clock
        self.root_dir = Path(__file__).resolve().parent.parent
        self.database = Database(
            url=config.database.url,
            timeout_seconds=config.database.timeout_seconds,
            pool_min_size=config.database.pool_min_size,
            pool_max_size=config.database.pool_max_size,
        )
        self.cache: CacheBackend | None = None
        self.i18n = I18N(self.root_dir / "config" / "locales", config.i18n.default_locale)
        self._janitor: asyncio.Task[None] | None = None

        # Repositories and services are initialized during start().
        self.session_repo: SessionRepository
        self.ticket_repo: TicketRepository
        self.event_repo: EventRepository

        self.ticket_factory: TicketFactory
        self.wizard_engine: WizardEngine
        self.ticket_service: TicketService

    async def start(self, *, purge_in_background: bool = True) -> None:
        await self.database.connect()
        await run_migrations(self.database)
        self.cache = build_cache(self.config.redis)
        for locale in self.config.i18n.supported_locales:
            self.i18n.load_locale(locale)

        self.session_repo = SessionRepository(self.database)
        self.ticket_repo = TicketRepository(self.database)
        self.event_repo = EventRepository(self.database)

        self.ticket_factory = TicketFactory(
            self.database,
            self.config.lifecycle,
            self.session_repo,
            self.ticket_repo,
            self.event_repo,
            clock=self.clock,
        )
        self.wizard_engine = WizardEngine(
            self.config,
            self.session_repo,
            self.ticket_factory,
            WizardView(self.i18n, self.config.wizard),
            self.cache,
            clock=self.clock,
        )
        self.ticket_service = TicketService(
            self.config,
            TicketServiceDeps(ticket_repo=self.ticket_repo, event_repo=self.event_repo),
            clock=self.clock,
        )

        if purge_in_background:
            self._janitor = asyncio.create_task(self._purge_loop(), name="intake-session-purge")
        LOGGER.info("Intake core ready (database=%s, redis=%s)", self.database.driver, self.config.redis.enabled)

    async def _purge_loop(self) -> None:
        interval = self.config.wizard.purge_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.wizard_engine.purge_expired()
            except Exception:
                LOGGER.exception("Expired session purge failed")

    async def close(self) -> None:
        if self._janitor:
            self._janitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._janitor
            self._janitor = None
        if self.cache:
            await self.cache.close()
            self.cache = None
        await self.database.close()

    async def __aenter__(self) -> IntakeApp:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
