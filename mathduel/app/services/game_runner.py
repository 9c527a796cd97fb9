"""
Tournament Runner - Background scheduler

Drives the phase controller without any client connected: every tournament is
ticked, then the loop sleeps until the next registered deadline, an explicit
bus trigger, or the regular tick interval, whichever comes first.
"""

import asyncio
import logging
from typing import Optional

from mathduel.app.core.database import AsyncSessionLocal
from mathduel.app.core.settings import EngineSettings, settings as default_settings
from mathduel.app.services.tournament_bus import TournamentBus, tournament_bus
from mathduel.app.services.tournament_service import TournamentService, tournament_service

logger = logging.getLogger(__name__)


class TournamentRunner:
    def __init__(
        self,
        service: Optional[TournamentService] = None,
        bus: Optional[TournamentBus] = None,
        settings: Optional[EngineSettings] = None,
        session_maker=None,
    ):
        self.service = service or tournament_service
        self.bus = bus or tournament_bus
        self.settings = settings or default_settings
        self.session_maker = session_maker or AsyncSessionLocal
        self.task: Optional[asyncio.Task] = None

    async def run_once(self):
        async with self.session_maker() as db:
            await self.service.tick(db)

    async def _loop(self):
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Keep the scheduler alive; the next tick retries from the database
                logger.exception("Tournament loop error")

            timeout = self.bus.seconds_until_next(self.settings.tick_interval_seconds)
            await self.bus.wait_for_signal(timeout=timeout)

    def start(self):
        if self.task is None or self.task.done():
            logger.info("Starting tournament runner (tick every %ss)", self.settings.tick_interval_seconds)
            self.task = asyncio.create_task(self._loop())

    async def stop(self):
        if self.task is not None:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None

    def is_running(self) -> bool:
        return self.task is not None and not self.task.done()


# Singleton instance
tournament_runner = TournamentRunner()
