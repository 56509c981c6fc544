"""Polling worker base class."""

from __future__ import annotations

import asyncio
import logging
import signal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..reconciliation import reconcile

logger = logging.getLogger(__name__)


class PollingWorker:
    """Runs ``tick()`` every ``interval_seconds`` until SIGTERM/SIGINT."""

    name = "worker"

    def __init__(
        self,
        *,
        interval_seconds: float,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        reconcile_every: int = 10,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.session_factory = session_factory
        self.reconcile_every = reconcile_every
        self.shutdown_requested = False
        self.ticks = 0

    def _install_signal_handlers(self) -> None:
        def _handle_signal(signum: int, frame: object) -> None:
            logger.info("%s received signal %d; stopping after current tick", self.name, signum)
            self.shutdown_requested = True

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    async def tick(self) -> None:
        """Override in subclasses to run one pass."""
        raise NotImplementedError

    async def run_once(self) -> None:
        if self.reconcile_every and self.ticks % self.reconcile_every == 0:
            await reconcile(self.session_factory)
        self.ticks += 1
        await self.tick()

    async def _sleep(self) -> None:
        remaining = self.interval_seconds
        while remaining > 0 and not self.shutdown_requested:
            step = min(1.0, remaining)
            await asyncio.sleep(step)
            remaining -= step

    async def run_forever(self) -> None:
        self._install_signal_handlers()
        logger.info("%s started (interval %ss)", self.name, self.interval_seconds)

        while not self.shutdown_requested:
            try:
                await self.run_once()
            except Exception:
                logger.exception("%s tick failed", self.name)
            await self._sleep()

        logger.info("%s stopped", self.name)
