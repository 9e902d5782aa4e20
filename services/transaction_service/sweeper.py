"""Background sweep for payment timeouts and overdue rentals."""
import asyncio
import logging
from typing import Optional

from .engine import TransactionEngine

logger = logging.getLogger(__name__)


class LifecycleSweeper:
    """Periodically expires unpaid transactions and flags overdue rentals."""

    def __init__(self, engine: TransactionEngine, interval: int = 30):
        self.engine = engine
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the sweeper."""
        if self._running:
            logger.warning("Lifecycle sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_forever())
        logger.info(f"Lifecycle sweeper started (every {self.interval}s)")

    async def stop(self):
        """Stop the sweeper."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Lifecycle sweeper stopped")

    async def run_once(self) -> dict:
        expired = await self.engine.expire_unpaid()
        overdue = await self.engine.flag_overdue()
        return {"expired": expired, "overdue": overdue}

    async def _sweep_forever(self):
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in lifecycle sweeper: {str(e)}", exc_info=True)

            await asyncio.sleep(self.interval)
