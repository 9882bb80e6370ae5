"""
Expiry Sweeper

Background asyncio task that periodically expires consent artifacts,
stale pending requests and lapsed emergency grants.
"""

import asyncio
from typing import TYPE_CHECKING
import structlog

from phr_governance.errors import StorageUnavailableError

if TYPE_CHECKING:
    from phr_governance.service import ConsentService, SweepResult

logger = structlog.get_logger(__name__)


class ExpirySweeper:
    """
    Runs ``ConsentService.run_expiry_sweeps`` every ``interval_seconds``.

    Sweeps are blocking and take per-record locks, so each one runs in a
    worker thread. A failed sweep is logged and retried on the next tick;
    the sweeps are idempotent, so a partial run is safe to repeat.
    """

    def __init__(self, service: "ConsentService", interval_seconds: float | None = None):
        self.service = service
        self.interval = (
            interval_seconds if interval_seconds is not None
            else service.settings.sweep_interval_seconds
        )
        self._running = False
        self._task: asyncio.Task | None = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the sweeper."""
        if self._running:
            logger.warning("Expiry sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Expiry sweeper started", interval_seconds=self.interval)

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
            self._task = None

        logger.info("Expiry sweeper stopped", runs=self.runs, failures=self.failures)

    async def run_once(self) -> "SweepResult":
        result = await asyncio.to_thread(self.service.run_expiry_sweeps)
        self.runs += 1
        return result

    async def _sweep_loop(self):
        """Main sweep loop."""
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except StorageUnavailableError as e:
                self.failures += 1
                logger.error("Expiry sweep failed", error=e.message, entity_id=e.entity_id)
            except Exception as e:
                self.failures += 1
                logger.error("Expiry sweep loop error", error=str(e))

            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
