"""Periodic sync timer."""

import asyncio
import logging
from typing import Optional

from services.sync_service.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Owns the single repeating task that triggers timer syncs."""

    def __init__(self, orchestrator: SyncOrchestrator):
        self.orchestrator = orchestrator
        self.interval = 0
        self._task: Optional[asyncio.Task] = None
        self._sync_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def configure(self, interval: int, token: Optional[str]) -> bool:
        """
        (Re)start the timer for the given settings.

        Any existing timer is cancelled first. A new one is created only when
        the interval is positive and a token is configured. Must be called
        from within the running event loop.

        Args:
            interval: Seconds between timer syncs; 0 or less disables the timer
            token: Backend token currently configured

        Returns:
            True if a timer is now running
        """
        self.stop()

        if not token or not token.strip():
            logger.info("No token configured; periodic sync disabled")
            return False

        if interval <= 0:
            logger.info("Sync interval is 0; periodic sync disabled")
            return False

        self.interval = interval
        self._task = asyncio.get_running_loop().create_task(self._run(interval))
        logger.info(f"Periodic sync every {interval} seconds")
        return True

    def stop(self) -> None:
        """
        Cancel the timer.

        A timer sync already in flight is left to finish its pass.
        """
        if self._task is not None:
            self._task.cancel()
            logger.info("Periodic sync timer stopped")
        self._task = None
        self.interval = 0

    async def _run(self, interval: int) -> None:
        while True:
            await asyncio.sleep(interval)
            logger.info("Sync timer fired")
            self._sync_task = asyncio.ensure_future(self.orchestrator.run_sync(trigger="timer"))
            self._sync_task.add_done_callback(self._log_sync_result)
            # Cancelling the timer must not interrupt a pass between append and acknowledge
            await asyncio.wait([self._sync_task])

    @staticmethod
    def _log_sync_result(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning("Timer sync was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Timer sync failed: {error}", exc_info=error)
            return
        logger.info(f"Timer sync finished with status {task.result().status}")
