"""Background sweep of expired session records.

Each store owns exactly one reconciler. Store operations call ``arm()``
before touching storage; the first call schedules the periodic sweep on the
running event loop and every later call is a no-op. Reads already filter
expired rows, so the sweep only bounds table growth.
"""

from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from lockgate.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60 * 60


class SweepTarget(Protocol):
    async def delete_expired_sessions(self) -> int: ...


class ExpirationReconciler:
    """Periodic, arm-once deletion of expired session records."""

    def __init__(
        self,
        store: SweepTarget,
        *,
        interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self.store = store
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def armed(self) -> bool:
        return self._task is not None

    def arm(self) -> bool:
        """Schedule the sweep loop if it is not already scheduled.

        Returns True only for the call that actually scheduled it. There is no
        await between the check and the assignment, so concurrent first
        callers on the same loop cannot both schedule a task.
        """
        if self._task is not None or self._stopped:
            return False
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False
        self._task = loop.create_task(self._run_loop())
        logger.info("session_sweep_armed", interval_seconds=self.interval)
        return True

    async def stop(self) -> None:
        """Cancel the sweep loop; a stopped reconciler never re-arms."""
        self._stopped = True
        task = self._task
        if task is None:
            return
        self._task = None
        if task.get_loop() is not asyncio.get_running_loop():
            # Scheduled on a loop that is gone; its task died with it
            logger.warning("session_sweep_stop_foreign_loop")
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("session_sweep_stopped")

    async def sweep(self) -> int:
        """Run one deletion pass. Failures are logged and reported as 0 rows."""
        try:
            removed = await self.store.delete_expired_sessions()
        except Exception as exc:
            logger.error(
                "session_sweep_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 0
        if removed:
            logger.info("session_sweep_completed", removed=removed)
        return removed

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.sweep()
