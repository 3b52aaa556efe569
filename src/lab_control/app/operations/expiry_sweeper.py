"""Server-side session expiry enforcement.

A background loop that periodically asks the orchestrator to end every
session past ``expires_at`` and to fail PENDING sessions whose
provisioning never reported back (e.g. the instance died mid-apply).
Status queries also enforce expiry on access, so the sweeper only bounds
how long an abandoned sandbox can outlive its session.

Usage::

    sweeper = ExpirySweeper(orchestrator, interval_seconds=60)
    sweeper.start()          # after the event loop is running
    ...
    await sweeper.stop()
"""

from __future__ import annotations

import asyncio
from datetime import datetime

from lab_control.observability import get_logger

from ..sessions.orchestrator import ExpirySweepReport, LabSessionOrchestrator

logger = get_logger(__name__)


class ExpirySweeper:
    """Periodic driver for ``LabSessionOrchestrator.end_expired``.

    Args:
        orchestrator: Lifecycle orchestrator owning the sessions.
        interval_seconds: Delay between sweeps. 0 disables ``start``.
    """

    def __init__(
        self,
        orchestrator: LabSessionOrchestrator,
        *,
        interval_seconds: float = 60.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None
        self.last_report: ExpirySweepReport | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self, now: datetime | None = None) -> ExpirySweepReport:
        report = await self._orchestrator.end_expired(now)
        self.last_report = report
        return report

    def start(self) -> None:
        """Start the loop; no-op when disabled or already running."""
        if self._interval <= 0 or self.running:
            return
        self._task = asyncio.create_task(self._loop(), name='lab-expiry-sweeper')
        logger.info('expiry_sweeper_started', interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info('expiry_sweeper_stopped')

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except Exception:
                # Keep sweeping; the next pass retries the same rows.
                logger.exception('expiry_sweep_failed')
