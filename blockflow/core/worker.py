"""Background worker for recurring schedules.

Polls the scheduler for due schedules and runs them. Supports a single poll
cycle and a daemon mode.
"""

import asyncio
import logging

from blockflow.core.scheduler import RecurringScheduler, ScheduleRunOutcome

logger = logging.getLogger(__name__)


class ScheduleWorker:
    """
    Background worker that executes due schedules.

    Design:
    - Each cycle processes at most one batch of due schedules
    - Errors in one cycle are logged and never stop the daemon
    - Several workers may share a running set to avoid duplicate runs
    """

    def __init__(self, scheduler: RecurringScheduler, poll_interval: float = 60.0):
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self.running = False

    async def run_once(self) -> list[ScheduleRunOutcome]:
        """Run a single poll cycle."""
        return await self.scheduler.run_due()

    async def start_daemon(self, max_cycles: int | None = None):
        """
        Start daemon mode - poll until stopped (or for max_cycles cycles).
        """
        self.running = True
        cycles = 0

        while self.running:
            try:
                outcomes = await self.scheduler.run_due()
                if outcomes:
                    summary = ", ".join(f"{o.schedule_id}={o.status}" for o in outcomes)
                    logger.info(f"Schedule cycle finished: {summary}")
            except Exception as e:
                logger.error(f"Worker error: {e}")

            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            await asyncio.sleep(self.poll_interval)

        self.running = False

    def stop(self):
        """Stop the worker daemon"""
        self.running = False
