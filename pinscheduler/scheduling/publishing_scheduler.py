"""
Background publishing scheduler that publishes pins at their scheduled times.

``PublishingScheduler`` runs as an asyncio background task, periodically
fetching jobs that are due and handing them one at a time to the
:class:`PublishExecutor`.  Every ``recovery_interval_cycles`` ticks it also
recovers jobs left in ``posting`` by a crashed attempt.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from pinscheduler.scheduling.job_store import JobStore
from pinscheduler.scheduling.publish_executor import ExecutionOutcome, PublishExecutor
from pinscheduler.utils import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """Counters for one scheduler pass."""

    due: int = 0
    posted: int = 0
    failed: int = 0
    exhausted: int = 0
    skipped: int = 0
    errors: int = 0
    recovered: int = 0

    def count(self, outcome: ExecutionOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class PublishingScheduler:
    """Background task that publishes scheduled pins at their designated times.

    Each tick:
    1. Fetches up to ``batch_size`` due jobs (oldest ``scheduled_for`` first).
    2. Runs the executor on each job sequentially.  A job that raises is
       logged and the rest of the batch continues.
    3. Every ``recovery_interval_cycles`` ticks, recovers stuck jobs.

    Args:
        store: Job persistence.
        executor: Publish executor.
        interval_seconds: Delay between ticks (default 60).
        batch_size: Maximum jobs per tick (default 10).
        startup_delay_seconds: Delay before the first tick (default 5).
        recovery_interval_cycles: Ticks between stuck-job recoveries.
        clock: Source of "now".
    """

    def __init__(
        self,
        store: JobStore,
        executor: PublishExecutor,
        interval_seconds: float = 60.0,
        batch_size: int = 10,
        startup_delay_seconds: float = 5.0,
        recovery_interval_cycles: int = 10,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.executor = executor
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.startup_delay_seconds = startup_delay_seconds
        self.recovery_interval_cycles = recovery_interval_cycles
        self._clock = clock

        self._task: Optional["asyncio.Task[None]"] = None
        self._stop_event = asyncio.Event()
        self._cycle_count: int = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ================================================================
    # LIFECYCLE
    # ================================================================

    def start(self) -> "asyncio.Task[None]":
        """Spawn the background loop.  Calling it twice is a no-op."""
        if self.is_running:
            return self._task
        self._stop_event.clear()
        self._cycle_count = 0
        self._task = asyncio.create_task(self._run_loop(), name="publishing-scheduler")
        return self._task

    async def stop(self) -> None:
        """Signal the loop to exit and wait for it.

        A job being executed is allowed to finish; only the sleep between
        ticks is interrupted.
        """
        self._stop_event.set()
        logger.info("[SCHEDULER] Publishing scheduler stop requested")
        if self._task is not None:
            await self._task
            self._task = None

    async def _run_loop(self) -> None:
        logger.info(
            "[SCHEDULER] Publishing scheduler started (interval=%ss, batch=%d)",
            self.interval_seconds,
            self.batch_size,
        )

        if await self._sleep(self.startup_delay_seconds):
            while not self._stop_event.is_set():
                try:
                    await self.run_once()
                    self._cycle_count += 1

                    if self._cycle_count % self.recovery_interval_cycles == 0:
                        await self._recover_stuck()

                except asyncio.CancelledError:
                    logger.info("[SCHEDULER] Publishing scheduler cancelled")
                    raise
                except Exception:
                    logger.exception(
                        "[SCHEDULER] Unexpected error in publishing scheduler loop"
                    )

                if not await self._sleep(self.interval_seconds):
                    break

        logger.info("[SCHEDULER] Publishing scheduler stopped")

    async def _sleep(self, seconds: float) -> bool:
        """Wait ``seconds`` unless stopped first.  Returns ``False`` when stopped."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    # ================================================================
    # CORE PASS
    # ================================================================

    async def run_once(self) -> TickSummary:
        """Execute one pass over the due jobs.

        Safe to call while the background loop is running: the claim in
        the executor guarantees each job is attempted by one pass only.
        """
        summary = TickSummary()
        due_jobs = await self.store.fetch_due(self._clock(), self.batch_size)
        summary.due = len(due_jobs)

        if not due_jobs:
            return summary

        logger.info("[SCHEDULER] Found %d pins due for publishing", len(due_jobs))

        for job in due_jobs:
            try:
                outcome = await self.executor.run(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                summary.errors += 1
                logger.exception("[SCHEDULER] Error while executing job %s", job.id)
                continue
            summary.count(outcome)

        logger.info(
            "[SCHEDULER] Tick done: posted=%d failed=%d exhausted=%d skipped=%d errors=%d",
            summary.posted,
            summary.failed,
            summary.exhausted,
            summary.skipped,
            summary.errors,
        )
        return summary

    async def manual_trigger(self) -> TickSummary:
        """Operator-initiated pass, including stuck-job recovery."""
        logger.info("[SCHEDULER] Manual trigger")
        summary = await self.run_once()
        summary.recovered = await self._recover_stuck()
        return summary

    # ================================================================
    # RECOVERY
    # ================================================================

    async def _recover_stuck(self) -> int:
        logger.debug("[SCHEDULER] Running stuck-job recovery check")
        return await self.executor.recover_stuck()


__all__ = [
    "PublishingScheduler",
    "TickSummary",
]
