"""
Background analytics scheduler that refreshes metrics of posted pins.

``AnalyticsScheduler`` runs as an asyncio background task on a slow
cadence (12 hours by default).  Each pass finds the connected Pinterest
accounts that own posted pins with missing or expired metrics, loads up
to ``per_account_limit`` of those pins per account and fetches analytics
per pin while pacing calls to stay under Pinterest's rate limits.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pinscheduler.database import validate_not_empty
from pinscheduler.logging.models import JobEventType
from pinscheduler.scheduling.job_store import JobStore
from pinscheduler.scheduling.metrics import extract_counters, normalize_metrics
from pinscheduler.scheduling.models import PinMetrics, ScheduledJob
from pinscheduler.utils import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class AnalyticsSummary:
    """Counters for one analytics pass."""

    accounts: int = 0
    skipped_accounts: int = 0
    refreshed: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class AnalyticsScheduler:
    """Periodic metrics refresh for posted pins.

    Args:
        store: Job persistence.
        accounts: Account store with ``get_access_token(owner, account_id)``.
        analytics_client: Service with ``get_pin_analytics(access_token,
            pin_id, start_date, end_date)`` returning the raw response.
        interval_hours: Delay between passes (default 12).
        startup_delay_seconds: Delay before the first pass (default 30).
        staleness_hours: Metrics younger than this are left alone.
        per_account_limit: Maximum pins refreshed per account per pass.
        lookback_days: Oldest analytics date requested.
        job_delay_seconds: Pause between pins of one account.
        account_delay_seconds: Pause between accounts.
        event_logger: Optional :class:`JobEventLogger`.
        clock: Source of "now".
    """

    def __init__(
        self,
        store: JobStore,
        accounts: Any,
        analytics_client: Any,
        interval_hours: float = 12.0,
        startup_delay_seconds: float = 30.0,
        staleness_hours: float = 12.0,
        per_account_limit: int = 20,
        lookback_days: int = 90,
        job_delay_seconds: float = 1.0,
        account_delay_seconds: float = 2.0,
        event_logger: Any = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.analytics_client = analytics_client
        self.interval_hours = interval_hours
        self.startup_delay_seconds = startup_delay_seconds
        self.staleness_hours = staleness_hours
        self.per_account_limit = per_account_limit
        self.lookback_days = lookback_days
        self.job_delay_seconds = job_delay_seconds
        self.account_delay_seconds = account_delay_seconds
        self.event_logger = event_logger
        self._clock = clock

        self._task: Optional["asyncio.Task[None]"] = None
        self._stop_event = asyncio.Event()

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
        self._task = asyncio.create_task(self._run_loop(), name="analytics-scheduler")
        return self._task

    async def stop(self) -> None:
        """Signal the loop to exit and wait for the current pass to finish."""
        self._stop_event.set()
        logger.info("[ANALYTICS] Analytics scheduler stop requested")
        if self._task is not None:
            await self._task
            self._task = None

    async def _run_loop(self) -> None:
        logger.info(
            "[ANALYTICS] Analytics scheduler started (interval=%sh)",
            self.interval_hours,
        )

        if await self._sleep(self.startup_delay_seconds):
            while not self._stop_event.is_set():
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    logger.info("[ANALYTICS] Analytics scheduler cancelled")
                    raise
                except Exception:
                    logger.exception(
                        "[ANALYTICS] Unexpected error in analytics scheduler loop"
                    )

                if not await self._sleep(self.interval_hours * 3600):
                    break

        logger.info("[ANALYTICS] Analytics scheduler stopped")

    async def _sleep(self, seconds: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    # ================================================================
    # CORE PASS
    # ================================================================

    async def run_once(
        self,
        owner: Optional[str] = None,
        account_id: Optional[str] = None,
        force: bool = False,
    ) -> AnalyticsSummary:
        """Refresh stale metrics once.

        Args:
            owner: Restrict the pass to one user.
            account_id: Restrict the pass to one connected account.
            force: Ignore the staleness window.

        Returns:
            Counters for the pass.
        """
        summary = AnalyticsSummary()
        now = self._clock()
        older_than = None if force else now - timedelta(hours=self.staleness_hours)

        pairs = await self.store.fetch_stale_metric_accounts(
            older_than, owner=owner, account_id=account_id
        )
        if not pairs:
            logger.debug("[ANALYTICS] No pins need a metrics refresh")
            return summary

        logger.info("[ANALYTICS] Refreshing stale metrics across %d accounts", len(pairs))

        for index, (job_owner, job_account) in enumerate(pairs):
            if index > 0 and self.account_delay_seconds > 0:
                await asyncio.sleep(self.account_delay_seconds)

            try:
                token = await self.accounts.get_access_token(job_owner, job_account)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "[ANALYTICS] Could not resolve token for %s/%s",
                    job_owner,
                    job_account,
                    exc_info=True,
                )
                token = None

            if not token:
                logger.debug(
                    "[ANALYTICS] Skipping %s/%s: no connected account",
                    job_owner,
                    job_account,
                )
                summary.skipped_accounts += 1
                continue

            jobs = await self.store.fetch_published_with_stale_metrics(
                older_than,
                self.per_account_limit,
                owner=job_owner,
                account_id=job_account,
                exact_account=True,
            )
            summary.accounts += 1
            await self._refresh_account(jobs, token, now, summary)

        logger.info(
            "[ANALYTICS] Pass done: accounts=%d skipped=%d refreshed=%d failed=%d",
            summary.accounts,
            summary.skipped_accounts,
            summary.refreshed,
            summary.failed,
        )
        return summary

    async def manual_sync(
        self,
        owner: str,
        account_id: Optional[str] = None,
        force: bool = False,
    ) -> AnalyticsSummary:
        """Operator-initiated refresh for a single owner."""
        validate_not_empty(owner, "owner")
        logger.info(
            "[ANALYTICS] Manual sync for %s (account=%s, force=%s)",
            owner,
            account_id,
            force,
        )
        return await self.run_once(owner=owner, account_id=account_id, force=force)

    # ================================================================
    # HELPERS
    # ================================================================

    async def _refresh_account(
        self,
        jobs: List[ScheduledJob],
        token: str,
        now: datetime,
        summary: AnalyticsSummary,
    ) -> None:
        for index, job in enumerate(jobs):
            if index > 0 and self.job_delay_seconds > 0:
                await asyncio.sleep(self.job_delay_seconds)
            try:
                await self._refresh_job(job, token, now)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                summary.failed += 1
                logger.warning(
                    "[ANALYTICS] Failed to refresh metrics for job %s (pin %s): %s",
                    job.id,
                    job.external_id,
                    exc,
                    exc_info=True,
                )
                continue
            summary.refreshed += 1

    async def _refresh_job(self, job: ScheduledJob, token: str, now: datetime) -> None:
        today = now.date()
        earliest = today - timedelta(days=self.lookback_days)
        published = (job.posted_at or job.created_at).date()
        start_date = min(max(published, earliest), today)

        raw = await self.analytics_client.get_pin_analytics(
            token, job.external_id, start_date, today
        )
        if extract_counters(raw) is None:
            logger.info(
                "[ANALYTICS] Unrecognized analytics response for pin %s, storing zeros",
                job.external_id,
            )

        metrics = normalize_metrics(raw, collected_at=now)
        await self.store.update_metrics(job.id, metrics)

        logger.debug(
            "[ANALYTICS] Pin %s: impressions=%d clicks=%d saves=%d",
            job.external_id,
            metrics.impressions,
            metrics.clicks,
            metrics.saves,
        )
        await self._record(job, metrics)

    async def _record(self, job: ScheduledJob, metrics: PinMetrics) -> None:
        if self.event_logger is None:
            return
        try:
            await self.event_logger.record_job(
                JobEventType.METRICS_REFRESHED,
                job,
                impressions=metrics.impressions,
                clicks=metrics.clicks,
                saves=metrics.saves,
            )
        except Exception:
            logger.warning(
                "[ANALYTICS] Failed to record metrics event for job %s",
                job.id,
                exc_info=True,
            )


__all__ = [
    "AnalyticsScheduler",
    "AnalyticsSummary",
]
