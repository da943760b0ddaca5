"""
Publish executor: drives one scheduled pin through its state machine.

For a due job the executor claims it (``scheduled|failed -> posting``)
with a conditional update, resolves the owner's Pinterest access token,
publishes, and records the outcome:

- success: ``posting -> posted`` in one conditional write that also sets
  ``credits_deducted``; the credit ledger is debited only when that write
  flipped the flag.
- failure: ``posting -> failed`` with the retry policy's ``retry_count``
  and ``next_retry_at`` (``None`` once the cap is reached).

Every write expects the status the executor left the row in, so a user
cancel or a second poller racing on the same job is a silent no-op.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from pinscheduler.exceptions import MissingAccessTokenError
from pinscheduler.logging.models import JobEventType, LogLevel
from pinscheduler.scheduling.credit_ledger import CreditLedger
from pinscheduler.scheduling.job_store import JobStore
from pinscheduler.scheduling.models import JobStatus, ScheduledJob
from pinscheduler.scheduling.retry_policy import RetryPolicy
from pinscheduler.utils import Clock, generate_id, utc_now

logger = logging.getLogger(__name__)

# Stored error messages are truncated to this length.
MAX_ERROR_LENGTH = 1000


class ExecutionOutcome(Enum):
    """Result of one :meth:`PublishExecutor.run` call."""

    POSTED = "posted"
    FAILED = "failed"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"


class PublishExecutor:
    """Runs scheduled pins against the publish service.

    Args:
        store: Job persistence.
        accounts: Account store with ``get_access_token(owner, account_id)``.
        publisher: Publish service with ``publish_pin(access_token, payload)``
            returning the Pinterest pin id.
        ledger: Credit ledger debited once per posted job.
        retry_policy: Backoff for failed attempts.
        event_logger: Optional :class:`JobEventLogger` audit trail.
        credit_cost: Credits charged per posted job.
        stuck_timeout_minutes: Age of a ``posting`` claim after which
            :meth:`recover_stuck` treats it as failed.
        materialize_recurrence: Create the next occurrence of a
            recurring job once it posts.
        max_schedule_days: Furthest ahead a next occurrence may be
            scheduled; occurrences beyond it are not created.
        clock: Source of "now".
    """

    def __init__(
        self,
        store: JobStore,
        accounts: Any,
        publisher: Any,
        ledger: CreditLedger,
        retry_policy: Optional[RetryPolicy] = None,
        event_logger: Any = None,
        credit_cost: int = 1,
        stuck_timeout_minutes: int = 10,
        materialize_recurrence: bool = False,
        max_schedule_days: int = 365,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.publisher = publisher
        self.ledger = ledger
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_logger = event_logger
        self.credit_cost = credit_cost
        self.stuck_timeout_minutes = stuck_timeout_minutes
        self.materialize_recurrence = materialize_recurrence
        self.max_schedule_days = max_schedule_days
        self._clock = clock

    # ================================================================
    # RUN
    # ================================================================

    async def run(self, job: ScheduledJob) -> ExecutionOutcome:
        """Attempt to publish ``job``.

        Args:
            job: A job returned by :meth:`JobStore.fetch_due`.

        Returns:
            The outcome.  ``SKIPPED`` means another actor got to the job
            first (claim lost, or a cancel landed mid-flight).
        """
        claimed = await self.store.update(
            job.id,
            {"status": JobStatus.POSTING, "claimed_at": self._clock()},
            expected_status=job.status,
        )
        if claimed is None:
            logger.debug("[EXECUTOR] Job %s already claimed, skipping", job.id)
            return ExecutionOutcome.SKIPPED

        await self._record(JobEventType.CLAIMED, claimed, attempt=claimed.retry_count + 1)
        logger.info(
            "[EXECUTOR] Publishing job %s (owner=%s, attempt=%d)",
            claimed.id,
            claimed.owner,
            claimed.retry_count + 1,
        )

        try:
            token = await self.accounts.get_access_token(
                claimed.owner, claimed.payload.account_id
            )
            if not token:
                raise MissingAccessTokenError(claimed.owner, claimed.payload.account_id)
            external_id = await self.publisher.publish_pin(token, claimed.payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return await self._handle_failure(claimed, str(exc) or type(exc).__name__)

        return await self._handle_success(claimed, external_id)

    # ================================================================
    # SUCCESS PATH
    # ================================================================

    async def _handle_success(
        self, job: ScheduledJob, external_id: str
    ) -> ExecutionOutcome:
        now = self._clock()
        fields = {
            "status": JobStatus.POSTED,
            "external_id": external_id,
            "posted_at": now,
            "error_message": None,
            "retry_count": 0,
            "next_retry_at": None,
        }
        charge = not job.credits_deducted
        if charge:
            fields["credits_deducted"] = True

        posted = await self.store.update(job.id, fields, expected_status=JobStatus.POSTING)
        if posted is None:
            posted = await self._resolve_late_success(job, fields, external_id)
            if posted is None:
                return ExecutionOutcome.SKIPPED

        logger.info(
            "[EXECUTOR] Posted job %s (pin_id=%s)", posted.id, external_id
        )
        await self._record(JobEventType.POSTED, posted, external_id=external_id)

        if charge:
            try:
                await self.ledger.debit(posted.owner, self.credit_cost)
            except Exception as exc:
                logger.error(
                    "[EXECUTOR] Credit debit failed for job %s (owner=%s): %s",
                    posted.id,
                    posted.owner,
                    exc,
                    exc_info=True,
                )
                await self._record(
                    JobEventType.DEBIT_FAILED,
                    posted,
                    message=str(exc),
                    level=LogLevel.ERROR,
                )

        if self.materialize_recurrence and posted.recurrence is not None:
            await self._spawn_next_occurrence(posted)

        return ExecutionOutcome.POSTED

    async def _resolve_late_success(
        self, job: ScheduledJob, fields: dict, external_id: str
    ) -> Optional[ScheduledJob]:
        """Handle a publish whose ``posting -> posted`` write matched nothing.

        A cancel that landed mid-flight wins: the pin id is kept on the
        cancelled row for reference and nothing is charged.  A row that
        stuck recovery already moved to ``failed`` is promoted to
        ``posted`` so it is not published twice.
        """
        current = await self.store.get(job.id)
        if current is None:
            logger.warning(
                "[EXECUTOR] Job %s vanished after publishing pin %s", job.id, external_id
            )
            return None

        if current.status is JobStatus.FAILED:
            return await self.store.update(job.id, fields, expected_status=JobStatus.FAILED)

        if current.status is JobStatus.CANCELLED:
            await self.store.update(
                job.id,
                {"external_id": external_id},
                expected_status=JobStatus.CANCELLED,
            )
            logger.warning(
                "[EXECUTOR] Job %s was cancelled while publishing; pin %s "
                "was created anyway and no credit was charged",
                job.id,
                external_id,
            )
            await self._record(
                JobEventType.POSTED_AFTER_CANCEL,
                current,
                level=LogLevel.WARNING,
                external_id=external_id,
            )
            return None

        logger.warning(
            "[EXECUTOR] Job %s left posting (now %s) before pin %s was recorded",
            job.id,
            current.status.value,
            external_id,
        )
        return None

    async def _spawn_next_occurrence(self, job: ScheduledJob) -> None:
        now = self._clock()
        next_at = job.recurrence.next_after(job.scheduled_for, now)
        if next_at > now + timedelta(days=self.max_schedule_days):
            logger.warning(
                "[EXECUTOR] Next occurrence of job %s at %s is more than %d days "
                "ahead, not scheduling it",
                job.id,
                next_at.isoformat(),
                self.max_schedule_days,
            )
            return
        follow_up = ScheduledJob(
            id=generate_id(),
            owner=job.owner,
            payload=job.payload,
            scheduled_for=next_at,
            timezone=job.timezone,
            recurrence=job.recurrence,
            created_at=now,
            updated_at=now,
        )
        try:
            created = await self.store.insert(follow_up)
        except Exception:
            logger.exception(
                "[EXECUTOR] Failed to create next occurrence of job %s", job.id
            )
            return
        logger.info(
            "[EXECUTOR] Scheduled next occurrence of %s as %s at %s",
            job.id,
            created.id,
            next_at.isoformat(),
        )
        await self._record(
            JobEventType.RECURRENCE_SPAWNED, job, next_job_id=created.id
        )

    # ================================================================
    # FAILURE PATH
    # ================================================================

    async def _handle_failure(self, job: ScheduledJob, reason: str) -> ExecutionOutcome:
        decision = self.retry_policy.on_failure(job.retry_count, self._clock())
        failed = await self.store.update(
            job.id,
            {
                "status": JobStatus.FAILED,
                "retry_count": decision.retry_count,
                "next_retry_at": decision.next_retry_at,
                "error_message": reason[:MAX_ERROR_LENGTH],
            },
            expected_status=JobStatus.POSTING,
        )
        if failed is None:
            logger.debug(
                "[EXECUTOR] Job %s left posting before its failure was recorded",
                job.id,
            )
            return ExecutionOutcome.SKIPPED

        if decision.exhausted:
            logger.error(
                "[EXECUTOR] Job %s permanently failed after %d retries: %s",
                job.id,
                decision.retry_count,
                reason,
            )
            await self._record(
                JobEventType.EXHAUSTED, failed, message=reason, level=LogLevel.ERROR
            )
            return ExecutionOutcome.EXHAUSTED

        logger.warning(
            "[EXECUTOR] Job %s failed (retry %d/%d at %s): %s",
            job.id,
            decision.retry_count,
            self.retry_policy.max_retries,
            decision.next_retry_at.isoformat(),
            reason,
        )
        await self._record(
            JobEventType.FAILED,
            failed,
            message=reason,
            level=LogLevel.WARNING,
            next_retry_at=decision.next_retry_at.isoformat(),
        )
        return ExecutionOutcome.FAILED

    # ================================================================
    # RECOVERY
    # ================================================================

    async def recover_stuck(self, now: Optional[datetime] = None) -> int:
        """Push jobs stuck in ``posting`` through the failure path.

        A job is stuck when its claim is older than
        ``stuck_timeout_minutes`` (for example the process died while
        publishing).  The same backoff and cap apply as for any failure.

        Returns:
            Number of jobs recovered.
        """
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self.stuck_timeout_minutes)
        stuck = await self.store.fetch_stuck(cutoff)

        recovered = 0
        for job in stuck:
            logger.warning(
                "[EXECUTOR] Recovering job %s stuck in posting since %s",
                job.id,
                job.claimed_at.isoformat() if job.claimed_at else "unknown",
            )
            outcome = await self._handle_failure(
                job,
                f"Publishing stuck for more than {self.stuck_timeout_minutes} minutes",
            )
            if outcome is not ExecutionOutcome.SKIPPED:
                recovered += 1
                await self._record(JobEventType.RECOVERED, job, outcome=outcome.value)

        if recovered:
            logger.info("[EXECUTOR] Recovered %d stuck job(s)", recovered)
        return recovered

    # ================================================================
    # EVENTS
    # ================================================================

    async def _record(
        self,
        event: JobEventType,
        job: ScheduledJob,
        message: str = "",
        level: LogLevel = LogLevel.INFO,
        **data: Any,
    ) -> None:
        if self.event_logger is None:
            return
        try:
            await self.event_logger.record_job(event, job, message=message, level=level, **data)
        except Exception:
            logger.warning(
                "[EXECUTOR] Failed to record %s event for job %s",
                event.value,
                job.id,
                exc_info=True,
            )


__all__ = [
    "ExecutionOutcome",
    "PublishExecutor",
    "MAX_ERROR_LENGTH",
]
