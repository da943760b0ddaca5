"""
Typed persistence for scheduled pins.

``JobStore`` converts between ``scheduled_pins`` rows and
:class:`ScheduledJob` and exposes the queries the scheduler needs.  Every
write is a single conditional statement keyed by id and, optionally, the
expected prior status; ``None`` from :meth:`JobStore.update` means "no
matching row" (a lost race), never an error.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pinscheduler.database import SupabaseDB
from pinscheduler.scheduling.models import JobStatus, PinMetrics, ScheduledJob
from pinscheduler.utils import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)

ExpectedStatus = Union[JobStatus, Iterable[JobStatus], None]


def _serialize(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert enums and datetimes in an update dict to column values."""
    row: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, JobStatus):
            value = value.value
        elif isinstance(value, datetime):
            value = ensure_utc(value).isoformat()
        row[key] = value
    return row


def _expected(expected_status: ExpectedStatus) -> Optional[List[JobStatus]]:
    if expected_status is None:
        return None
    if isinstance(expected_status, JobStatus):
        return [expected_status]
    return list(expected_status)


class JobStore:
    """Scheduled pin repository backed by Supabase.

    Args:
        db: The async database client.
        max_retries: Retry cap used by the due predicate.
        clock: Source of ``updated_at`` timestamps.
    """

    def __init__(
        self,
        db: SupabaseDB,
        max_retries: int = 3,
        clock: Clock = utc_now,
    ) -> None:
        self.db = db
        self.max_retries = max_retries
        self._clock = clock

    async def insert(self, job: ScheduledJob) -> ScheduledJob:
        row = await self.db.insert_scheduled_pin(job.to_row())
        return ScheduledJob.from_row(row)

    async def get(self, job_id: str) -> Optional[ScheduledJob]:
        row = await self.db.get_scheduled_pin(job_id)
        return ScheduledJob.from_row(row) if row else None

    async def list_for_owner(
        self,
        owner: str,
        status: ExpectedStatus = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ScheduledJob]:
        rows = await self.db.list_scheduled_pins(
            owner, statuses=_expected(status), limit=limit, offset=offset
        )
        return [ScheduledJob.from_row(r) for r in rows]

    async def count_active(self, owner: str) -> int:
        return await self.db.count_active_pins(owner)

    async def fetch_due(self, now: datetime, limit: int) -> List[ScheduledJob]:
        """Jobs eligible for execution at ``now``, oldest ``scheduled_for`` first.

        The database filter is re-checked with :meth:`ScheduledJob.is_due`
        so a permanently failed job can never slip through.
        """
        rows = await self.db.get_due_pins(
            now=now, limit=limit, max_retries=self.max_retries
        )
        jobs = [ScheduledJob.from_row(r) for r in rows]
        return [j for j in jobs if j.is_due(now, self.max_retries)]

    async def fetch_stale_metric_accounts(
        self,
        older_than: Optional[datetime],
        owner: Optional[str] = None,
        account_id: Optional[str] = None,
    ) -> List[Tuple[str, Optional[str]]]:
        """Distinct ``(owner, account_id)`` pairs that have stale posted pins."""
        return await self.db.get_stale_metric_accounts(
            older_than=older_than, user_id=owner, account_id=account_id
        )

    async def fetch_published_with_stale_metrics(
        self,
        older_than: Optional[datetime],
        limit: int,
        owner: Optional[str] = None,
        account_id: Optional[str] = None,
        exact_account: bool = False,
    ) -> List[ScheduledJob]:
        rows = await self.db.get_stale_metric_pins(
            older_than=older_than,
            limit=limit,
            user_id=owner,
            account_id=account_id,
            exact_account=exact_account,
        )
        return [ScheduledJob.from_row(r) for r in rows]

    async def fetch_stuck(
        self, claimed_before: datetime, limit: int = 50
    ) -> List[ScheduledJob]:
        rows = await self.db.get_stuck_pins(claimed_before, limit=limit)
        return [ScheduledJob.from_row(r) for r in rows]

    async def update(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_status: ExpectedStatus = None,
    ) -> Optional[ScheduledJob]:
        """Conditionally update a job.

        Args:
            job_id: Target job.
            fields: Column values; ``JobStatus`` and ``datetime`` values are
                serialized.  ``updated_at`` is always stamped.
            expected_status: Status (or statuses) the row must currently
                have for the write to apply.

        Returns:
            The updated job, or ``None`` when no row matched.
        """
        row = _serialize(dict(fields, updated_at=self._clock()))
        updated = await self.db.update_scheduled_pin(
            job_id, row, expected_statuses=_expected(expected_status)
        )
        if updated is None:
            logger.debug(
                "[STORE] Conditional update of %s matched no row (expected=%s)",
                job_id,
                expected_status,
            )
            return None
        return ScheduledJob.from_row(updated)

    async def update_metrics(
        self, job_id: str, metrics: PinMetrics
    ) -> Optional[ScheduledJob]:
        return await self.update(job_id, metrics.to_row())

    async def delete(self, job_id: str, expected_status: ExpectedStatus) -> bool:
        return await self.db.delete_scheduled_pin(job_id, _expected(expected_status))


__all__ = [
    "JobStore",
]
