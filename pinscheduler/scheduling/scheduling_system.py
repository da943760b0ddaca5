"""
Scheduling system: the user-facing operations on scheduled pins.

``SchedulingSystem`` validates and creates jobs, lists and edits them,
and handles cancel and permanent delete.  Ownership is enforced on every
operation: a job owned by someone else is reported as not found.

Validation problems raise :class:`~pinscheduler.exceptions.ValidationError`
subclasses synchronously; illegal lifecycle moves raise
:class:`~pinscheduler.exceptions.InvalidTransitionError`.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pinscheduler.database import validate_not_empty
from pinscheduler.exceptions import (
    AccountNotConnectedError,
    InvalidTransitionError,
    JobNotFoundError,
    PlanLimitExceededError,
    RecurrenceValidationError,
    ScheduleWindowError,
    ValidationError,
)
from pinscheduler.logging.models import JobEventType
from pinscheduler.scheduling.job_store import JobStore
from pinscheduler.scheduling.models import (
    DEFAULT_PLAN_LIMITS,
    DELETABLE_STATUSES,
    JobStatus,
    PinPayload,
    Recurrence,
    RecurrenceType,
    ScheduledJob,
)
from pinscheduler.utils import Clock, ensure_utc, generate_id, utc_now

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_RECURRENCE_INTERVAL = 30
MAX_LIST_LIMIT = 100

# Fields a user may change through update_job.
PAYLOAD_FIELDS = ("image_url", "title", "description", "board_id", "link")
UPDATABLE_FIELDS = PAYLOAD_FIELDS + ("scheduled_for", "timezone", "recurrence", "status")

RecurrenceInput = Union[Recurrence, Mapping[str, Any], None]


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class SchedulingSystem:
    """Creates and manages scheduled pins for their owners.

    Args:
        store: Job persistence.
        accounts: Account store with ``get_access_token(owner, account_id)``
            and ``get_plan_type(owner)``
            (:class:`~pinscheduler.database.SupabaseDB`).
        plan_limits: Active-job limit per plan.
        max_schedule_days: Furthest allowed ``scheduled_for``.
        event_logger: Optional :class:`JobEventLogger`.
        clock: Source of "now".
    """

    def __init__(
        self,
        store: JobStore,
        accounts: Any,
        plan_limits: Optional[Dict[str, int]] = None,
        max_schedule_days: int = 365,
        event_logger: Any = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.plan_limits = dict(plan_limits or DEFAULT_PLAN_LIMITS)
        self.max_schedule_days = max_schedule_days
        self.event_logger = event_logger
        self._clock = clock

    # ================================================================
    # ENQUEUE
    # ================================================================

    async def enqueue(
        self,
        owner: str,
        payload: PinPayload,
        scheduled_for: datetime,
        timezone: str = "UTC",
        recurrence: RecurrenceInput = None,
    ) -> ScheduledJob:
        """Validate and persist a new scheduled pin.

        Args:
            owner: Requesting user id.
            payload: Pin content.
            scheduled_for: Publication time; naive values are taken as UTC.
            timezone: Display-only IANA zone name.
            recurrence: Optional repeat pattern (object or
                ``{"type": ..., "interval": ...}``).

        Returns:
            The stored job with status ``SCHEDULED``.

        Raises:
            ValidationError: On malformed input.
            ScheduleWindowError: If ``scheduled_for`` is not in the future
                or too far ahead.
            RecurrenceValidationError: On a malformed recurrence.
            AccountNotConnectedError: If the owner has no usable token for
                the target account.
            PlanLimitExceededError: If the owner's plan is full.
        """
        validate_not_empty(owner, "owner")
        self._validate_payload(payload)
        when = self._validate_window(scheduled_for)
        self._validate_timezone(timezone)
        parsed_recurrence = self._parse_recurrence(recurrence)

        token = await self.accounts.get_access_token(owner, payload.account_id)
        if not token:
            target = payload.account_id or "default"
            raise AccountNotConnectedError(
                f"Pinterest account '{target}' is not connected for this user"
            )

        plan_type = await self.accounts.get_plan_type(owner)
        limit = self.plan_limits.get(plan_type, self.plan_limits.get("free", 10))
        active = await self.store.count_active(owner)
        if active >= limit:
            raise PlanLimitExceededError(plan_type, limit)

        now = self._clock()
        job = ScheduledJob(
            id=generate_id(),
            owner=owner,
            payload=payload,
            scheduled_for=when,
            timezone=timezone,
            recurrence=parsed_recurrence,
            created_at=now,
            updated_at=now,
        )
        created = await self.store.insert(job)

        logger.info(
            "[SCHEDULER] Pin %s scheduled for %s (owner=%s)",
            created.id,
            created.scheduled_for.isoformat(),
            owner,
        )
        await self._record(JobEventType.CREATED, created)
        return created

    # ================================================================
    # QUERIES
    # ================================================================

    async def list_jobs(
        self,
        owner: str,
        status: Union[JobStatus, str, None] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ScheduledJob]:
        """List an owner's jobs ordered by ``scheduled_for``."""
        validate_not_empty(owner, "owner")
        if not 1 <= limit <= MAX_LIST_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_LIST_LIMIT}")
        if offset < 0:
            raise ValidationError("offset must be >= 0")
        return await self.store.list_for_owner(
            owner, status=self._parse_status(status), limit=limit, offset=offset
        )

    async def get_job(self, owner: str, job_id: str) -> ScheduledJob:
        """Fetch one job owned by ``owner``.

        Raises:
            JobNotFoundError: If the job does not exist or has another owner.
        """
        validate_not_empty(owner, "owner")
        validate_not_empty(job_id, "job_id")
        job = await self.store.get(job_id)
        if job is None or job.owner != owner:
            raise JobNotFoundError(job_id)
        return job

    # ================================================================
    # MUTATIONS
    # ================================================================

    async def update_job(
        self, owner: str, job_id: str, fields: Mapping[str, Any]
    ) -> ScheduledJob:
        """Edit a job.

        ``status`` may only be set to ``scheduled`` (re-arms the job and
        clears its retry bookkeeping) or ``cancelled``.  Posted jobs
        cannot be edited, a cancelled job cannot change status, and a job
        being published only accepts a cancel.

        Raises:
            ValidationError: On unknown fields or invalid values.
            InvalidTransitionError: If the change is not allowed in the
                job's current status, or the job changed concurrently.
        """
        if not fields:
            raise ValidationError("No fields to update")
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {sorted(unknown)}")

        job = await self.get_job(owner, job_id)
        if job.status is JobStatus.POSTED:
            raise InvalidTransitionError(f"Scheduled pin {job_id} is already posted")

        new_status = self._parse_status(fields["status"]) if "status" in fields else None
        if new_status is not None and new_status not in (
            JobStatus.SCHEDULED,
            JobStatus.CANCELLED,
        ):
            raise InvalidTransitionError(
                f"Status can only be set to scheduled or cancelled, got {new_status.value}"
            )
        if job.status is JobStatus.CANCELLED and new_status not in (None, JobStatus.CANCELLED):
            raise InvalidTransitionError(f"Scheduled pin {job_id} is cancelled")
        if job.status is JobStatus.POSTING and new_status is not JobStatus.CANCELLED:
            raise InvalidTransitionError(f"Scheduled pin {job_id} is being published")

        changes: Dict[str, Any] = {}

        payload_changes = {k: fields[k] for k in PAYLOAD_FIELDS if k in fields}
        if payload_changes:
            payload = replace(job.payload, **payload_changes)
            self._validate_payload(payload)
            changes.update(payload_changes)

        if "scheduled_for" in fields:
            changes["scheduled_for"] = self._validate_window(fields["scheduled_for"])
        if "timezone" in fields:
            self._validate_timezone(fields["timezone"])
            changes["timezone"] = fields["timezone"]
        if "recurrence" in fields:
            parsed = self._parse_recurrence(fields["recurrence"])
            changes["recurrence"] = parsed.to_dict() if parsed else None

        if new_status is JobStatus.SCHEDULED and job.status is not JobStatus.SCHEDULED:
            changes.update({
                "status": JobStatus.SCHEDULED,
                "retry_count": 0,
                "next_retry_at": None,
                "error_message": None,
            })
        elif new_status is JobStatus.CANCELLED and job.status is not JobStatus.CANCELLED:
            changes.update({"status": JobStatus.CANCELLED, "next_retry_at": None})

        if not changes:
            return job

        updated = await self.store.update(job_id, changes, expected_status=job.status)
        if updated is None:
            raise InvalidTransitionError(
                f"Scheduled pin {job_id} changed while being updated, retry"
            )

        logger.info("[SCHEDULER] Pin %s updated: %s", job_id, sorted(changes))
        event = (
            JobEventType.CANCELLED
            if changes.get("status") is JobStatus.CANCELLED
            else JobEventType.UPDATED
        )
        await self._record(event, updated, fields=sorted(changes))
        return updated

    async def cancel_job(self, owner: str, job_id: str) -> ScheduledJob:
        """Cancel a job that has not been posted.

        Idempotent for cancelled jobs.  Cancelling a job that is being
        published is advisory: whichever of the cancel and the publish
        result is written first wins.

        Raises:
            InvalidTransitionError: If the job is already posted.
        """
        job = await self.get_job(owner, job_id)
        if job.status is JobStatus.CANCELLED:
            return job
        if job.status is JobStatus.POSTED:
            raise InvalidTransitionError(f"Scheduled pin {job_id} is already posted")

        cancelled = await self.store.update(
            job_id,
            {"status": JobStatus.CANCELLED, "next_retry_at": None},
            expected_status=(JobStatus.SCHEDULED, JobStatus.POSTING, JobStatus.FAILED),
        )
        if cancelled is None:
            current = await self.get_job(owner, job_id)
            if current.status is JobStatus.CANCELLED:
                return current
            raise InvalidTransitionError(
                f"Scheduled pin {job_id} was posted before it could be cancelled"
            )

        if job.status is JobStatus.POSTING:
            logger.warning(
                "[SCHEDULER] Pin %s cancelled while publishing; the attempt in "
                "flight may still create the pin",
                job_id,
            )
        else:
            logger.info("[SCHEDULER] Pin %s cancelled", job_id)
        await self._record(JobEventType.CANCELLED, cancelled, previous=job.status.value)
        return cancelled

    async def permanent_delete(self, owner: str, job_id: str) -> bool:
        """Remove a cancelled or posted job.

        Raises:
            InvalidTransitionError: If the job is still active.
            JobNotFoundError: If the job disappeared concurrently.
        """
        job = await self.get_job(owner, job_id)
        if job.status not in DELETABLE_STATUSES:
            raise InvalidTransitionError(
                f"Only cancelled or posted pins can be deleted, {job_id} is {job.status.value}"
            )

        deleted = await self.store.delete(job_id, expected_status=DELETABLE_STATUSES)
        if not deleted:
            raise JobNotFoundError(job_id)

        logger.info("[SCHEDULER] Pin %s permanently deleted", job_id)
        await self._record(JobEventType.DELETED, job)
        return True

    # ================================================================
    # VALIDATION
    # ================================================================

    @staticmethod
    def _validate_payload(payload: PinPayload) -> None:
        if payload is None:
            raise ValidationError("payload cannot be None")
        validate_not_empty(payload.image_url, "image_url")
        validate_not_empty(payload.title, "title")
        validate_not_empty(payload.description, "description")
        validate_not_empty(payload.board_id, "board_id")
        if not _is_http_url(payload.image_url):
            raise ValidationError("image_url must be an http(s) URL")
        if len(payload.title) > MAX_TITLE_LENGTH:
            raise ValidationError(f"title must be at most {MAX_TITLE_LENGTH} characters")
        if len(payload.description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"description must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )
        if payload.link and not _is_http_url(payload.link):
            raise ValidationError("link must be an http(s) URL")

    def _validate_window(self, scheduled_for: Any) -> datetime:
        if not isinstance(scheduled_for, datetime):
            raise ValidationError("scheduled_for must be a datetime")
        when = ensure_utc(scheduled_for)
        now = self._clock()
        if when <= now:
            raise ScheduleWindowError("scheduled_for must be in the future")
        if when > now + timedelta(days=self.max_schedule_days):
            raise ScheduleWindowError(
                f"scheduled_for must be within {self.max_schedule_days} days"
            )
        return when

    @staticmethod
    def _validate_timezone(name: str) -> None:
        if not name:
            raise ValidationError("timezone cannot be empty")
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError(f"Unknown timezone '{name}'") from exc

    @staticmethod
    def _parse_recurrence(value: RecurrenceInput) -> Optional[Recurrence]:
        if value is None:
            return None
        if isinstance(value, Recurrence):
            recurrence = value
        else:
            try:
                recurrence = Recurrence(
                    type=RecurrenceType(value["type"]),
                    interval=int(value.get("interval", 1)),
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise RecurrenceValidationError(f"Invalid recurrence: {value!r}") from exc
        if not 1 <= recurrence.interval <= MAX_RECURRENCE_INTERVAL:
            raise RecurrenceValidationError(
                f"recurrence interval must be between 1 and {MAX_RECURRENCE_INTERVAL}"
            )
        return recurrence

    @staticmethod
    def _parse_status(value: Union[JobStatus, str, None]) -> Optional[JobStatus]:
        if value is None or isinstance(value, JobStatus):
            return value
        try:
            return JobStatus(value)
        except ValueError as exc:
            raise ValidationError(f"Unknown status '{value}'") from exc

    async def _record(self, event: JobEventType, job: ScheduledJob, **data: Any) -> None:
        if self.event_logger is None:
            return
        try:
            await self.event_logger.record_job(event, job, **data)
        except Exception:
            logger.warning(
                "[SCHEDULER] Failed to record %s event for pin %s",
                event.value,
                job.id,
                exc_info=True,
            )


__all__ = [
    "SchedulingSystem",
    "UPDATABLE_FIELDS",
]
