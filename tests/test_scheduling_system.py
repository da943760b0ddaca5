"""Tests for pinscheduler.scheduling.scheduling_system.

Covers:
- enqueue validation (window, payload, timezone, recurrence, account, plan)
- list/get with ownership checks
- update_job status rules and re-arming
- cancel_job idempotency and posted rejection
- permanent_delete restrictions
"""

from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from pinscheduler.exceptions import (
    AccountNotConnectedError,
    InvalidTransitionError,
    JobNotFoundError,
    PlanLimitExceededError,
    RecurrenceValidationError,
    ScheduleWindowError,
    ValidationError,
)
from pinscheduler.scheduling.models import JobStatus, Recurrence, RecurrenceType
from pinscheduler.scheduling.scheduling_system import SchedulingSystem


# =============================================================================
# enqueue
# =============================================================================


class TestEnqueue:
    """Creating scheduled pins."""

    @pytest.mark.asyncio
    async def test_creates_scheduled_job(self, system, store, sample_payload, clock):
        when = clock() + timedelta(hours=1)

        job = await system.enqueue("user-1", sample_payload, when, timezone="Europe/Berlin")

        assert job.status is JobStatus.SCHEDULED
        assert job.scheduled_for == when
        assert job.timezone == "Europe/Berlin"
        assert job.retry_count == 0
        assert job.credits_deducted is False
        assert job.id in store.jobs

    @pytest.mark.asyncio
    async def test_naive_datetime_is_utc(self, system, sample_payload, clock):
        naive = (clock() + timedelta(hours=2)).replace(tzinfo=None)

        job = await system.enqueue("user-1", sample_payload, naive)

        assert job.scheduled_for == clock() + timedelta(hours=2)

    @pytest.mark.parametrize("offset", [timedelta(0), timedelta(minutes=-5)])
    @pytest.mark.asyncio
    async def test_rejects_past_or_now(self, system, sample_payload, clock, offset):
        with pytest.raises(ScheduleWindowError):
            await system.enqueue("user-1", sample_payload, clock() + offset)

    @pytest.mark.asyncio
    async def test_rejects_more_than_a_year_ahead(self, system, sample_payload, clock):
        with pytest.raises(ScheduleWindowError, match="365"):
            await system.enqueue("user-1", sample_payload, clock() + timedelta(days=366))

    @pytest.mark.asyncio
    async def test_rejects_non_datetime(self, system, sample_payload):
        with pytest.raises(ValidationError):
            await system.enqueue("user-1", sample_payload, "2025-07-01T00:00:00Z")

    @pytest.mark.parametrize(
        "changes",
        [
            {"title": "t" * 101},
            {"title": ""},
            {"description": "d" * 501},
            {"description": "   "},
            {"image_url": ""},
            {"image_url": "ftp://example.com/a.png"},
            {"board_id": ""},
            {"link": "javascript:alert(1)"},
        ],
        ids=[
            "long-title",
            "no-title",
            "long-description",
            "blank-description",
            "no-image",
            "bad-image",
            "no-board",
            "bad-link",
        ],
    )
    @pytest.mark.asyncio
    async def test_rejects_bad_payload(self, system, sample_payload, clock, changes):
        with pytest.raises(ValidationError):
            await system.enqueue(
                "user-1", replace(sample_payload, **changes), clock() + timedelta(hours=1)
            )

    @pytest.mark.asyncio
    async def test_rejects_unknown_timezone(self, system, sample_payload, clock):
        with pytest.raises(ValidationError, match="timezone"):
            await system.enqueue(
                "user-1", sample_payload, clock() + timedelta(hours=1), timezone="Mars/Olympus"
            )

    @pytest.mark.asyncio
    async def test_accepts_recurrence_dict(self, system, sample_payload, clock):
        job = await system.enqueue(
            "user-1",
            sample_payload,
            clock() + timedelta(hours=1),
            recurrence={"type": "monthly", "interval": 2},
        )

        assert job.recurrence == Recurrence(RecurrenceType.MONTHLY, 2)

    @pytest.mark.parametrize(
        "recurrence",
        [{"type": "daily", "interval": 0}, {"type": "weekly", "interval": 31}, {"type": "hourly"}, {}],
        ids=["zero", "too-large", "unknown-type", "missing-type"],
    )
    @pytest.mark.asyncio
    async def test_rejects_bad_recurrence(self, system, sample_payload, clock, recurrence):
        with pytest.raises(RecurrenceValidationError):
            await system.enqueue(
                "user-1", sample_payload, clock() + timedelta(hours=1), recurrence=recurrence
            )

    @pytest.mark.asyncio
    async def test_rejects_unconnected_account(self, system, sample_payload, clock):
        with pytest.raises(AccountNotConnectedError):
            await system.enqueue(
                "user-1",
                replace(sample_payload, account_id="acct-unknown"),
                clock() + timedelta(hours=1),
            )

    @pytest.mark.asyncio
    async def test_plan_limit(self, store, accounts, sample_payload, clock, make_job):
        system = SchedulingSystem(
            store=store, accounts=accounts, plan_limits={"free": 2}, clock=clock
        )
        store.add(make_job())
        store.add(make_job(status=JobStatus.FAILED, retry_count=1,
                           next_retry_at=clock() + timedelta(minutes=5)))

        with pytest.raises(PlanLimitExceededError) as exc_info:
            await system.enqueue("user-1", sample_payload, clock() + timedelta(hours=1))

        assert exc_info.value.limit == 2
        assert exc_info.value.plan_type == "free"

    @pytest.mark.asyncio
    async def test_finished_jobs_do_not_count_against_plan(
        self, store, accounts, sample_payload, clock, make_job
    ):
        system = SchedulingSystem(
            store=store, accounts=accounts, plan_limits={"free": 1}, clock=clock
        )
        store.add(make_job(status=JobStatus.POSTED))
        store.add(make_job(status=JobStatus.CANCELLED))
        store.add(make_job(status=JobStatus.FAILED, retry_count=3, next_retry_at=None))

        job = await system.enqueue("user-1", sample_payload, clock() + timedelta(hours=1))

        assert job.status is JobStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_higher_plan_gets_higher_limit(
        self, store, accounts, sample_payload, clock, make_job
    ):
        accounts.plans["user-1"] = "pro"
        system = SchedulingSystem(
            store=store, accounts=accounts, plan_limits={"free": 1, "pro": 5}, clock=clock
        )
        store.add(make_job())

        job = await system.enqueue("user-1", sample_payload, clock() + timedelta(hours=1))

        assert job is not None

    @pytest.mark.asyncio
    async def test_unknown_plan_uses_free_limit(
        self, store, accounts, sample_payload, clock, make_job
    ):
        accounts.plans["user-1"] = "enterprise"
        system = SchedulingSystem(
            store=store, accounts=accounts, plan_limits={"free": 1, "pro": 5}, clock=clock
        )
        store.add(make_job())

        with pytest.raises(PlanLimitExceededError) as exc_info:
            await system.enqueue("user-1", sample_payload, clock() + timedelta(hours=1))

        assert exc_info.value.limit == 1


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_job_hides_other_owners(self, system, store, make_job):
        job = store.add(make_job(owner="user-2"))

        with pytest.raises(JobNotFoundError):
            await system.get_job("user-1", job.id)

    @pytest.mark.asyncio
    async def test_list_jobs_filters_and_orders(self, system, store, make_job, clock):
        later = store.add(make_job(scheduled_for=clock() + timedelta(hours=5)))
        sooner = store.add(make_job(scheduled_for=clock() + timedelta(hours=1)))
        store.add(make_job(status=JobStatus.POSTED))
        store.add(make_job(owner="user-2"))

        jobs = await system.list_jobs("user-1", status="scheduled")

        assert [j.id for j in jobs] == [sooner.id, later.id]

    @pytest.mark.asyncio
    async def test_list_jobs_rejects_unknown_status(self, system):
        with pytest.raises(ValidationError):
            await system.list_jobs("user-1", status="published")

    @pytest.mark.asyncio
    async def test_list_jobs_limit_bounds(self, system):
        with pytest.raises(ValidationError):
            await system.list_jobs("user-1", limit=0)


# =============================================================================
# update_job
# =============================================================================


class TestUpdateJob:
    """Editing jobs and the status changes users may request."""

    @pytest.mark.asyncio
    async def test_updates_content_and_time(self, system, store, make_job, clock):
        job = store.add(make_job(scheduled_for=clock() + timedelta(hours=1)))
        new_time = clock() + timedelta(days=2)

        updated = await system.update_job(
            "user-1", job.id, {"title": "New title", "scheduled_for": new_time}
        )

        assert updated.payload.title == "New title"
        assert updated.scheduled_for == new_time
        assert updated.updated_at == clock()

    @pytest.mark.asyncio
    async def test_rearm_failed_job_resets_retries(self, system, store, make_job, clock):
        job = store.add(make_job(
            status=JobStatus.FAILED,
            retry_count=3,
            next_retry_at=None,
            error_message="gave up",
        ))

        updated = await system.update_job("user-1", job.id, {"status": "scheduled"})

        assert updated.status is JobStatus.SCHEDULED
        assert updated.retry_count == 0
        assert updated.next_retry_at is None
        assert updated.error_message is None

    @pytest.mark.asyncio
    async def test_rejects_posted(self, system, store, make_job):
        job = store.add(make_job(status=JobStatus.POSTED))

        with pytest.raises(InvalidTransitionError):
            await system.update_job("user-1", job.id, {"title": "x"})

    @pytest.mark.parametrize("status", ["posted", "posting", "failed"])
    @pytest.mark.asyncio
    async def test_only_scheduled_or_cancelled_status(self, system, store, make_job, status):
        job = store.add(make_job())

        with pytest.raises(InvalidTransitionError):
            await system.update_job("user-1", job.id, {"status": status})

    @pytest.mark.asyncio
    async def test_no_status_change_out_of_cancelled(self, system, store, make_job):
        job = store.add(make_job(status=JobStatus.CANCELLED))

        with pytest.raises(InvalidTransitionError):
            await system.update_job("user-1", job.id, {"status": "scheduled"})

    @pytest.mark.asyncio
    async def test_posting_job_only_accepts_cancel(self, system, store, make_job):
        job = store.add(make_job(status=JobStatus.POSTING))

        with pytest.raises(InvalidTransitionError):
            await system.update_job("user-1", job.id, {"title": "x"})

        updated = await system.update_job("user-1", job.id, {"status": "cancelled"})
        assert updated.status is JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_rejects_unknown_fields(self, system, store, make_job):
        job = store.add(make_job())

        with pytest.raises(ValidationError, match="credits_deducted"):
            await system.update_job("user-1", job.id, {"credits_deducted": False})

    @pytest.mark.asyncio
    async def test_rejects_past_time(self, system, store, make_job, clock):
        job = store.add(make_job(scheduled_for=clock() + timedelta(hours=1)))

        with pytest.raises(ScheduleWindowError):
            await system.update_job(
                "user-1", job.id, {"scheduled_for": clock() - timedelta(hours=1)}
            )


# =============================================================================
# cancel_job
# =============================================================================


class TestCancelJob:
    @pytest.mark.asyncio
    async def test_cancels_scheduled(self, system, store, make_job):
        job = store.add(make_job())

        cancelled = await system.cancel_job("user-1", job.id)

        assert cancelled.status is JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancels_failed_and_clears_retry(self, system, store, make_job, clock):
        job = store.add(make_job(
            status=JobStatus.FAILED, retry_count=1, next_retry_at=clock() + timedelta(minutes=5)
        ))

        cancelled = await system.cancel_job("user-1", job.id)

        assert cancelled.status is JobStatus.CANCELLED
        assert cancelled.next_retry_at is None

    @pytest.mark.asyncio
    async def test_idempotent(self, system, store, make_job):
        job = store.add(make_job(status=JobStatus.CANCELLED))

        again = await system.cancel_job("user-1", job.id)

        assert again.status is JobStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_rejects_posted(self, system, store, make_job):
        job = store.add(make_job(status=JobStatus.POSTED))

        with pytest.raises(InvalidTransitionError):
            await system.cancel_job("user-1", job.id)

    @pytest.mark.asyncio
    async def test_other_owner_cannot_cancel(self, system, store, make_job):
        job = store.add(make_job(owner="user-2"))

        with pytest.raises(JobNotFoundError):
            await system.cancel_job("user-1", job.id)
        assert store.jobs[job.id].status is JobStatus.SCHEDULED


# =============================================================================
# permanent_delete
# =============================================================================


class TestPermanentDelete:
    @pytest.mark.parametrize("status", [JobStatus.CANCELLED, JobStatus.POSTED])
    @pytest.mark.asyncio
    async def test_deletes_finished_jobs(self, system, store, make_job, status):
        job = store.add(make_job(status=status))

        assert await system.permanent_delete("user-1", job.id) is True
        assert job.id not in store.jobs

    @pytest.mark.parametrize(
        "status", [JobStatus.SCHEDULED, JobStatus.POSTING, JobStatus.FAILED]
    )
    @pytest.mark.asyncio
    async def test_rejects_active_jobs(self, system, store, make_job, status):
        job = store.add(make_job(status=status))

        with pytest.raises(InvalidTransitionError):
            await system.permanent_delete("user-1", job.id)
        assert job.id in store.jobs


# =============================================================================
# Event recording
# =============================================================================


class TestEventRecording:
    """A broken event log never undoes or hides a committed write."""

    @pytest.fixture
    def broken_events(self):
        events = MagicMock()
        events.record_job = AsyncMock(side_effect=OSError("disk full"))
        return events

    @pytest.fixture
    def logged_system(self, store, accounts, clock, broken_events):
        return SchedulingSystem(
            store=store, accounts=accounts, event_logger=broken_events, clock=clock
        )

    @pytest.mark.asyncio
    async def test_cancel_survives_log_failure(
        self, logged_system, store, make_job, broken_events, caplog
    ):
        job = store.add(make_job())

        cancelled = await logged_system.cancel_job("user-1", job.id)

        assert cancelled.status is JobStatus.CANCELLED
        assert store.jobs[job.id].status is JobStatus.CANCELLED
        broken_events.record_job.assert_awaited_once()
        assert "Failed to record cancelled event" in caplog.text

    @pytest.mark.asyncio
    async def test_enqueue_survives_log_failure(
        self, logged_system, store, sample_payload, clock
    ):
        job = await logged_system.enqueue("user-1", sample_payload, clock() + timedelta(hours=1))

        assert job.id in store.jobs

    @pytest.mark.asyncio
    async def test_update_survives_log_failure(self, logged_system, store, make_job):
        job = store.add(make_job())

        updated = await logged_system.update_job("user-1", job.id, {"title": "New title"})

        assert updated.payload.title == "New title"
        assert store.jobs[job.id].payload.title == "New title"
