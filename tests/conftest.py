"""Shared fixtures for the pin scheduler test suite."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from pinscheduler.config import reset_settings
from pinscheduler.scheduling.credit_ledger import CreditLedger
from pinscheduler.scheduling.job_store import _expected, _serialize
from pinscheduler.scheduling.models import (
    ACTIVE_STATUSES,
    JobStatus,
    PinMetrics,
    PinPayload,
    ScheduledJob,
)
from pinscheduler.scheduling.publish_executor import PublishExecutor
from pinscheduler.scheduling.retry_policy import RetryPolicy
from pinscheduler.scheduling.scheduling_system import SchedulingSystem


# ---------------------------------------------------------------------------
# Ensure we don't hit real services during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear credentials and overrides so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "PINTEREST_API_BASE",
        "LOG_LEVEL",
        "LOG_DIR",
        "SCHEDULER_INTERVAL_SECONDS",
        "SCHEDULER_BATCH_SIZE",
        "SCHEDULER_MATERIALIZE_RECURRENCE",
        "RETRY_MAX_RETRIES",
        "ANALYTICS_INTERVAL_HOURS",
        "ANALYTICS_JOB_DELAY_SECONDS",
        "ANALYTICS_ACCOUNT_DELAY_SECONDS",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


# ---------------------------------------------------------------------------
# Common datetime fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock(sample_utc_now):
    return FakeClock(sample_utc_now)


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------
class FakeJobStore:
    """In-memory JobStore with the same conditional-update semantics.

    Updates go through the real row serialization so the fake stays
    faithful to how fields are persisted.
    """

    def __init__(self, clock: FakeClock, max_retries: int = 3) -> None:
        self.jobs: Dict[str, ScheduledJob] = {}
        self.max_retries = max_retries
        self._clock = clock
        self.update_calls: List[Tuple[str, Dict[str, Any], Any]] = []

    def add(self, job: ScheduledJob) -> ScheduledJob:
        self.jobs[job.id] = job
        return job

    async def insert(self, job: ScheduledJob) -> ScheduledJob:
        self.jobs[job.id] = job.copy()
        return job.copy()

    async def get(self, job_id: str) -> Optional[ScheduledJob]:
        job = self.jobs.get(job_id)
        return job.copy() if job else None

    async def list_for_owner(self, owner, status=None, limit=20, offset=0):
        statuses = _expected(status)
        jobs = [
            j for j in self.jobs.values()
            if j.owner == owner and (statuses is None or j.status in statuses)
        ]
        jobs.sort(key=lambda j: j.scheduled_for)
        return [j.copy() for j in jobs[offset:offset + limit]]

    async def count_active(self, owner: str) -> int:
        return sum(
            1 for j in self.jobs.values()
            if j.owner == owner
            and j.status in ACTIVE_STATUSES
            and not j.is_permanently_failed(self.max_retries)
        )

    async def fetch_due(self, now: datetime, limit: int) -> List[ScheduledJob]:
        due = [j for j in self.jobs.values() if j.is_due(now, self.max_retries)]
        due.sort(key=lambda j: j.scheduled_for)
        return [j.copy() for j in due[:limit]]

    def _stale(self, older_than, owner, account_id, exact_account=False):
        return [
            j for j in self.jobs.values()
            if j.is_metrics_stale(older_than)
            and (owner is None or j.owner == owner)
            and (
                j.payload.account_id == account_id
                if account_id is not None or exact_account
                else True
            )
        ]

    async def fetch_stale_metric_accounts(self, older_than, owner=None, account_id=None):
        pairs: Dict[Tuple[str, Optional[str]], None] = {}
        for job in self._stale(older_than, owner, account_id):
            pairs.setdefault((job.owner, job.payload.account_id), None)
        return list(pairs)

    async def fetch_published_with_stale_metrics(
        self, older_than, limit, owner=None, account_id=None, exact_account=False
    ):
        jobs = self._stale(older_than, owner, account_id, exact_account)
        jobs.sort(key=lambda j: (
            j.metrics.last_updated is not None,
            j.metrics.last_updated or datetime.min.replace(tzinfo=timezone.utc),
        ))
        return [j.copy() for j in jobs[:limit]]

    async def fetch_stuck(self, claimed_before: datetime, limit: int = 50):
        return [
            j.copy() for j in self.jobs.values()
            if j.status is JobStatus.POSTING
            and j.claimed_at is not None
            and j.claimed_at <= claimed_before
        ][:limit]

    async def update(self, job_id, fields, expected_status=None):
        self.update_calls.append((job_id, dict(fields), expected_status))
        job = self.jobs.get(job_id)
        if job is None:
            return None
        expected = _expected(expected_status)
        if expected is not None and job.status not in expected:
            return None
        row = job.to_row()
        row.update(_serialize(dict(fields, updated_at=self._clock())))
        updated = ScheduledJob.from_row(row)
        self.jobs[job_id] = updated
        return updated.copy()

    async def update_metrics(self, job_id: str, metrics: PinMetrics):
        return await self.update(job_id, metrics.to_row())

    async def delete(self, job_id, expected_status) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status not in _expected(expected_status):
            return False
        del self.jobs[job_id]
        return True


class FakeAccounts:
    """Account store, plan lookup and credit balance in one object."""

    def __init__(self) -> None:
        self.tokens: Dict[Tuple[str, Optional[str]], str] = {}
        self.plans: Dict[str, str] = {}
        self.credits: Dict[str, int] = {}

    async def get_access_token(self, owner, account_id=None):
        return self.tokens.get((owner, account_id))

    async def get_plan_type(self, owner):
        return self.plans.get(owner, "free")

    async def get_credits_remaining(self, owner):
        return self.credits.get(owner)

    async def set_credits_remaining(self, owner, value):
        self.credits[owner] = value


class FakePublisher:
    """Publish service returning scripted results in order.

    Script entries are pin ids or exceptions; once exhausted every call
    succeeds with a generated pin id.
    """

    def __init__(self) -> None:
        self.script: List[Any] = []
        self.calls: List[Tuple[str, PinPayload]] = []

    async def publish_pin(self, access_token: str, payload: PinPayload) -> str:
        self.calls.append((access_token, payload))
        if self.script:
            result = self.script.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return f"pin-{len(self.calls)}"


class FakeAnalyticsClient:
    """Analytics service keyed by pin id; values may be exceptions."""

    def __init__(self) -> None:
        self.responses: Dict[str, Any] = {}
        self.calls: List[Tuple[str, str, Any, Any]] = []

    async def get_pin_analytics(self, access_token, pin_id, start_date, end_date):
        self.calls.append((access_token, pin_id, start_date, end_date))
        result = self.responses.get(pin_id, {})
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def store(clock):
    return FakeJobStore(clock)


@pytest.fixture
def accounts():
    fake = FakeAccounts()
    fake.tokens[("user-1", None)] = "token-default"
    fake.tokens[("user-1", "acct-1")] = "token-acct-1"
    fake.credits["user-1"] = 10
    return fake


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def analytics_client():
    return FakeAnalyticsClient()


@pytest.fixture
def ledger(accounts):
    return CreditLedger(accounts)


@pytest.fixture
def executor(store, accounts, publisher, ledger, clock):
    return PublishExecutor(
        store=store,
        accounts=accounts,
        publisher=publisher,
        ledger=ledger,
        retry_policy=RetryPolicy(),
        clock=clock,
    )


@pytest.fixture
def system(store, accounts, clock):
    return SchedulingSystem(store=store, accounts=accounts, clock=clock)


@pytest.fixture
def sample_payload():
    return PinPayload(
        image_url="https://cdn.example.com/pin.png",
        title="Autumn reading list",
        description="Ten books for cozy evenings",
        board_id="board-1",
        link="https://example.com/autumn",
    )


@pytest.fixture
def make_job(clock, sample_payload):
    """Factory for ScheduledJob instances with sensible defaults."""
    counter = {"n": 0}

    def _make(**overrides: Any) -> ScheduledJob:
        counter["n"] += 1
        values: Dict[str, Any] = {
            "id": f"job-{counter['n']}",
            "owner": "user-1",
            "payload": sample_payload,
            "scheduled_for": clock() - timedelta(minutes=1),
            "created_at": clock() - timedelta(days=1),
            "updated_at": clock() - timedelta(days=1),
        }
        values.update(overrides)
        return ScheduledJob(**values)

    return _make


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client whose query builder returns itself.

    Set ``client.result`` to control what ``execute()`` returns.
    """
    client = MagicMock()
    table_mock = MagicMock()
    for method in (
        "select", "insert", "update", "delete", "eq", "gte", "lte", "lt",
        "in_", "or_", "is_", "order", "limit", "range", "single",
    ):
        getattr(table_mock, method).return_value = table_mock
    table_mock.not_ = table_mock

    client.result = MagicMock(data=[], count=0)

    async def mock_execute():
        return client.result

    table_mock.execute = AsyncMock(side_effect=mock_execute)
    client.table.return_value = table_mock
    client.query = table_mock
    return client
