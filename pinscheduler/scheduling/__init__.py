"""Scheduling subsystem: deferred pin publishing, retries, metrics refresh."""

from pinscheduler.scheduling.models import (
    JobStatus,
    PinMetrics,
    PinPayload,
    Recurrence,
    RecurrenceType,
    ScheduledJob,
)
from pinscheduler.scheduling.retry_policy import RetryDecision, RetryPolicy
from pinscheduler.scheduling.job_store import JobStore
from pinscheduler.scheduling.credit_ledger import CreditLedger
from pinscheduler.scheduling.publish_executor import ExecutionOutcome, PublishExecutor
from pinscheduler.scheduling.publishing_scheduler import PublishingScheduler, TickSummary
from pinscheduler.scheduling.analytics_scheduler import AnalyticsScheduler, AnalyticsSummary
from pinscheduler.scheduling.scheduling_system import SchedulingSystem

__all__ = [
    "JobStatus",
    "PinMetrics",
    "PinPayload",
    "Recurrence",
    "RecurrenceType",
    "ScheduledJob",
    "RetryDecision",
    "RetryPolicy",
    "JobStore",
    "CreditLedger",
    "ExecutionOutcome",
    "PublishExecutor",
    "PublishingScheduler",
    "TickSummary",
    "AnalyticsScheduler",
    "AnalyticsSummary",
    "SchedulingSystem",
]
