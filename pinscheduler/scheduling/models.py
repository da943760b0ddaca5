"""
Scheduling data models: JobStatus, PinPayload, PinMetrics, Recurrence, ScheduledJob.

Defines the core data structures used by the scheduling subsystem:
- ``JobStatus``: Lifecycle status of a scheduled pin.
- ``PinPayload``: The Pinterest pin content handed to the publish service.
- ``PinMetrics``: Engagement counters and derived rates for a posted pin.
- ``Recurrence``: Optional repeat pattern attached to a job.
- ``ScheduledJob``: One "publish this pin at time T" request.

Rows in the ``scheduled_pins`` table map to ``ScheduledJob`` through
:meth:`ScheduledJob.from_row` / :meth:`ScheduledJob.to_row`.
"""

import calendar
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from pinscheduler.utils import parse_timestamp, utc_now


# =============================================================================
# JOB STATUS ENUM
# =============================================================================


class JobStatus(Enum):
    """Lifecycle status of a scheduled pin.

    Transitions:
        SCHEDULED -> POSTING -> POSTED
                             -> FAILED -> POSTING -> ... -> FAILED (cap reached)
        SCHEDULED | FAILED | POSTING -> CANCELLED
    """

    SCHEDULED = "scheduled"
    POSTING = "posting"
    POSTED = "posted"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_absorbing(self) -> bool:
        """``POSTED`` and ``CANCELLED`` never transition again."""
        return self in {JobStatus.POSTED, JobStatus.CANCELLED}

    @property
    def is_claimable(self) -> bool:
        """Statuses from which the scheduler may claim a job into ``POSTING``."""
        return self in {JobStatus.SCHEDULED, JobStatus.FAILED}


# Statuses that count against an owner's plan limit.
ACTIVE_STATUSES = (JobStatus.SCHEDULED, JobStatus.POSTING, JobStatus.FAILED)

# Statuses in which a job may be permanently deleted.
DELETABLE_STATUSES = (JobStatus.CANCELLED, JobStatus.POSTED)

# Active scheduled pins allowed per plan.
DEFAULT_PLAN_LIMITS: Dict[str, int] = {
    "free": 10,
    "creator": 100,
    "pro": 500,
    "agency": 2000,
}


# =============================================================================
# RECURRENCE
# =============================================================================


class RecurrenceType(Enum):
    """Supported recurrence units."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class Recurrence:
    """Repeat pattern: every ``interval`` units of ``type``.

    Attributes:
        type: Recurrence unit.
        interval: Number of units between occurrences (1-30).
    """

    type: RecurrenceType
    interval: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "interval": self.interval}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Recurrence"]:
        if not data:
            return None
        return cls(type=RecurrenceType(data["type"]), interval=int(data.get("interval", 1)))

    def advance(self, when: datetime) -> datetime:
        """One step forward from ``when``.

        Monthly steps keep the day of month, clamped to the target
        month's length (Jan 31 + 1 month -> Feb 28/29).
        """
        if self.type is RecurrenceType.DAILY:
            return when + timedelta(days=self.interval)
        if self.type is RecurrenceType.WEEKLY:
            return when + timedelta(weeks=self.interval)
        month_index = when.month - 1 + self.interval
        year = when.year + month_index // 12
        month = month_index % 12 + 1
        day = min(when.day, calendar.monthrange(year, month)[1])
        return when.replace(year=year, month=month, day=day)

    def next_after(self, start: datetime, now: datetime) -> datetime:
        """First occurrence strictly after ``now`` in the series anchored at ``start``."""
        occurrence = self.advance(start)
        while occurrence <= now:
            occurrence = self.advance(occurrence)
        return occurrence


# =============================================================================
# PIN PAYLOAD
# =============================================================================


@dataclass(frozen=True)
class PinPayload:
    """Platform-specific publish content for one pin.

    Attributes:
        image_url: Public URL of the pin image.
        title: Pin title (Pinterest limit: 100 characters).
        description: Pin description (Pinterest limit: 500 characters).
        board_id: Destination board.
        link: Optional destination link opened from the pin.
        account_id: Optional ``pinterest_accounts`` row selecting which
            connected account publishes.  ``None`` uses the owner's
            default token.
    """

    image_url: str
    title: str
    description: str
    board_id: str
    link: Optional[str] = None
    account_id: Optional[str] = None

    def to_pin_request(self) -> Dict[str, Any]:
        """Build the Pinterest ``POST /v5/pins`` request body."""
        body: Dict[str, Any] = {
            "board_id": self.board_id,
            "title": self.title,
            "description": self.description,
            "media_source": {
                "source_type": "image_url",
                "url": self.image_url,
            },
        }
        if self.link:
            body["link"] = self.link
        return body


# =============================================================================
# PIN METRICS
# =============================================================================


@dataclass
class PinMetrics:
    """Engagement counters for a posted pin.

    Rates are percentages rounded to two decimals and are ``0`` whenever
    ``impressions`` is ``0``.
    """

    impressions: int = 0
    clicks: int = 0
    saves: int = 0
    engagement_rate: float = 0.0
    click_through_rate: float = 0.0
    save_rate: float = 0.0
    last_updated: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "impressions": self.impressions,
            "clicks": self.clicks,
            "saves": self.saves,
            "engagement_rate": self.engagement_rate,
            "click_through_rate": self.click_through_rate,
            "save_rate": self.save_rate,
            "metrics_last_updated": (
                self.last_updated.isoformat() if self.last_updated else None
            ),
        }


# =============================================================================
# SCHEDULED JOB
# =============================================================================


@dataclass
class ScheduledJob:
    """A pin scheduled for deferred publication.

    Attributes:
        id: Unique identifier (UUID), immutable.
        owner: Requesting user id; all ownership checks use it.
        payload: Pin content passed verbatim to the publish service.
        scheduled_for: When the job becomes eligible (timezone-aware UTC).
        timezone: Display-only IANA zone name.
        status: Current lifecycle status.
        retry_count: Failed attempts so far (never above the retry cap).
        next_retry_at: When a ``FAILED`` job becomes eligible again.
        error_message: Last failure reason, cleared on success.
        credits_deducted: Whether the publish credit has been charged.
        external_id: Pinterest pin id once posted.
        metrics: Engagement counters (zeros until first refresh).
        recurrence: Optional repeat pattern.
        claimed_at: When the latest ``POSTING`` claim happened.
        posted_at: When the job reached ``POSTED``.
        created_at: Creation timestamp.
        updated_at: Last write timestamp.
    """

    id: str
    owner: str
    payload: PinPayload
    scheduled_for: datetime

    timezone: str = "UTC"
    status: JobStatus = JobStatus.SCHEDULED

    # Retry bookkeeping
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None

    # Publication results
    credits_deducted: bool = False
    external_id: Optional[str] = None
    metrics: PinMetrics = field(default_factory=PinMetrics)

    recurrence: Optional[Recurrence] = None

    claimed_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    # ----------------------------------------------------------------
    # Derived predicates
    # ----------------------------------------------------------------

    def is_permanently_failed(self, max_retries: int) -> bool:
        """``FAILED`` with the retry cap reached and no further attempt planned."""
        return (
            self.status is JobStatus.FAILED
            and self.next_retry_at is None
            and self.retry_count >= max_retries
        )

    def is_due(self, now: datetime, max_retries: int) -> bool:
        """Whether the scheduler should pick this job up at ``now``.

        A job is due when it is ``SCHEDULED`` or ``FAILED``, its
        ``scheduled_for`` has passed, its ``next_retry_at`` is unset or
        passed, and it is not a ``FAILED`` job that has used up its
        retries.  A ``FAILED`` job without a ``next_retry_at`` is never
        due.
        """
        if not self.status.is_claimable:
            return False
        if self.scheduled_for > now:
            return False
        if self.next_retry_at is not None and self.next_retry_at > now:
            return False
        if self.status is JobStatus.FAILED:
            return self.next_retry_at is not None and self.retry_count <= max_retries
        return True

    def is_metrics_stale(self, older_than: Optional[datetime]) -> bool:
        """Whether metrics need a refresh (``older_than=None`` means always)."""
        if self.status is not JobStatus.POSTED or not self.external_id:
            return False
        if older_than is None or self.metrics.last_updated is None:
            return True
        return self.metrics.last_updated < older_than

    def copy(self, **changes: Any) -> "ScheduledJob":
        """Return a shallow copy with ``changes`` applied."""
        return replace(self, **changes)

    # ----------------------------------------------------------------
    # Row mapping
    # ----------------------------------------------------------------

    def to_row(self) -> Dict[str, Any]:
        """Serialize to a ``scheduled_pins`` row dict."""
        row: Dict[str, Any] = {
            "id": self.id,
            "user_id": self.owner,
            "image_url": self.payload.image_url,
            "title": self.payload.title,
            "description": self.payload.description,
            "board_id": self.payload.board_id,
            "link": self.payload.link,
            "account_id": self.payload.account_id,
            "scheduled_for": self.scheduled_for.isoformat(),
            "timezone": self.timezone,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "next_retry_at": _iso(self.next_retry_at),
            "error_message": self.error_message,
            "credits_deducted": self.credits_deducted,
            "external_id": self.external_id,
            "recurrence": self.recurrence.to_dict() if self.recurrence else None,
            "claimed_at": _iso(self.claimed_at),
            "posted_at": _iso(self.posted_at),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        row.update(self.metrics.to_row())
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ScheduledJob":
        """Convert a database row dict to a ``ScheduledJob``.

        Args:
            row: Dict from a Supabase query result.

        Returns:
            A ``ScheduledJob`` instance.
        """
        payload = PinPayload(
            image_url=row.get("image_url", ""),
            title=row.get("title", ""),
            description=row.get("description", ""),
            board_id=row.get("board_id", ""),
            link=row.get("link"),
            account_id=row.get("account_id"),
        )
        metrics = PinMetrics(
            impressions=int(row.get("impressions") or 0),
            clicks=int(row.get("clicks") or 0),
            saves=int(row.get("saves") or 0),
            engagement_rate=float(row.get("engagement_rate") or 0.0),
            click_through_rate=float(row.get("click_through_rate") or 0.0),
            save_rate=float(row.get("save_rate") or 0.0),
            last_updated=parse_timestamp(row.get("metrics_last_updated")),
        )
        return cls(
            id=row["id"],
            owner=row["user_id"],
            payload=payload,
            scheduled_for=parse_timestamp(row["scheduled_for"]),
            timezone=row.get("timezone") or "UTC",
            status=JobStatus(row.get("status", "scheduled")),
            retry_count=int(row.get("retry_count") or 0),
            next_retry_at=parse_timestamp(row.get("next_retry_at")),
            error_message=row.get("error_message"),
            credits_deducted=bool(row.get("credits_deducted", False)),
            external_id=row.get("external_id"),
            metrics=metrics,
            recurrence=Recurrence.from_dict(row.get("recurrence")),
            claimed_at=parse_timestamp(row.get("claimed_at")),
            posted_at=parse_timestamp(row.get("posted_at")),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(row.get("updated_at")) or utc_now(),
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "JobStatus",
    "ACTIVE_STATUSES",
    "DELETABLE_STATUSES",
    "DEFAULT_PLAN_LIMITS",
    "RecurrenceType",
    "Recurrence",
    "PinPayload",
    "PinMetrics",
    "ScheduledJob",
]
