"""
Unified async database client for all scheduler persistence.

ALL database operations go through the SupabaseDB class defined here.
No direct Supabase calls should appear anywhere else in the codebase.

Tables:
    - ``scheduled_pins``      -- one row per scheduled job
    - ``profiles``            -- plan, credit balance, legacy access token
    - ``pinterest_accounts``  -- connected Pinterest accounts per user
    - ``job_events``          -- optional mirror of the job event log

Usage::

    from pinscheduler.database import get_db

    db = await get_db()
    rows = await db.get_due_pins(now=utc_now(), limit=10, max_retries=3)
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from supabase import AsyncClient, create_async_client

from pinscheduler.exceptions import DatabaseError, ValidationError
from pinscheduler.utils import ensure_utc

logger = logging.getLogger(__name__)

SCHEDULED_PINS = "scheduled_pins"
PROFILES = "profiles"
PINTEREST_ACCOUNTS = "pinterest_accounts"
JOB_EVENTS = "job_events"

STALE_ACCOUNT_PAGE_SIZE = 1000


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def validate_positive(value: Union[int, float], name: str) -> None:
    """Validate that *value* is strictly positive (> 0).

    Raises:
        ValidationError: If *value* is ``None`` or not positive.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


def _filter_ts(value: datetime) -> str:
    """Quote a timestamp for use inside a PostgREST ``or`` expression."""
    return f'"{ensure_utc(value).isoformat()}"'


def _status_values(statuses: Optional[Sequence[Any]]) -> Optional[List[str]]:
    if statuses is None:
        return None
    return [getattr(s, "value", s) for s in statuses]


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB:
    """Unified **async** database client for the scheduler.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    # -----------------------------------------------------------------
    # SCHEDULED PINS
    # -----------------------------------------------------------------

    async def insert_scheduled_pin(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a scheduled pin row.

        Args:
            row: Row dict.  Must contain ``id``, ``user_id``,
                ``scheduled_for`` and ``status``.

        Returns:
            The inserted row as stored.

        Raises:
            ValidationError: On missing fields.
            DatabaseError: When the insert returns no data.
        """
        if not row:
            raise ValidationError("scheduled pin cannot be None or empty")
        missing = {"id", "user_id", "scheduled_for", "status"} - set(row.keys())
        if missing:
            raise ValidationError(
                f"scheduled pin missing required fields: {sorted(missing)}"
            )

        result = await self.client.table(SCHEDULED_PINS).insert(row).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")
        return result.data[0]

    async def get_scheduled_pin(self, pin_id: str) -> Optional[Dict[str, Any]]:
        """Get a scheduled pin by ID, or ``None``."""
        validate_not_empty(pin_id, "pin_id")

        result = await (
            self.client.table(SCHEDULED_PINS)
            .select("*")
            .eq("id", pin_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def list_scheduled_pins(
        self,
        user_id: str,
        statuses: Optional[Sequence[Any]] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """List an owner's pins ordered by ``scheduled_for`` ascending."""
        validate_not_empty(user_id, "user_id")
        validate_positive(limit, "limit")
        if offset < 0:
            raise ValidationError(f"offset must be >= 0, got {offset}")

        query = (
            self.client.table(SCHEDULED_PINS)
            .select("*")
            .eq("user_id", user_id)
        )
        status_values = _status_values(statuses)
        if status_values:
            query = query.in_("status", status_values)

        result = await (
            query.order("scheduled_for", desc=False)
            .range(offset, offset + limit - 1)
            .execute()
        )
        return result.data

    async def count_active_pins(self, user_id: str) -> int:
        """Count an owner's pins that still occupy a plan slot.

        Active means ``scheduled`` or ``posting``, or ``failed`` with a
        retry still planned.  Permanently failed pins do not count.
        """
        validate_not_empty(user_id, "user_id")

        result = await (
            self.client.table(SCHEDULED_PINS)
            .select("id", count="exact")
            .eq("user_id", user_id)
            .or_(
                "status.in.(scheduled,posting),"
                "and(status.eq.failed,next_retry_at.not.is.null)"
            )
            .execute()
        )
        return result.count or 0

    async def get_due_pins(
        self, now: datetime, limit: int, max_retries: int
    ) -> List[Dict[str, Any]]:
        """Get pins due for publishing.

        A row is due when ``scheduled_for <= now`` and either it is
        ``scheduled`` with ``next_retry_at`` unset or passed, or it is
        ``failed`` with a passed ``next_retry_at`` and ``retry_count``
        within the cap.  Permanently failed rows (no ``next_retry_at``)
        never match.

        Returns:
            Rows ordered by ``scheduled_for`` ascending, at most ``limit``.
        """
        validate_positive(limit, "limit")
        ts = _filter_ts(now)

        result = await (
            self.client.table(SCHEDULED_PINS)
            .select("*")
            .in_("status", ["scheduled", "failed"])
            .lte("scheduled_for", ensure_utc(now).isoformat())
            .or_(
                f"and(status.eq.scheduled,or(next_retry_at.is.null,next_retry_at.lte.{ts})),"
                f"and(status.eq.failed,next_retry_at.lte.{ts},retry_count.lte.{max_retries})"
            )
            .order("scheduled_for", desc=False)
            .limit(limit)
            .execute()
        )
        return result.data

    def _stale_metrics_query(
        self,
        columns: str,
        older_than: Optional[datetime],
        user_id: Optional[str],
    ) -> Any:
        query = (
            self.client.table(SCHEDULED_PINS)
            .select(columns)
            .eq("status", "posted")
            .not_.is_("external_id", "null")
        )
        if older_than is not None:
            query = query.or_(
                "metrics_last_updated.is.null,"
                f"metrics_last_updated.lt.{_filter_ts(older_than)}"
            )
        if user_id is not None:
            query = query.eq("user_id", user_id)
        return query

    async def get_stale_metric_accounts(
        self,
        older_than: Optional[datetime],
        user_id: Optional[str] = None,
        account_id: Optional[str] = None,
        page_size: int = STALE_ACCOUNT_PAGE_SIZE,
    ) -> List[Tuple[str, Optional[str]]]:
        """Get the distinct ``(user_id, account_id)`` pairs owning stale pins.

        Pages through the two key columns only, so an account with a large
        backlog cannot hide the others.

        Returns:
            Pairs in order of first appearance.
        """
        validate_positive(page_size, "page_size")

        seen: Dict[Tuple[str, Optional[str]], None] = {}
        offset = 0
        while True:
            query = self._stale_metrics_query("user_id,account_id", older_than, user_id)
            if account_id is not None:
                query = query.eq("account_id", account_id)
            result = await (
                query.order("id", desc=False)
                .range(offset, offset + page_size - 1)
                .execute()
            )
            rows = result.data or []
            for row in rows:
                seen.setdefault((row["user_id"], row.get("account_id")), None)
            if len(rows) < page_size:
                break
            offset += page_size
        return list(seen)

    async def get_stale_metric_pins(
        self,
        older_than: Optional[datetime],
        limit: int,
        user_id: Optional[str] = None,
        account_id: Optional[str] = None,
        exact_account: bool = False,
    ) -> List[Dict[str, Any]]:
        """Get posted pins whose metrics are missing or older than ``older_than``.

        Args:
            older_than: Staleness cutoff.  ``None`` returns every posted
                pin with an ``external_id`` (forced sync).
            limit: Maximum rows.
            user_id: Restrict to one owner.
            account_id: Restrict to one connected account.
            exact_account: Match ``account_id`` even when it is ``None``
                (pins published through the legacy profile token).

        Returns:
            Rows ordered never-refreshed first, then oldest refresh first.
        """
        validate_positive(limit, "limit")

        query = self._stale_metrics_query("*", older_than, user_id)
        if account_id is not None:
            query = query.eq("account_id", account_id)
        elif exact_account:
            query = query.is_("account_id", "null")

        result = await (
            query.order("metrics_last_updated", desc=False, nullsfirst=True)
            .limit(limit)
            .execute()
        )
        return result.data

    async def get_stuck_pins(
        self, claimed_before: datetime, limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Get pins left in ``posting`` since before ``claimed_before``."""
        result = await (
            self.client.table(SCHEDULED_PINS)
            .select("*")
            .eq("status", "posting")
            .lte("claimed_at", ensure_utc(claimed_before).isoformat())
            .order("claimed_at", desc=False)
            .limit(limit)
            .execute()
        )
        return result.data

    async def update_scheduled_pin(
        self,
        pin_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Sequence[Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Conditionally update a scheduled pin.

        The update only applies when the row's current status is one of
        ``expected_statuses`` (when given).  This single conditional
        statement is what prevents two pollers from advancing the same
        job.

        Returns:
            The updated row, or ``None`` when no row matched (lost race
            or missing row).

        Raises:
            ValidationError: If *fields* is empty.
        """
        validate_not_empty(pin_id, "pin_id")
        if not fields:
            raise ValidationError("update fields cannot be empty")

        query = (
            self.client.table(SCHEDULED_PINS)
            .update(fields)
            .eq("id", pin_id)
        )
        status_values = _status_values(expected_statuses)
        if status_values:
            query = query.in_("status", status_values)

        result = await query.execute()
        return result.data[0] if result.data else None

    async def delete_scheduled_pin(
        self, pin_id: str, expected_statuses: Sequence[Any]
    ) -> bool:
        """Delete a pin if its status is one of ``expected_statuses``."""
        validate_not_empty(pin_id, "pin_id")

        result = await (
            self.client.table(SCHEDULED_PINS)
            .delete()
            .eq("id", pin_id)
            .in_("status", _status_values(expected_statuses))
            .execute()
        )
        return bool(result.data)

    # -----------------------------------------------------------------
    # PROFILES (plan + credit balance)
    # -----------------------------------------------------------------

    async def get_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get a user's profile row, or ``None``."""
        validate_not_empty(user_id, "user_id")

        result = await (
            self.client.table(PROFILES)
            .select("id, plan_type, credits_remaining, is_pro")
            .eq("id", user_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def get_plan_type(self, user_id: str) -> str:
        """Get a user's plan, defaulting to ``"free"``."""
        profile = await self.get_profile(user_id)
        return (profile or {}).get("plan_type") or "free"

    async def get_credits_remaining(self, user_id: str) -> Optional[int]:
        """Get a user's remaining credits, or ``None`` without a profile."""
        profile = await self.get_profile(user_id)
        if profile is None:
            return None
        return int(profile.get("credits_remaining") or 0)

    async def set_credits_remaining(self, user_id: str, value: int) -> None:
        """Overwrite a user's remaining credits."""
        validate_not_empty(user_id, "user_id")
        if value < 0:
            raise ValidationError(f"credits_remaining must be >= 0, got {value}")

        await (
            self.client.table(PROFILES)
            .update({"credits_remaining": value})
            .eq("id", user_id)
            .execute()
        )

    # -----------------------------------------------------------------
    # PINTEREST ACCOUNTS (access tokens)
    # -----------------------------------------------------------------

    async def get_access_token(
        self, user_id: str, account_id: Optional[str] = None
    ) -> Optional[str]:
        """Resolve a usable Pinterest access token.

        Without ``account_id`` the legacy single token stored on the
        profile is used; otherwise the token of the matching
        ``pinterest_accounts`` row owned by ``user_id``.

        Returns:
            The access token or ``None`` if none is stored.
        """
        validate_not_empty(user_id, "user_id")

        if not account_id:
            result = await (
                self.client.table(PROFILES)
                .select("pinterest_access_token")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
            row = result.data[0] if result.data else {}
            return row.get("pinterest_access_token") or None

        result = await (
            self.client.table(PINTEREST_ACCOUNTS)
            .select("access_token")
            .eq("id", account_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        row = result.data[0] if result.data else {}
        return row.get("access_token") or None

    # -----------------------------------------------------------------
    # JOB EVENTS
    # -----------------------------------------------------------------

    async def insert(self, table: str, row: Dict[str, Any]) -> None:
        """Insert a single row into ``table`` (used by the event log mirror)."""
        validate_not_empty(table, "table")
        await self.client.table(table).insert(row).execute()


# =============================================================================
# GLOBAL DATABASE INSTANCE (Singleton)
# =============================================================================

_db_instance: Optional[SupabaseDB] = None
_db_lock: Optional[asyncio.Lock] = None

# Thread lock for safe initialisation of the async lock itself.
_init_lock = threading.Lock()


async def get_db() -> SupabaseDB:
    """Get the global async database instance.

    The first call creates the :class:`SupabaseDB` singleton; subsequent
    calls return the same instance.
    """
    global _db_instance, _db_lock

    if _db_lock is None:
        with _init_lock:
            if _db_lock is None:
                _db_lock = asyncio.Lock()

    if _db_instance is None:
        async with _db_lock:
            if _db_instance is None:
                _db_instance = await SupabaseDB.create()

    return _db_instance
