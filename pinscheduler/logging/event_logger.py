"""Structured job event log: JSONL files plus optional Supabase mirror.

``JobEventLogger`` appends one JSON line per job transition to
``jobs.log`` (and ``job_errors.log`` for errors) using ``aiofiles``,
keeps an in-memory ring buffer for ``get_recent()``, and mirrors events
to the ``job_events`` table when a database client is given.

Global helpers:
    - ``init_event_logger()``  -- create and register the singleton
    - ``get_event_logger()``   -- retrieve it (raises if not initialised)
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import aiofiles

from pinscheduler.logging.models import JobEvent, JobEventType, LogLevel
from pinscheduler.utils import Clock, utc_now

logger = logging.getLogger(__name__)

JOB_EVENTS_TABLE = "job_events"


class JobEventLogger:
    """Audit trail for scheduled pin transitions.

    Parameters:
        log_dir: Directory for log files (created if missing).
        supabase_client: Optional :class:`~pinscheduler.database.SupabaseDB`
            (anything with an async ``insert(table, row)``).
        min_level: Minimum level mirrored to Supabase.
        max_recent: Ring buffer size.
        clock: Source of event timestamps.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        supabase_client: Any = None,
        min_level: LogLevel = LogLevel.INFO,
        max_recent: int = 1000,
        clock: Clock = utc_now,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.supabase = supabase_client
        self.min_level = min_level
        self._clock = clock

        self._main_log = self.log_dir / "jobs.log"
        self._error_log = self.log_dir / "job_errors.log"

        self._recent: List[JobEvent] = []
        self._max_recent = max_recent

        # Track pending async tasks to prevent garbage collection
        self._pending_tasks: Set["asyncio.Task[None]"] = set()

    async def record(
        self,
        event: JobEventType,
        job_id: str,
        *,
        owner: Optional[str] = None,
        status: Optional[str] = None,
        message: str = "",
        level: LogLevel = LogLevel.INFO,
        data: Optional[Dict[str, Any]] = None,
    ) -> JobEvent:
        """Record one job event and return it."""
        entry = JobEvent(
            timestamp=self._clock(),
            level=level,
            event=event,
            job_id=job_id,
            owner=owner,
            status=status,
            message=message,
            data=data or {},
        )

        self._recent.append(entry)
        if len(self._recent) > self._max_recent:
            self._recent.pop(0)

        await self._write_to_file(entry)

        if self.supabase and level.value >= self.min_level.value:
            task = asyncio.create_task(self._write_to_supabase(entry))
            self._pending_tasks.add(task)
            task.add_done_callback(self._pending_tasks.discard)

        return entry

    async def record_job(
        self,
        event: JobEventType,
        job: Any,
        message: str = "",
        level: LogLevel = LogLevel.INFO,
        **data: Any,
    ) -> JobEvent:
        """Record an event for a :class:`ScheduledJob` instance."""
        return await self.record(
            event,
            job.id,
            owner=job.owner,
            status=job.status.value,
            message=message,
            level=level,
            data=data,
        )

    def get_recent(
        self,
        limit: int = 20,
        job_id: Optional[str] = None,
        event: Optional[JobEventType] = None,
    ) -> List[JobEvent]:
        """Return recent events from the in-memory ring buffer."""
        events = self._recent.copy()
        if job_id is not None:
            events = [e for e in events if e.job_id == job_id]
        if event is not None:
            events = [e for e in events if e.event == event]
        return events[-limit:]

    async def flush(self) -> None:
        """Wait for pending Supabase writes.  Call before shutdown."""
        if self._pending_tasks:
            await asyncio.gather(*self._pending_tasks, return_exceptions=True)
            self._pending_tasks.clear()

    async def _write_to_file(self, entry: JobEvent) -> None:
        """Append to ``jobs.log`` and, for ERROR and above, ``job_errors.log``."""
        json_line = entry.to_json() + "\n"

        async with aiofiles.open(self._main_log, "a", encoding="utf-8") as f:
            await f.write(json_line)

        if entry.level.value >= LogLevel.ERROR.value:
            async with aiofiles.open(self._error_log, "a", encoding="utf-8") as f:
                await f.write(json_line)

    async def _write_to_supabase(self, entry: JobEvent) -> None:
        try:
            await self.supabase.insert(JOB_EVENTS_TABLE, entry.to_dict())
        except Exception as exc:
            logger.warning("[EVENTS] Failed to mirror job event to Supabase: %s", exc)


# ======================================================================
# GLOBAL EVENT LOGGER SINGLETON
# ======================================================================

_event_logger: Optional[JobEventLogger] = None


def init_event_logger(
    log_dir: str = "logs",
    supabase_client: Any = None,
    min_level: LogLevel = LogLevel.INFO,
) -> JobEventLogger:
    """Initialise and register the global ``JobEventLogger``."""
    global _event_logger
    _event_logger = JobEventLogger(
        log_dir=log_dir,
        supabase_client=supabase_client,
        min_level=min_level,
    )
    return _event_logger


def get_event_logger() -> JobEventLogger:
    """Retrieve the global ``JobEventLogger``.

    Raises:
        RuntimeError: If ``init_event_logger()`` has not been called yet.
    """
    if _event_logger is None:
        raise RuntimeError(
            "Event logger not initialized. Call init_event_logger() first."
        )
    return _event_logger
