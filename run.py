"""
Entry point: run the pin scheduler loops or an operator command.

Usage::

    python run.py serve
    python run.py trigger
    python run.py sync-analytics --owner USER_ID [--account ACCOUNT_ID] [--force]
    python run.py schedule --owner USER_ID --image-url URL --title T --description D \
        --board BOARD_ID --at 2025-07-01T09:00:00Z [--recurrence weekly --interval 2]
    python run.py list --owner USER_ID [--status scheduled]
    python run.py update --owner USER_ID --job JOB_ID [--title T] [--at TIME] [--status scheduled]
    python run.py cancel --owner USER_ID --job JOB_ID
    python run.py delete --owner USER_ID --job JOB_ID
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

from pinscheduler.config import Settings, get_settings, validate_env  # noqa: E402
from pinscheduler.database import get_db  # noqa: E402
from pinscheduler.logging import JobEventLogger, init_event_logger  # noqa: E402
from pinscheduler.scheduling import (  # noqa: E402
    AnalyticsScheduler,
    CreditLedger,
    JobStatus,
    JobStore,
    PinPayload,
    PublishExecutor,
    PublishingScheduler,
    RecurrenceType,
    ScheduledJob,
    SchedulingSystem,
)
from pinscheduler.tools import PinterestClient  # noqa: E402
from pinscheduler.utils import parse_timestamp  # noqa: E402

logger = logging.getLogger("run")


@dataclass
class App:
    """Wired components for one process."""

    settings: Settings
    system: SchedulingSystem
    publishing: PublishingScheduler
    analytics: AnalyticsScheduler
    events: JobEventLogger


async def build_app(settings: Optional[Settings] = None) -> App:
    """Connect to Supabase and wire every component from ``settings``."""
    settings = settings or get_settings()
    validate_env(strict=True)
    db = await get_db()

    events = init_event_logger(
        log_dir=settings.log_dir,
        supabase_client=db if settings.mirror_events_to_db else None,
    )
    retry_policy = settings.retry.to_policy()
    store = JobStore(db, max_retries=retry_policy.max_retries)
    pinterest = PinterestClient(
        base_url=settings.pinterest_api_base,
        timeout=settings.pinterest_timeout_seconds,
    )
    sched = settings.scheduler

    executor = PublishExecutor(
        store=store,
        accounts=db,
        publisher=pinterest,
        ledger=CreditLedger(db),
        retry_policy=retry_policy,
        event_logger=events,
        credit_cost=sched.credit_cost,
        stuck_timeout_minutes=sched.stuck_timeout_minutes,
        materialize_recurrence=sched.materialize_recurrence,
        max_schedule_days=sched.max_schedule_days,
    )
    publishing = PublishingScheduler(
        store=store,
        executor=executor,
        interval_seconds=sched.interval_seconds,
        batch_size=sched.batch_size,
        startup_delay_seconds=sched.startup_delay_seconds,
        recovery_interval_cycles=sched.recovery_interval_cycles,
    )
    an = settings.analytics
    analytics = AnalyticsScheduler(
        store=store,
        accounts=db,
        analytics_client=pinterest,
        interval_hours=an.interval_hours,
        startup_delay_seconds=an.startup_delay_seconds,
        staleness_hours=an.staleness_hours,
        per_account_limit=an.per_account_limit,
        lookback_days=an.lookback_days,
        job_delay_seconds=an.job_delay_seconds,
        account_delay_seconds=an.account_delay_seconds,
        event_logger=events,
    )
    system = SchedulingSystem(
        store=store,
        accounts=db,
        plan_limits=settings.plan_limits,
        max_schedule_days=sched.max_schedule_days,
        event_logger=events,
    )
    return App(
        settings=settings,
        system=system,
        publishing=publishing,
        analytics=analytics,
        events=events,
    )


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


async def serve(app: App) -> None:
    """Run both loops until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt handling in __main__ covers SIGINT
            pass

    app.publishing.start()
    app.analytics.start()
    logger.info("Scheduler running. Press Ctrl+C to stop.")

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        await app.publishing.stop()
        await app.analytics.stop()
        await app.events.flush()


def _job_line(job: ScheduledJob) -> str:
    return json.dumps({
        "id": job.id,
        "status": job.status.value,
        "scheduled_for": job.scheduled_for.isoformat(),
        "retry_count": job.retry_count,
        "next_retry_at": job.next_retry_at.isoformat() if job.next_retry_at else None,
        "external_id": job.external_id,
        "title": job.payload.title,
        "error_message": job.error_message,
    })


def _timestamp(value: str) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"not an ISO timestamp: {value!r}")
    return parsed


# CLI option -> update_job field
_UPDATE_OPTIONS = {
    "image_url": "image_url",
    "title": "title",
    "description": "description",
    "board": "board_id",
    "link": "link",
    "at": "scheduled_for",
    "timezone": "timezone",
    "status": "status",
}


def _update_fields(args: argparse.Namespace) -> Dict[str, Any]:
    fields = {
        field: getattr(args, option)
        for option, field in _UPDATE_OPTIONS.items()
        if getattr(args, option) is not None
    }
    if args.recurrence == "none":
        fields["recurrence"] = None
    elif args.recurrence is not None:
        fields["recurrence"] = {"type": args.recurrence, "interval": args.interval}
    return fields


async def dispatch(args: argparse.Namespace, app: App) -> int:
    """Run the command selected by ``args`` and return an exit code."""
    if args.command == "serve":
        await serve(app)
    elif args.command == "trigger":
        summary = await app.publishing.manual_trigger()
        print(json.dumps(summary.to_dict()))
    elif args.command == "sync-analytics":
        summary = await app.analytics.manual_sync(
            args.owner, account_id=args.account, force=args.force
        )
        print(json.dumps(summary.to_dict()))
    elif args.command == "list":
        jobs = await app.system.list_jobs(
            args.owner, status=args.status, limit=args.limit, offset=args.offset
        )
        for job in jobs:
            print(_job_line(job))
    elif args.command == "schedule":
        payload = PinPayload(
            image_url=args.image_url,
            title=args.title,
            description=args.description,
            board_id=args.board,
            link=args.link,
            account_id=args.account,
        )
        recurrence = (
            {"type": args.recurrence, "interval": args.interval} if args.recurrence else None
        )
        job = await app.system.enqueue(
            args.owner, payload, args.at, timezone=args.timezone, recurrence=recurrence
        )
        print(_job_line(job))
    elif args.command == "update":
        job = await app.system.update_job(args.owner, args.job, _update_fields(args))
        print(_job_line(job))
    elif args.command == "cancel":
        job = await app.system.cancel_job(args.owner, args.job)
        print(_job_line(job))
    elif args.command == "delete":
        await app.system.permanent_delete(args.owner, args.job)
        print(json.dumps({"deleted": args.job}))
    else:
        raise ValueError(f"Unknown command: {args.command}")

    await app.events.flush()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pinscheduler",
        description="Deferred Pinterest pin publishing scheduler",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the publishing and analytics loops")
    sub.add_parser("trigger", help="Run one publishing pass now")

    sync = sub.add_parser("sync-analytics", help="Refresh metrics for one owner")
    sync.add_argument("--owner", required=True, help="User id")
    sync.add_argument("--account", default=None, help="Pinterest account id")
    sync.add_argument(
        "--force", action="store_true", help="Ignore the staleness window"
    )

    recurrence_types = [t.value for t in RecurrenceType]

    schedule = sub.add_parser("schedule", help="Schedule a new pin")
    schedule.add_argument("--owner", required=True, help="User id")
    schedule.add_argument("--image-url", required=True, help="Public image URL")
    schedule.add_argument("--title", required=True)
    schedule.add_argument("--description", required=True)
    schedule.add_argument("--board", required=True, help="Pinterest board id")
    schedule.add_argument("--link", default=None, help="Destination link")
    schedule.add_argument("--account", default=None, help="Pinterest account id")
    schedule.add_argument(
        "--at", required=True, type=_timestamp, help="Publication time (ISO 8601)"
    )
    schedule.add_argument("--timezone", default="UTC", help="IANA zone name")
    schedule.add_argument("--recurrence", choices=recurrence_types, default=None)
    schedule.add_argument("--interval", type=int, default=1)

    update = sub.add_parser("update", help="Edit a scheduled pin")
    update.add_argument("--owner", required=True, help="User id")
    update.add_argument("--job", required=True, help="Scheduled pin id")
    update.add_argument("--image-url", default=None)
    update.add_argument("--title", default=None)
    update.add_argument("--description", default=None)
    update.add_argument("--board", default=None)
    update.add_argument("--link", default=None)
    update.add_argument("--at", type=_timestamp, default=None)
    update.add_argument("--timezone", default=None)
    update.add_argument(
        "--status",
        choices=[JobStatus.SCHEDULED.value, JobStatus.CANCELLED.value],
        default=None,
        help="Re-arm or cancel the pin",
    )
    update.add_argument(
        "--recurrence",
        choices=recurrence_types + ["none"],
        default=None,
        help="New repeat pattern, or 'none' to stop repeating",
    )
    update.add_argument("--interval", type=int, default=1)

    lst = sub.add_parser("list", help="List an owner's scheduled pins")
    lst.add_argument("--owner", required=True, help="User id")
    lst.add_argument(
        "--status",
        choices=[s.value for s in JobStatus],
        default=None,
        help="Filter by status",
    )
    lst.add_argument("--limit", type=int, default=20)
    lst.add_argument("--offset", type=int, default=0)

    for name, help_text in (
        ("cancel", "Cancel a scheduled pin"),
        ("delete", "Permanently delete a cancelled or posted pin"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--owner", required=True, help="User id")
        cmd.add_argument("--job", required=True, help="Scheduled pin id")

    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    app = await build_app(settings)
    return await dispatch(args, app)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
