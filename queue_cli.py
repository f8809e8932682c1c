#!/usr/bin/env python3
"""
Queue CLI — manage the NIPR verification queue from the terminal.

Commands:
    submit    Submit a verification for a user (runs now if the queue is idle).
    run-once  Release stale leases, then run the next pending job.
    drain     Keep running jobs until the queue is empty.
    list      Show jobs in the queue (optionally filtered by status/user).
    status    Show one job as its owner would see it.
    reclaim   Release expired leases without running anything.
    stats     Count jobs per status.

Usage examples::

    python queue_cli.py submit --user u-42 --last-name Doe --npn 1234567 --ssn 1234 --dob 01/31/1980
    python queue_cli.py run-once
    python queue_cli.py list --status pending
"""

import argparse
import sqlite3
import sys
from typing import Optional

from dotenv import load_dotenv

from nipr_verify.config import QueueSettings
from nipr_verify.queue import (
    DuplicateSubmissionError,
    InlineDispatcher,
    JobNotFoundError,
    JobStore,
    SubmissionGatekeeper,
    VerificationInput,
    Worker,
)
from nipr_verify.queue.models import STATUSES


def _build_executor(settings: QueueSettings):
    from nipr_verify.nipr_automation import NIPRExecutor  # lazy: pulls in playwright

    return NIPRExecutor(downloads_dir=settings.downloads_dir)


def _build_user_data_sink(settings: QueueSettings):
    if not settings.user_data_api_url:
        return None
    from nipr_verify.user_data import UserDataClient

    return UserDataClient(settings.user_data_api_url, settings.cron_secret)


def _build_worker(settings: QueueSettings, executor=None) -> Optional[Worker]:
    """Worker running jobs in this process, with chaining disabled.

    Returns *None* when the job store cannot be opened.
    """
    try:
        store = JobStore(settings.db_path)
    except sqlite3.Error as e:
        print(f"✗ Cannot open job store {settings.db_path}: {e}")
        return None
    return Worker(
        store,
        executor or _build_executor(settings),
        settings=settings,
        dispatcher=InlineDispatcher(),
        on_success=_build_user_data_sink(settings),
    )


# ------------------------------------------------------------------
# Subcommand handlers
# ------------------------------------------------------------------

def _handle_submit(args: argparse.Namespace, settings: QueueSettings) -> int:
    """Handler for the ``submit`` subcommand."""
    verification = VerificationInput(
        last_name=args.last_name, npn=args.npn, ssn_last4=args.ssn, dob=args.dob
    )
    problems = verification.validate()
    if problems:
        for problem in problems:
            print(f"✗ {problem}")
        return 2

    executor = _build_executor(settings)
    gatekeeper = SubmissionGatekeeper(
        _build_worker(settings, executor),
        executor=executor,
        on_success=_build_user_data_sink(settings),
    )
    try:
        outcome = gatekeeper.submit(args.user, verification)
    except DuplicateSubmissionError as e:
        print(f"✗ User already has job {e.existing.id[:8]}… ({e.existing.status})")
        return 1

    if outcome.job is None:
        print(f"Ran without queue → {outcome.status}")
        if outcome.error:
            print(f"  {outcome.error}")
    elif outcome.position is not None:
        print(f"✓ Queued job {outcome.job.id[:8]}…  (position {outcome.position})")
    else:
        final = gatekeeper.worker.store.get(outcome.job.id)
        if final.is_terminal:
            print(f"✓ Ran job {outcome.job.id[:8]}… inline → {final.status}")
        else:
            print(f"✓ Job {outcome.job.id[:8]}… picked up by a running worker ({final.status})")
    return 0


def _handle_run_once(args: argparse.Namespace, settings: QueueSettings) -> int:
    """Handler for the ``run-once`` subcommand."""
    worker = _build_worker(settings)
    if worker is None:
        return 1
    tick = worker.process_next()
    if tick.reclaimed:
        print(f"Released {tick.reclaimed} stale lease(s).")
    if tick.idle:
        print("No pending jobs in the queue.")
        return 0
    print(f"→ Job {tick.job_id[:8]}… final status: {tick.status}")
    return 0


def _handle_drain(args: argparse.Namespace, settings: QueueSettings) -> int:
    """Handler for the ``drain`` subcommand."""
    worker = _build_worker(settings)
    if worker is None:
        return 1
    processed = 0
    while args.limit is None or processed < args.limit:
        tick = worker.process_next()
        if tick.idle:
            break
        processed += 1
        print(f"→ Job {tick.job_id[:8]}… final status: {tick.status}")
    print(f"Processed {processed} job(s).")
    return 0


def _handle_list(args: argparse.Namespace, settings: QueueSettings) -> int:
    """Handler for the ``list`` subcommand."""
    with JobStore(settings.db_path) as store:
        jobs = store.list(status=args.status, user_id=args.user)
    if not jobs:
        label = f" with status='{args.status}'" if args.status else ""
        print(f"No jobs found{label}.")
        return 0

    # Header
    fmt = "{:<10} {:<12} {:<11} {:<4} {:<5} {:<26} {}"
    print(fmt.format("ID", "USER", "STATUS", "ATT", "PROG", "CREATED", "ERROR"))
    print("-" * 90)
    for j in jobs:
        error = j.error_message or ""
        error_preview = (error[:30] + "…") if len(error) > 30 else error
        print(
            fmt.format(
                j.id[:10],
                j.user_id[:12],
                j.status,
                j.attempts,
                f"{j.progress}%",
                j.created_at[:26],
                error_preview,
            )
        )
    return 0


def _handle_status(args: argparse.Namespace, settings: QueueSettings) -> int:
    """Handler for the ``status`` subcommand."""
    with JobStore(settings.db_path) as store:
        worker = Worker(store, executor=None, settings=settings)
        try:
            view = SubmissionGatekeeper(worker).job_status(args.user, args.job_id)
        except JobNotFoundError:
            print(f"✗ Job {args.job_id} not found for user {args.user}")
            return 1
    for key, value in view.items():
        print(f"{key:<16} {value}")
    return 0


def _handle_reclaim(args: argparse.Namespace, settings: QueueSettings) -> int:
    """Handler for the ``reclaim`` subcommand."""
    with JobStore(settings.db_path) as store:
        count = Worker(store, executor=None, settings=settings).lease.reclaim_stale()
    print(f"Released {count} stale lease(s).")
    return 0


def _handle_stats(args: argparse.Namespace, settings: QueueSettings) -> int:
    """Handler for the ``stats`` subcommand."""
    with JobStore(settings.db_path) as store:
        depth = Worker(store, executor=None, settings=settings).positions.queue_depth()
    for status in STATUSES:
        print(f"{status:<11} {depth[status]}")
    return 0


# ------------------------------------------------------------------
# Argument parser
# ------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="queue_cli",
        description="Manage the NIPR verification queue.",
    )
    parser.add_argument("--db", default=None, help="Override NIPR_QUEUE_DB_PATH")
    subs = parser.add_subparsers(dest="command", required=True)

    # -- submit --
    sub = subs.add_parser("submit", help="Submit a verification request.")
    sub.add_argument("--user", required=True, help="Owning user id")
    sub.add_argument("--last-name", required=True, help="Producer last name")
    sub.add_argument("--npn", required=True, help="National Producer Number")
    sub.add_argument("--ssn", required=True, help="Last 4 digits of SSN")
    sub.add_argument("--dob", required=True, help="Date of birth (MM/DD/YYYY)")

    # -- run-once --
    subs.add_parser("run-once", help="Execute the next pending job.")

    # -- drain --
    drain = subs.add_parser("drain", help="Run jobs until the queue is empty.")
    drain.add_argument("--limit", type=int, default=None, help="Stop after N jobs")

    # -- list --
    lst = subs.add_parser("list", help="List jobs in the queue.")
    lst.add_argument(
        "--status",
        choices=list(STATUSES),
        default=None,
        help="Filter by status",
    )
    lst.add_argument("--user", default=None, help="Filter by user id")

    # -- status --
    st = subs.add_parser("status", help="Show one job.")
    st.add_argument("job_id")
    st.add_argument("--user", required=True, help="Owning user id")

    subs.add_parser("reclaim", help="Release expired leases.")
    subs.add_parser("stats", help="Count jobs per status.")

    return parser


def main(argv=None) -> int:
    """CLI entry-point."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = QueueSettings.from_env()
    if args.db:
        settings.db_path = args.db

    handlers = {
        "submit": _handle_submit,
        "run-once": _handle_run_once,
        "drain": _handle_drain,
        "list": _handle_list,
        "status": _handle_status,
        "reclaim": _handle_reclaim,
        "stats": _handle_stats,
    }
    return handlers[args.command](args, settings)


if __name__ == "__main__":
    sys.exit(main())
