#!/usr/bin/env python3
"""
Find and clean up processing jobs stuck with no progress.

A job is stuck when it is pending or running, has completed no units and
was created more than --threshold hours ago. By default stuck jobs are
marked failed; --delete removes them together with their chunks.

Usage:
    uv run python scripts/cleanup_stuck_jobs.py --dry-run
    uv run python scripts/cleanup_stuck_jobs.py --threshold 6
    uv run python scripts/cleanup_stuck_jobs.py --delete --threshold 12

Exit codes:
    0  success (including "nothing to clean up")
    1  invalid threshold
"""

import argparse
import logging
import sys

from app.pipeline.errors import InvalidThresholdError
from app.pipeline.reaper import CleanupMode, StuckJobReaper

logger = logging.getLogger("cleanup_stuck_jobs")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Clean up stuck processing jobs.")
    parser.add_argument(
        "--threshold",
        type=int,
        default=2,
        help="Hours a job may sit without progress before it is stuck (1-24, default 2)",
    )
    parser.add_argument(
        "--delete",
        action="store_true",
        help="Delete stuck jobs and their chunks instead of marking them failed",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list stuck jobs; change nothing",
    )
    return parser


def main(argv: list[str] | None = None, reaper: StuckJobReaper | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    if reaper is None:
        from app.db.engine import get_session_factory

        reaper = StuckJobReaper(get_session_factory())

    mode = CleanupMode.DELETE if args.delete else CleanupMode.MARK_FAILED
    try:
        report = reaper.cleanup(args.threshold, mode, dry_run=args.dry_run)
    except InvalidThresholdError as exc:
        logger.error("%s", exc)
        return 1

    if not report.jobs:
        print(f"No stuck jobs older than {args.threshold}h.")
        return 0

    action = "Would clean up" if report.dry_run else f"{mode.value}:"
    print(f"{action} {len(report.jobs)} stuck jobs (created before {report.cutoff:%Y-%m-%d %H:%M} UTC)")
    for job in report.jobs:
        print(
            f"  job {job.id}  case={job.case_id}  document={job.document_id}  "
            f"status={job.status.value}  created={job.created_at:%Y-%m-%d %H:%M}"
        )
    if report.mode == CleanupMode.DELETE:
        print(f"Deleted {report.deleted_chunks} chunks.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
