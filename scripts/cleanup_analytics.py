#!/usr/bin/env python3
"""
Daily sweep: delete analytics events older than the retention window.

Deletes at most one batch (500 rows by default) per run so each invocation
stays within PostgREST request limits; a larger backlog drains over
consecutive days. Schedule it once a day, e.g. from cron at 02:00 UTC:

    0 2 * * *  cd /srv/hlh && python scripts/cleanup_analytics.py

Usage
-----
python scripts/cleanup_analytics.py
python scripts/cleanup_analytics.py --retention-days 14 --batch-size 200

Environment / .env
------------------
SUPABASE_URL, SUPABASE_KEY, SUPABASE_SERVICE_KEY   Required (loaded by app.db).
ANALYTICS_RETENTION_DAYS                           Default retention (30).
"""

import argparse
import logging
import sys

from app.services.analytics import (
    CLEANUP_BATCH_SIZE,
    DEFAULT_RETENTION_DAYS,
    cleanup_old_analytics_events,
)


def _batch_size(value: str) -> int:
    size = int(value)
    if not 1 <= size <= CLEANUP_BATCH_SIZE:
        raise argparse.ArgumentTypeError(f"must be between 1 and {CLEANUP_BATCH_SIZE}, got {size}")
    return size


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[0])
    parser.add_argument(
        "--retention-days",
        type=int,
        default=DEFAULT_RETENTION_DAYS,
        help=f"Delete events older than this many days (default: {DEFAULT_RETENTION_DAYS})",
    )
    parser.add_argument(
        "--batch-size",
        type=_batch_size,
        default=CLEANUP_BATCH_SIZE,
        help=f"Maximum events deleted per run, 1-{CLEANUP_BATCH_SIZE} (default: {CLEANUP_BATCH_SIZE})",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        deleted = cleanup_old_analytics_events(
            retention_days=args.retention_days,
            batch_size=args.batch_size,
        )
    except Exception as exc:
        print(f"\nERROR: {exc}", file=sys.stderr)
        return 1

    print(f"Deleted {deleted} old analytics events")
    return 0


if __name__ == "__main__":
    sys.exit(main())
