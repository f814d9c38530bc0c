"""
Server-side analytics events for the capture endpoint.

Every capture outcome is appended to the analytics_events table. Logging is
best-effort: a failed insert is logged and swallowed so it can never fail the
request that triggered it.

The retention sweep (cleanup_old_analytics_events) is run daily by
scripts/cleanup_analytics.py and deletes at most one batch per invocation to
stay inside PostgREST request limits.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from app.db import ANALYTICS_TABLE, supabase_admin

logger = logging.getLogger(__name__)

ANALYTICS_SOURCE = "api"
CLEANUP_BATCH_SIZE = 500
DEFAULT_RETENTION_DAYS = int(os.getenv("ANALYTICS_RETENTION_DAYS", "30"))


def log_analytics_event(event: str, parameters: dict[str, Any]) -> None:
    """Append one analytics event. Never raises."""
    try:
        supabase_admin.table(ANALYTICS_TABLE).insert({
            "event": event,
            "parameters": parameters,
            "source": ANALYTICS_SOURCE,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }).execute()
    except Exception as e:
        logger.error(f"Analytics logging error for '{event}': {e}")


def cleanup_old_analytics_events(
    now: Optional[datetime] = None,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    batch_size: int = CLEANUP_BATCH_SIZE,
) -> int:
    """
    Delete analytics events older than ``retention_days``.

    At most ``batch_size`` rows are removed per call, and never more than
    CLEANUP_BATCH_SIZE so the id list fits in one PostgREST request; a
    backlog larger than one batch drains over consecutive daily runs.

    Returns:
        Number of events deleted (0 when nothing is old enough).
    """
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required for analytics cleanup")
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")
    if batch_size > CLEANUP_BATCH_SIZE:
        logger.warning(f"batch_size {batch_size} capped at {CLEANUP_BATCH_SIZE}")
        batch_size = CLEANUP_BATCH_SIZE

    now = now or datetime.now(timezone.utc)
    cutoff = (now - timedelta(days=retention_days)).isoformat()

    result = (
        supabase_admin.table(ANALYTICS_TABLE)
        .select("id")
        .lt("created_at", cutoff)
        .limit(batch_size)
        .execute()
    )

    ids = [row["id"] for row in (result.data or [])]
    if not ids:
        logger.info("No old analytics events to delete")
        return 0

    supabase_admin.table(ANALYTICS_TABLE).delete().in_("id", ids).execute()
    logger.info(f"Deleted {len(ids)} old analytics events (cutoff {cutoff})")
    return len(ids)
