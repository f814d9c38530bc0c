"""
Lead persistence on top of the Supabase email_leads table.

Dedup contract
--------------
email_leads.email carries a UNIQUE constraint and is always written in its
normalized form. capture_lead() looks the address up first; when no row exists
it inserts one, and if that insert loses a race against a concurrent first-time
submission (PostgREST error 23505, unique_violation) it re-reads the winning row
and takes the repeat-submission path instead. Two near-simultaneous first
submissions therefore end up as one row with subscription_count == 2.

The repeat path is still read-modify-write on subscription_count; concurrent
repeats of an existing address can under-count by one, which is acceptable
for a marketing counter.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from postgrest.exceptions import APIError

from app.db import LEADS_TABLE, supabase_admin
from app.models.lead import DEFAULT_SOURCE, LeadStatus

logger = logging.getLogger(__name__)

_UNIQUE_VIOLATION = "23505"


class DuplicateLeadError(Exception):
    """Raised when an insert collides with an existing normalized email."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_client():
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required for lead storage")
    return supabase_admin


def find_lead_by_email(email: str) -> Optional[dict]:
    """Return the email_leads row for a normalized address, or None."""
    client = _require_client()
    result = (
        client.table(LEADS_TABLE)
        .select("*")
        .eq("email", email)
        .limit(1)
        .execute()
    )
    if result.data:
        return result.data[0]
    return None


def create_lead(
    email: str,
    source: Optional[str],
    campaign: Optional[str],
    metadata: Optional[dict[str, Any]],
    ip: str,
    user_agent: str,
    referrer: str,
) -> dict:
    """
    Insert a new lead row.

    Raises:
        DuplicateLeadError: the normalized email already exists.
    """
    client = _require_client()
    now = _now()
    row = {
        "email": email,
        "source": source or DEFAULT_SOURCE,
        "campaign": campaign,
        "metadata": metadata or {},
        "ip": ip,
        "user_agent": user_agent,
        "referrer": referrer,
        "first_seen_at": now,
        "last_seen_at": now,
        "subscription_count": 1,
        "status": LeadStatus.ACTIVE.value,
    }
    try:
        result = client.table(LEADS_TABLE).insert(row).execute()
    except APIError as e:
        if e.code == _UNIQUE_VIOLATION:
            raise DuplicateLeadError(email) from e
        raise

    if not result.data:
        raise Exception("Failed to create lead: empty insert response")
    return result.data[0]


def record_repeat_subscription(
    existing: dict,
    source: Optional[str],
    campaign: Optional[str],
    metadata: Optional[dict[str, Any]],
) -> dict:
    """
    Apply a repeat submission to an existing lead.

    Increments subscription_count, merges metadata (incoming keys win),
    refreshes last_seen_at and reactivates the lead. source/campaign are
    only replaced when the new request supplies them.
    """
    client = _require_client()
    merged_metadata = {**(existing.get("metadata") or {}), **(metadata or {})}
    updates = {
        "subscription_count": int(existing.get("subscription_count") or 1) + 1,
        "last_seen_at": _now(),
        "source": source or existing.get("source") or DEFAULT_SOURCE,
        "campaign": campaign or existing.get("campaign"),
        "metadata": merged_metadata,
        "status": LeadStatus.ACTIVE.value,
    }
    result = (
        client.table(LEADS_TABLE)
        .update(updates)
        .eq("id", existing["id"])
        .execute()
    )
    if result.data:
        return result.data[0]
    return {**existing, **updates}


def capture_lead(
    email: str,
    source: Optional[str],
    campaign: Optional[str],
    metadata: Optional[dict[str, Any]],
    ip: str = "",
    user_agent: str = "",
    referrer: str = "",
) -> tuple[dict, bool]:
    """
    Create or refresh the lead for a normalized email.

    Returns:
        (lead_row, is_new)
    """
    existing = find_lead_by_email(email)
    if existing is None:
        try:
            lead = create_lead(email, source, campaign, metadata, ip, user_agent, referrer)
            return lead, True
        except DuplicateLeadError:
            logger.info(f"Concurrent first capture for {email}; applying as repeat")
            existing = find_lead_by_email(email)
            if existing is None:
                raise

    return record_repeat_subscription(existing, source, campaign, metadata), False


def count_leads(status: Optional[LeadStatus] = None) -> int:
    """Exact row count of email_leads, optionally filtered by status."""
    client = _require_client()
    query = client.table(LEADS_TABLE).select("id", count="exact")
    if status is not None:
        query = query.eq("status", status.value)
    result = query.execute()
    return result.count or 0


def list_leads() -> list[dict]:
    """All lead rows, oldest first."""
    client = _require_client()
    result = (
        client.table(LEADS_TABLE)
        .select("*")
        .order("first_seen_at")
        .execute()
    )
    return result.data or []
