"""
Email capture router.

Endpoints:
  POST /email-capture   - capture or refresh a lead (rate-limited)
  GET  /stats           - total / active lead counts (rate-limited)
  GET  /export-leads    - full lead export (auth: admin JWT)

Every capture outcome is recorded as an analytics event. Validation and
blocked-domain rejections are user errors and are logged at info level only.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.auth import require_admin
from app.models.lead import (
    EmailCaptureRequest,
    EmailCaptureResponse,
    ExportResponse,
    Lead,
    LeadExport,
    LeadStats,
    LeadStatus,
    StatsResponse,
    first_validation_message,
)
from app.services.analytics import log_analytics_event
from app.services.email_normalizer import is_blocked_domain, normalize_email
from app.services.lead_store import capture_lead, count_leads, list_leads
from app.services.rate_limiter import client_address, enforce_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter()

INTERNAL_ERROR_MESSAGE = "Internal server error. Please try again."


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _failure(status_code: int, message: str, start: float) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": message,
            "processingTime": _elapsed_ms(start),
        },
    )


async def _read_json_object(request: Request) -> dict[str, Any]:
    """Parse the body as a JSON object; anything else is a validation error."""
    try:
        body = await request.json()
    except ValueError:
        raise ValueError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


@router.post(
    "/email-capture",
    response_model=EmailCaptureResponse,
    status_code=201,
    responses={
        200: {"description": "Existing lead refreshed (isNew=false)"},
        201: {"description": "New lead created (isNew=true)"},
        400: {"description": "Validation failed or disposable email domain"},
        429: {"description": "Rate limit exceeded; see Retry-After"},
        500: {"description": "Unexpected server error"},
    },
    dependencies=[Depends(enforce_rate_limit)],
)
async def email_capture(request: Request):
    """
    Capture an email lead.

    Validates the body, normalizes the address, rejects disposable domains and
    then creates the lead (201) or refreshes the existing one (200).
    """
    start = time.monotonic()
    ip = client_address(request)

    try:
        try:
            body = await _read_json_object(request)
            capture = EmailCaptureRequest.model_validate(body)
        except (ValueError, ValidationError) as e:
            message = first_validation_message(e) if isinstance(e, ValidationError) else str(e)
            logger.info(f"Email capture validation error from {ip}: {message}")
            log_analytics_event("email_capture_validation_error", {"error": message, "ip": ip})
            return _failure(400, message, start)

        email = normalize_email(capture.email)
        if not email:
            return _failure(400, "Invalid email format", start)

        if is_blocked_domain(email):
            logger.info(f"Blocked disposable email domain from {ip}")
            log_analytics_event("email_capture_blocked_domain", {"email": email, "ip": ip})
            return _failure(400, "Please use a valid email address", start)

        lead, is_new = capture_lead(
            email=email,
            source=capture.source,
            campaign=capture.campaign,
            metadata=capture.metadata,
            ip=ip,
            user_agent=request.headers.get("user-agent", ""),
            referrer=request.headers.get("referer", ""),
        )

        log_analytics_event(
            "email_capture_success" if is_new else "email_capture_duplicate",
            {
                "email": email,
                "source": capture.source,
                "campaign": capture.campaign,
                "isNew": is_new,
                "leadId": str(lead["id"]),
            },
        )

        response = EmailCaptureResponse(
            message="Successfully subscribed to updates" if is_new else "Email updated successfully",
            isNew=is_new,
            leadId=str(lead["id"]),
            subscriptionCount=int(lead.get("subscription_count") or 1),
            processingTime=_elapsed_ms(start),
        )
        return JSONResponse(status_code=201 if is_new else 200, content=response.model_dump())

    except Exception as e:
        logger.error(f"Email capture error: {e}", exc_info=True)
        log_analytics_event(
            "email_capture_error",
            {"error": str(e), "errorType": type(e).__name__, "ip": ip},
        )
        return _failure(500, INTERNAL_ERROR_MESSAGE, start)


@router.get(
    "/stats",
    response_model=StatsResponse,
    dependencies=[Depends(enforce_rate_limit)],
)
async def stats():
    """Total and active lead counts."""
    try:
        total = count_leads()
        active = count_leads(LeadStatus.ACTIVE)
    except Exception as e:
        logger.error(f"Stats error: {e}")
        raise HTTPException(status_code=500, detail="Unable to retrieve stats")

    return StatsResponse(
        stats=LeadStats(
            totalLeads=total,
            activeLeads=active,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
    )


@router.get("/export-leads", response_model=ExportResponse)
async def export_leads(admin_id: str = Depends(require_admin)):
    """
    Export every lead. Admin only.

    Requires a Supabase JWT whose app_metadata.role is "admin".
    """
    try:
        rows = list_leads()
    except Exception as e:
        logger.error(f"Export leads error: {e}")
        raise HTTPException(status_code=500, detail="Failed to export leads data")

    leads = [LeadExport.from_lead(Lead.model_validate(row)) for row in rows]
    logger.info(f"Admin {admin_id} exported {len(leads)} leads")
    return ExportResponse(
        leads=leads,
        totalCount=len(leads),
        exportedAt=datetime.now(timezone.utc).isoformat(),
    )
