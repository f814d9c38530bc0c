"""
Pydantic models for the email capture endpoint.

Models:
  LeadStatus             - active / unsubscribed
  EmailCaptureRequest    - POST /email-capture body, with the field rules
  EmailCaptureResponse   - 200/201 response body
  Lead                   - email_leads row
  LeadExport             - camelCase row returned by GET /export-leads
  StatsResponse / HealthResponse
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, Field, ValidationError, field_validator


MAX_EMAIL_LENGTH = 254
MAX_LABEL_LENGTH = 100
MAX_METADATA_KEYS = 10
DEFAULT_SOURCE = "website"


class LeadStatus(str, Enum):
    ACTIVE = "active"
    UNSUBSCRIBED = "unsubscribed"


# ---------------------------------------------------------------------------
# Request body
# ---------------------------------------------------------------------------

class EmailCaptureRequest(BaseModel):
    """
    Body of POST /email-capture.

    email is declared Optional with validate_default so a missing key reaches
    the validator and yields our own "required" message instead of pydantic's
    generic "Field required". Unknown keys (e.g. a "name" field posted by a
    landing-page form) are ignored.
    """
    model_config = {"extra": "ignore"}

    email: Optional[str] = Field(default=None, validate_default=True)
    source: Optional[str] = DEFAULT_SOURCE
    campaign: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value: Optional[str]) -> str:
        if value is None or not value.strip():
            raise ValueError("Email address is required")
        value = value.strip()
        if len(value) > MAX_EMAIL_LENGTH:
            raise ValueError("Email address is too long")
        try:
            validate_email(value, check_deliverability=False)
        except EmailNotValidError:
            raise ValueError("Please provide a valid email address")
        return value

    @field_validator("source", "campaign")
    @classmethod
    def check_label_length(cls, value: Optional[str], info) -> Optional[str]:
        if value is not None and len(value) > MAX_LABEL_LENGTH:
            raise ValueError(
                f"{info.field_name.capitalize()} must be at most {MAX_LABEL_LENGTH} characters"
            )
        return value

    @field_validator("metadata")
    @classmethod
    def check_metadata_size(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None and len(value) > MAX_METADATA_KEYS:
            raise ValueError(f"Metadata must have at most {MAX_METADATA_KEYS} keys")
        return value


def first_validation_message(exc: ValidationError) -> str:
    """
    Return a single human-readable message for the first validation failure.

    Our own ValueError messages are surfaced verbatim; type errors from
    pydantic are prefixed with the offending field name.
    """
    error = exc.errors()[0]
    ctx_error = (error.get("ctx") or {}).get("error")
    if error["type"] == "value_error" and ctx_error is not None:
        return str(ctx_error)
    field = ".".join(str(loc) for loc in error["loc"]) or "body"
    return f"{field}: {error['msg']}"


# ---------------------------------------------------------------------------
# Responses and rows
# ---------------------------------------------------------------------------

class EmailCaptureResponse(BaseModel):
    success: bool = True
    message: str
    isNew: bool
    leadId: str
    subscriptionCount: int
    processingTime: int  # milliseconds


class Lead(BaseModel):
    """Full email_leads record from the database."""
    model_config = {"from_attributes": True, "extra": "ignore"}

    id: str
    email: str
    source: str = DEFAULT_SOURCE
    campaign: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    first_seen_at: Optional[str] = None
    last_seen_at: Optional[str] = None
    subscription_count: int = 1
    status: LeadStatus = LeadStatus.ACTIVE


class LeadExport(BaseModel):
    """Lead row shape returned by the admin export."""
    id: str
    email: str
    source: str
    campaign: Optional[str] = None
    firstSeenAt: Optional[str] = None
    lastSeenAt: Optional[str] = None
    subscriptionCount: int
    status: LeadStatus

    @classmethod
    def from_lead(cls, lead: Lead) -> "LeadExport":
        return cls(
            id=lead.id,
            email=lead.email,
            source=lead.source,
            campaign=lead.campaign,
            firstSeenAt=lead.first_seen_at,
            lastSeenAt=lead.last_seen_at,
            subscriptionCount=lead.subscription_count,
            status=lead.status,
        )


class ExportResponse(BaseModel):
    success: bool = True
    leads: List[LeadExport]
    totalCount: int
    exportedAt: str


class LeadStats(BaseModel):
    totalLeads: int
    activeLeads: int
    timestamp: str


class StatsResponse(BaseModel):
    success: bool = True
    stats: LeadStats


class HealthResponse(BaseModel):
    success: bool = True
    status: str = "healthy"
    timestamp: str
    version: str
