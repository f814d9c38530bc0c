"""
Models for landing-page forms.

FieldSpec / FormSpec describe a form the way the page markup declares it
(field names, data-validators, data-reset-on-success). FieldView / FormView
hold the visual state the page renders: CSS classes, the ARIA live region
for field errors, the submit button and transient messages.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from app.services.field_validators import parse_validator_names


class FieldState(str, Enum):
    UNTOUCHED = "untouched"
    VALIDATING = "validating"
    VALID = "valid"
    INVALID = "invalid"


class FormState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    ERROR = "error"


class SubmitOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INVALID = "invalid"    # client-side validation failed, nothing sent
    IGNORED = "ignored"    # a submission for this form was already in flight


class FieldSpec(BaseModel):
    name: str
    validators: List[str] = Field(default_factory=list)
    value: str = ""

    @field_validator("validators", mode="before")
    @classmethod
    def split_validator_attribute(cls, v):
        """Accept the markup form, data-validators="required, email"."""
        if isinstance(v, str):
            return parse_validator_names(v)
        return v


class FormSpec(BaseModel):
    form_id: str
    form_type: str = "email-capture"
    fields: List[FieldSpec]
    reset_on_success: bool = True
    submit_label: str = "Subscribe"


class LiveRegion(BaseModel):
    """Error container announced by assistive technology on change."""
    element_id: str
    role: str = "alert"
    aria_live: str = "polite"
    text: str = ""
    visible: bool = False
    announcements: List[str] = Field(default_factory=list)


class FieldView(BaseModel):
    classes: set[str] = Field(default_factory=set)
    focused: bool = False
    error: LiveRegion


class FormMessage(BaseModel):
    kind: str  # "success" | "error"
    text: str
    role: str = "alert"


class FormView(BaseModel):
    classes: set[str] = Field(default_factory=set)
    submit_disabled: bool = True
    submit_label: str
    message: Optional[FormMessage] = None
    focused_field: Optional[str] = None
