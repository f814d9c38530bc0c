"""
Field validators for landing-page forms.

Each validator is a pure function ``(raw_value) -> ValidationResult``. Forms
name the validators a field uses (e.g. ``["required", "email"]``) and
run_validators() applies them in order; the first failure wins.

Unknown validator names are skipped, i.e. treated as always valid. A typo in
a form definition therefore silently disables that check.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable


logger = logging.getLogger(__name__)

# Shape check only - no DNS / MX lookups
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]+$")
MIN_NAME_LENGTH = 2


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    message: str = ""


VALID = ValidationResult(valid=True)


def validate_email(value: str) -> ValidationResult:
    if EMAIL_PATTERN.match(value or ""):
        return VALID
    return ValidationResult(False, "Please enter a valid email address")


def validate_required(value: str) -> ValidationResult:
    if value and value.strip():
        return VALID
    return ValidationResult(False, "This field is required")


def validate_name(value: str) -> ValidationResult:
    if value and len(value.strip()) >= MIN_NAME_LENGTH:
        return VALID
    return ValidationResult(False, f"Name must be at least {MIN_NAME_LENGTH} characters long")


def validate_phone(value: str) -> ValidationResult:
    # Phone is optional: an empty value passes
    if not value or PHONE_PATTERN.match(value):
        return VALID
    return ValidationResult(False, "Please enter a valid phone number")


VALIDATORS: Dict[str, Callable[[str], ValidationResult]] = {
    "email": validate_email,
    "required": validate_required,
    "name": validate_name,
    "phone": validate_phone,
}


def run_validators(names: Iterable[str], value: str) -> ValidationResult:
    """Apply the named validators in order and return the first failure."""
    for name in names:
        validator = VALIDATORS.get(name.strip())
        if validator is None:
            logger.debug(f"Unknown validator '{name}' skipped")
            continue
        result = validator(value)
        if not result.valid:
            return result
    return VALID


def parse_validator_names(spec: str) -> list[str]:
    """Split a comma-separated validator list ("required, email") into names."""
    return [name.strip() for name in spec.split(",") if name.strip()]
