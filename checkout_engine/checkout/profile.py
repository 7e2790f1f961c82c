"""
KYC field validation for the profile-completion step.
"""

import re
from datetime import date

from checkout_engine.errors import ValidationError
from checkout_engine.schemas.domain import CustomerProfile

PAN_PATTERN = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")
PHONE_PATTERN = re.compile(r"^[6-9][0-9]{9}$")

# profile attribute -> backend field
_BACKEND_FIELDS = {
    "full_name": "fullName",
    "phone": "phone",
    "pan_number": "pandetails",
    "date_of_birth": "dateOfBirth",
}


def validate_kyc_fields(fields: dict) -> dict:
    """Normalize submitted KYC fields; raises ValidationError on the first bad one."""
    cleaned = {}

    if "pan_number" in fields:
        pan = str(fields["pan_number"] or "").strip().upper()
        if not PAN_PATTERN.match(pan):
            raise ValidationError("PAN must look like ABCDE1234F", field="pan_number")
        cleaned["pan_number"] = pan

    if "phone" in fields:
        phone = re.sub(r"[\s-]", "", str(fields["phone"] or ""))
        if phone.startswith("+91"):
            phone = phone[3:]
        if not PHONE_PATTERN.match(phone):
            raise ValidationError("Enter a valid 10-digit mobile number", field="phone")
        cleaned["phone"] = phone

    if "date_of_birth" in fields:
        raw = str(fields["date_of_birth"] or "").strip()
        try:
            dob = date.fromisoformat(raw)
        except ValueError as e:
            raise ValidationError("Date of birth must be YYYY-MM-DD", field="date_of_birth") from e
        if dob >= date.today():
            raise ValidationError("Date of birth must be in the past", field="date_of_birth")
        cleaned["date_of_birth"] = dob.isoformat()

    if "full_name" in fields:
        name = str(fields["full_name"] or "").strip()
        if not name:
            raise ValidationError("Name is required", field="full_name")
        cleaned["full_name"] = name

    return cleaned


def to_backend_payload(cleaned: dict) -> dict:
    return {_BACKEND_FIELDS[k]: v for k, v in cleaned.items() if k in _BACKEND_FIELDS}


def apply_fields(profile: CustomerProfile, cleaned: dict) -> CustomerProfile:
    return profile.model_copy(update=cleaned)
