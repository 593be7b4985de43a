"""
Input Validation Module

Format rules for KYC and contact fields, branch to IFSC mapping and age
derivation. Every validator returns the normalized value or raises
ValidationError.
"""

import re
from datetime import date, datetime
from typing import Dict, Optional, Union

from .errors import ValidationError


BRANCH_IFSC: Dict[str, str] = {
    "Mumbai": "ASTN00MUM01",
    "Bangalore": "ASTN00BLR02",
    "Pune": "ASTN00PUN03",
    "Hyderabad": "ASTN00HYD04",
}

GENDERS = ("MALE", "FEMALE", "OTHER", "PREFER_NOT_TO_SAY")

GOVERNMENT_ID_PATTERNS: Dict[str, re.Pattern] = {
    "AADHAR": re.compile(r"^[0-9]{12}$"),
    "PAN": re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$"),
    "VOTER_ID": re.compile(r"^[A-Z]{3}[0-9]{7}$"),
    "DRIVING_LICENSE": re.compile(
        r"^([A-Z]{2}[0-9]{2}[0-9]{4}[0-9]{7}|[A-Z]{2}-[0-9]{2}/[0-9]{4}/[0-9]{7})$"
    ),
}

_ID_TYPE_ALIASES = {
    "AADHAAR": "AADHAR",
    "AADHAR CARD": "AADHAR",
    "PAN CARD": "PAN",
    "VOTER": "VOTER_ID",
    "VOTER ID": "VOTER_ID",
    "DL": "DRIVING_LICENSE",
    "DRIVING LICENSE": "DRIVING_LICENSE",
    "DRIVING LICENCE": "DRIVING_LICENSE",
}

NAME_RE = re.compile(r"^[A-Za-z ]{3,}$")
EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
PHONE_RE = re.compile(r"^[0-9]{10}$")
PIN_RE = re.compile(r"^[0-9]{4}$")
IFSC_RE = re.compile(r"^[A-Za-z]{4}0[A-Za-z0-9]{6}$")
ACCOUNT_NUMBER_RE = re.compile(r"^[1-9][0-9]{10}$")


def _require(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    return str(value).strip()


def validate_name(name: str) -> str:
    name = _require(name, "Holder name")
    if not NAME_RE.match(name):
        raise ValidationError("Name must contain only letters and spaces (min 3 characters)")
    return name


def validate_email(email: str) -> str:
    email = _require(email, "Email")
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email address")
    return email


def validate_phone(phone: str) -> str:
    phone = _require(phone, "Phone number")
    if not PHONE_RE.match(phone):
        raise ValidationError("Phone number must be exactly 10 digits")
    return phone


def validate_pin(pin: str, field: str = "PIN") -> str:
    pin = _require(pin, field)
    if not PIN_RE.match(pin):
        raise ValidationError(f"{field} must be exactly 4 digits")
    return pin


def validate_ifsc(ifsc: str) -> str:
    ifsc = _require(ifsc, "IFSC code")
    if not IFSC_RE.match(ifsc):
        raise ValidationError("Invalid IFSC code format")
    return ifsc.upper()


def validate_gender(gender: str) -> str:
    gender = _require(gender, "Gender").upper().replace(" ", "_")
    if gender not in GENDERS:
        raise ValidationError(f"Gender must be one of {', '.join(GENDERS)}")
    return gender


def validate_address(address: str) -> str:
    address = _require(address, "Address")
    if not 5 <= len(address) <= 200:
        raise ValidationError("Address must be between 5 and 200 characters")
    return address


def validate_account_number(account_number: str) -> str:
    account_number = _require(account_number, "Account number")
    if not ACCOUNT_NUMBER_RE.match(account_number):
        raise ValidationError("Account number must be 11 digits")
    return account_number


def normalize_government_id_type(id_type: str) -> str:
    key = _require(id_type, "Government ID type").upper().replace("-", " ")
    key = _ID_TYPE_ALIASES.get(key, key.replace(" ", "_"))
    if key not in GOVERNMENT_ID_PATTERNS:
        raise ValidationError(f"Unsupported government ID type: {id_type}")
    return key


def validate_government_id(id_type: str, id_number: str) -> tuple:
    """
    Validate a government ID against the format for its type

    Returns:
        (normalized type, normalized number)
    """
    id_type = normalize_government_id_type(id_type)
    id_number = _require(id_number, "Government ID number").upper()
    if not GOVERNMENT_ID_PATTERNS[id_type].match(id_number):
        raise ValidationError(f"Invalid {id_type.replace('_', ' ').title()} number format")
    return id_type, id_number


def ifsc_for_branch(branch: str) -> str:
    """Map a branch name (case-insensitive) to its IFSC code"""
    branch = _require(branch, "Branch")
    for name, code in BRANCH_IFSC.items():
        if name.lower() == branch.lower():
            return code
    raise ValidationError(f"Unknown branch: {branch}")


def canonical_branch(branch: str) -> str:
    branch = _require(branch, "Branch")
    for name in BRANCH_IFSC:
        if name.lower() == branch.lower():
            return name
    raise ValidationError(f"Unknown branch: {branch}")


def parse_date(value: Union[str, date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(_require(value, "Date of birth"))
    except ValueError:
        raise ValidationError("Date of birth must be in YYYY-MM-DD format")


def calculate_age(dob: date, today: Optional[date] = None) -> int:
    today = today or date.today()
    if dob > today:
        raise ValidationError("Date of birth cannot be in the future")
    return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))
