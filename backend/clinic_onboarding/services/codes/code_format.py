"""
Code Format

Pure functions for the textual grammar of clinic codes and invite codes.

    Clinic code:  OB-{REGION}-{TYPE}-{SEQ3}          OB-SEOUL-CLINIC-001
    Invite code:  {CLINIC CODE}-{YYYYMM}-{SUFFIX8}   OB-SEOUL-CLINIC-001-202401-A7B9X2K5

REGION and TYPE come from closed enumerations, SEQ3 is a zero-padded
sequence (001-999) scoped to REGION x TYPE, SUFFIX8 is eight characters of
upper-case base36.
"""
import re
import string
from datetime import datetime
from typing import List, Optional

from ...errors import InvalidFormatError
from ...models.domain import (
    ClinicCodeParts, ClinicType, FormatCheck, Region, CLINIC_TYPE_CODES,
)


CODE_PREFIX = "OB"
MAX_SEQUENCE = 999
SUFFIX_LENGTH = 8
SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
MIN_INVITE_LENGTH = 20
MAX_INVITE_LENGTH = 50
MAX_RAW_INPUT_LENGTH = 100
INVITE_SEGMENTS = 6

FORMAT_HINT = "Format: OB-REGION-TYPE-SEQUENCE-YYYYMM-CODE"
FORMAT_EXAMPLE = "Example: OB-SEOUL-CLINIC-001-202401-A7B9X2K5"

_REGIONS = "|".join(r.value for r in Region)
_TYPES = "|".join(CLINIC_TYPE_CODES.values())
CLINIC_CODE_PATTERN = re.compile(rf"^{CODE_PREFIX}-({_REGIONS})-({_TYPES})-(\d{{3}})$")
_SEQUENCE_RE = re.compile(r"^\d{3}$")
_YEAR_MONTH_RE = re.compile(r"^\d{6}$")
_SUFFIX_RE = re.compile(rf"^[A-Z0-9]{{{SUFFIX_LENGTH}}}$")
_STRIP_RE = re.compile(r"[^A-Z0-9-]")


# =============================================================================
# CLINIC CODES
# =============================================================================

def parse_clinic_code(code: str) -> ClinicCodeParts:
    """Split a clinic code into its parts, raising InvalidFormatError."""
    match = CLINIC_CODE_PATTERN.match(code or "")
    if not match:
        raise InvalidFormatError(f"Invalid clinic code format: expected {CODE_PREFIX}-REGION-TYPE-NNN")

    sequence = int(match.group(3))
    if sequence < 1:
        raise InvalidFormatError("Clinic code sequence must be between 001 and 999")

    return ClinicCodeParts(
        prefix=CODE_PREFIX,
        region=Region(match.group(1)),
        clinic_type=ClinicType.from_code(match.group(2)),
        sequence=sequence,
    )


def validate_clinic_code(code: str) -> bool:
    try:
        parse_clinic_code(code)
    except InvalidFormatError:
        return False
    return True


def build_clinic_code(region: Region, clinic_type: ClinicType, sequence: int) -> str:
    if not 1 <= sequence <= MAX_SEQUENCE:
        raise InvalidFormatError(f"Sequence {sequence} is outside 001-{MAX_SEQUENCE}")
    return f"{CODE_PREFIX}-{region.value}-{clinic_type.code}-{sequence:03d}"


# =============================================================================
# INVITE CODES
# =============================================================================

def year_month_of(moment: datetime) -> str:
    return f"{moment.year:04d}{moment.month:02d}"


def build_invite_code(clinic_code: str, year_month: str, random_suffix: str) -> str:
    return f"{clinic_code}-{year_month}-{random_suffix}"


def sanitize_code(raw: str) -> str:
    """Trim, upper-case and drop every character outside [A-Z0-9-]."""
    return _STRIP_RE.sub("", (raw or "").strip().upper())


def _year_month_valid(value: str) -> bool:
    if not _YEAR_MONTH_RE.match(value):
        return False
    year, month = int(value[:4]), int(value[4:])
    return year >= 2000 and 1 <= month <= 12


def validate_invite_code_format(code: str) -> FormatCheck:
    """
    Check an invite code against the grammar.

    Collects every defect instead of stopping at the first so the caller
    can render actionable feedback.
    """
    if not code or not code.strip():
        return FormatCheck(valid=False, errors=["Please enter an invite code."])

    errors: List[str] = []
    suggestions: List[str] = []

    if len(code) < MIN_INVITE_LENGTH:
        errors.append("Invite code is too short.")
        suggestions.append("Enter the complete invite code.")
    elif len(code) > MAX_INVITE_LENGTH:
        errors.append("Invite code is too long.")
        suggestions.append("Check that only one invite code was entered.")

    parts = code.split("-")
    if len(parts) != INVITE_SEGMENTS:
        errors.append(
            f"Invite code must have {INVITE_SEGMENTS} dash-separated segments, found {len(parts)}."
        )
    else:
        prefix, region, type_code, sequence, year_month, suffix = parts
        if prefix != CODE_PREFIX:
            errors.append(f"Invite code must start with {CODE_PREFIX}.")
        if Region.__members__.get(region) is None:
            errors.append(f"Unknown region '{region}'.")
        if ClinicType.from_code(type_code) is None:
            errors.append(f"Unknown clinic type '{type_code}'.")
        if not _SEQUENCE_RE.match(sequence) or int(sequence) < 1:
            errors.append("Clinic sequence must be a 3-digit number (001-999).")
        if not _year_month_valid(year_month):
            errors.append("Year-month segment must be a valid YYYYMM date.")
        if len(suffix) != SUFFIX_LENGTH:
            errors.append(f"Code segment must be exactly {SUFFIX_LENGTH} characters.")
        elif not _SUFFIX_RE.match(suffix):
            errors.append("Code segment may contain only upper-case letters and digits.")

    if errors:
        suggestions.extend([FORMAT_HINT, FORMAT_EXAMPLE])

    return FormatCheck(valid=not errors, errors=errors, suggestions=suggestions)


def extract_clinic_code(invite_code: str) -> Optional[str]:
    """Strip the trailing -YYYYMM-SUFFIX segments; None if the rest is not a clinic code."""
    parts = (invite_code or "").split("-")
    if len(parts) < 3:
        return None
    candidate = "-".join(parts[:-2])
    return candidate if validate_clinic_code(candidate) else None
