"""PHI indicators shared by the export schemas and the export audit tool.

Two kinds of indicator live here:

- column names that must never appear in a research export header, and
- value patterns (email, US phone, SSN, street address, MM/DD/YYYY date)
  that suggest PHI leaked into a cell.

Values already shaped like a pseudonym token are exempt from the value scan,
since a 16 character hex digest can accidentally contain digit runs.
"""
from __future__ import annotations

import re
from typing import Dict, Iterable, List, Tuple

# Substring match against lowercased header names.
FORBIDDEN_COLUMNS: Tuple[str, ...] = (
    "name",
    "patient_name",
    "first_name",
    "last_name",
    "dob",
    "date_of_birth",
    "birth_date",
    "birthdate",
    "email",
    "patient_email",
    "email_address",
    "phone",
    "patient_phone",
    "phone_number",
    "telephone",
    "address",
    "patient_address",
    "street",
    "street_address",
    "ssn",
    "social_security",
    "social_security_number",
    "emergency_contact",
    "emergency_phone",
    "insurance",
    "insurance_id",
    "insurance_provider",
)

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")
SSN_PATTERN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
ADDRESS_PATTERN = re.compile(
    r"\b\d+\s+[A-Za-z]+\s+(?:St|Street|Ave|Avenue|Rd|Road|Blvd|Dr|Drive|Ln|Lane)\b",
    re.IGNORECASE,
)
DATE_PATTERN = re.compile(r"\b(?:0[1-9]|1[0-2])/(?:0[1-9]|[12]\d|3[01])/\d{4}\b")

PHI_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("Email", EMAIL_PATTERN),
    ("Phone (US)", PHONE_PATTERN),
    ("SSN", SSN_PATTERN),
    ("Street Address", ADDRESS_PATTERN),
    ("Date (MM/DD/YYYY)", DATE_PATTERN),
]

PSEUDONYM_PATTERN = re.compile(r"^[A-Z]{3}_[a-f0-9]{16}$")
PSEUDONYM_SUFFIX = "_pid"


def is_pseudonym(value: str) -> bool:
    return bool(PSEUDONYM_PATTERN.match(value))


def forbidden_columns(headers: Iterable[str]) -> List[str]:
    """Return the headers that contain a forbidden PHI column name."""

    found = []
    for header in headers:
        lowered = header.strip().lower()
        if any(token in lowered for token in FORBIDDEN_COLUMNS):
            found.append(header)
    return found


def scan_values(values: Iterable[str]) -> Dict[str, int]:
    """Count PHI-shaped matches per pattern name across ``values``.

    Only patterns with at least one match appear in the result.
    """

    counts: Dict[str, int] = {}
    for value in values:
        if not value or is_pseudonym(value):
            continue
        for label, pattern in PHI_PATTERNS:
            hits = len(pattern.findall(value))
            if hits:
                counts[label] = counts.get(label, 0) + hits
    return counts


__all__ = [
    "FORBIDDEN_COLUMNS",
    "PHI_PATTERNS",
    "PSEUDONYM_PATTERN",
    "PSEUDONYM_SUFFIX",
    "is_pseudonym",
    "forbidden_columns",
    "scan_values",
]
