"""Accuracy audit for de-identified research export files.

Run against a CSV before it leaves the organisation::

    python scripts/audit_research_export.py export.csv care_targets

Exits 0 only when every check passes.
"""

from __future__ import annotations

import argparse
import csv
import io
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ppc_backend.phi_patterns import (
    PSEUDONYM_SUFFIX,
    forbidden_columns,
    is_pseudonym,
    scan_values,
)
from ppc_backend.research_schema import DatasetType, schema_for

DATASET_CHOICES = [d.value for d in DatasetType]
DO_NOT_DISTRIBUTE = "DO NOT distribute this export until issues are resolved."


@dataclass
class CheckOutcome:
    """Represents the result of a single audit check."""

    label: str
    ok: bool
    details: Optional[str] = None

    def render(self) -> str:
        status = "OK" if self.ok else "FAIL"
        if self.details:
            return f"[{status}] {self.label}: {self.details}"
        return f"[{status}] {self.label}"


@dataclass
class ParsedExport:
    headers: List[str]
    rows: List[List[str]]


def parse_export(content: str) -> ParsedExport:
    """Parse CSV text; header names are trimmed and lowercased."""

    records = [r for r in csv.reader(io.StringIO(content.strip())) if r]
    if not records:
        return ParsedExport(headers=[], rows=[])
    headers = [h.strip().lower() for h in records[0]]
    rows = [[value.strip() for value in record] for record in records[1:]]
    return ParsedExport(headers=headers, rows=rows)


def check_headers(headers: Sequence[str], dataset_type: DatasetType) -> CheckOutcome:
    allowed = schema_for(dataset_type).allowed_columns
    unexpected = [h for h in headers if h not in allowed]
    missing = [h for h in allowed if h not in headers]
    if unexpected or missing:
        issues = []
        if unexpected:
            issues.append(f"unexpected: {', '.join(unexpected)}")
        if missing:
            issues.append(f"missing: {', '.join(missing)}")
        return CheckOutcome("Header validation", False, "; ".join(issues))
    return CheckOutcome("Header validation", True, f"{len(headers)} headers validated")


def check_phi_patterns(export: ParsedExport) -> CheckOutcome:
    counts = scan_values(value for row in export.rows for value in row)
    if counts:
        findings = "; ".join(f"{label}: {count} potential matches" for label, count in counts.items())
        return CheckOutcome("PHI pattern scan", False, findings)
    return CheckOutcome("PHI pattern scan", True, "no PHI patterns detected")


def check_forbidden_columns(headers: Sequence[str]) -> CheckOutcome:
    found = forbidden_columns(headers)
    if found:
        return CheckOutcome("Forbidden column check", False, f"found forbidden columns: {', '.join(found)}")
    return CheckOutcome("Forbidden column check", True, "no forbidden columns found")


def count_rows(export: ParsedExport) -> CheckOutcome:
    return CheckOutcome("Row count", True, f"{len(export.rows)} data rows")


def check_pseudonym_format(export: ParsedExport) -> CheckOutcome:
    pid_columns = [i for i, h in enumerate(export.headers) if h.endswith(PSEUDONYM_SUFFIX)]
    if not pid_columns:
        return CheckOutcome(
            "Pseudonym ID format",
            False,
            f"no pseudonymized ID columns found (expected *{PSEUDONYM_SUFFIX} columns)",
        )
    invalid = 0
    for row in export.rows:
        for index in pid_columns:
            value = row[index] if index < len(row) else ""
            if value and not is_pseudonym(value):
                invalid += 1
    if invalid:
        return CheckOutcome(
            "Pseudonym ID format",
            False,
            f"{invalid} PIDs don't match expected format (PREFIX_[16-hex-chars])",
        )
    return CheckOutcome("Pseudonym ID format", True, f"{len(pid_columns)} PID columns validated")


def audit_export(content: str, dataset_type: DatasetType) -> List[CheckOutcome]:
    """Run every check against ``content`` in reporting order."""

    export = parse_export(content)
    return [
        check_headers(export.headers, dataset_type),
        check_phi_patterns(export),
        check_forbidden_columns(export.headers),
        count_rows(export),
        check_pseudonym_format(export),
    ]


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Validate a de-identified research export before distribution.",
    )
    parser.add_argument("csv_file", help="Path to the exported CSV file.")
    parser.add_argument("dataset_type", help=f"Dataset type: {', '.join(DATASET_CHOICES)}.")
    return parser.parse_args(argv)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)

    if args.dataset_type not in DATASET_CHOICES:
        print(f"Invalid dataset type: {args.dataset_type}")
        print(f"Must be one of: {', '.join(DATASET_CHOICES)}")
        return 1
    dataset_type = DatasetType(args.dataset_type)

    path = Path(args.csv_file).expanduser()
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        print(f"Error reading file: {exc}")
        return 1
    if not parse_export(content).headers:
        print("Error: empty or invalid CSV file")
        return 1

    print("PPC export accuracy audit")
    print(f"File: {path}")
    print(f"Dataset type: {dataset_type.value}")
    print()

    outcomes = audit_export(content, dataset_type)
    print("\n".join(item.render() for item in outcomes))

    if all(item.ok for item in outcomes):
        print("\nAll checks passed.")
        return 0

    failed = [item for item in outcomes if not item.ok]
    print(f"\n{len(failed)} check(s) failed. {DO_NOT_DISTRIBUTE}")
    return 1


__all__ = [
    "CheckOutcome",
    "ParsedExport",
    "audit_export",
    "main",
    "parse_export",
]
