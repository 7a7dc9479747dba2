"""study_room_etl.mapping

Schema mapper for member / renewal spreadsheets.

Responsibilities:
  - Load and validate the header-variant table (config/column_mappings.yml)
  - Pick the members and renewals worksheets by fuzzy name containment
  - Turn raw sheet rows into typed MemberRow / RenewalRow records

Usage:
    from study_room_etl.mapping import load_column_mapping, map_member_row

    mapping = load_column_mapping()
    member = map_member_row(mapping, {"ID": 7, "Name": "asha", "Sex": "F"})
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable

import yaml

from study_room_etl.normalize import (
    clean_identity_number,
    normalize_contact,
    normalize_membership_status,
    normalize_payment_mode,
    parse_amount,
    parse_excel_date,
    parse_gender,
    parse_student_id,
    trim,
)
from study_room_etl.shared import MissingSheetsError

DEFAULT_MAPPING_PATH = Path(__file__).parent / "config" / "column_mappings.yml"

MEMBER_FIELDS = (
    "id", "name", "father_name", "contact_number", "sex", "seat_number",
    "membership_date", "total_paid", "membership_till", "membership_status",
    "last_payment_date", "aadhaar_number", "address",
)
RENEWAL_FIELDS = ("id", "seat_number", "amount_paid", "payment_date", "payment_mode")
SHEET_KINDS = ("members", "renewals")

MEMBERS_SHEET_LABEL = "Library Members (or similar)"
RENEWALS_SHEET_LABEL = "Renewals (or similar)"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MappingValidationError(ValueError):
    """Raised when a column mapping YAML file fails schema validation."""


# ---------------------------------------------------------------------------
# ColumnMapping
# ---------------------------------------------------------------------------

@dataclass
class ColumnMapping:
    """Parsed, validated header-variant table."""

    version: str
    yaml_hash: str
    sheets: dict[str, list[str]]
    members: dict[str, list[str]]
    renewals: dict[str, list[str]]


def _validate_section(
    data: dict[str, Any],
    section: str,
    required: Iterable[str],
) -> dict[str, list[str]]:
    block = data.get(section)
    if not isinstance(block, dict):
        raise MappingValidationError(f"'{section}' must be a mapping")
    missing = sorted(set(required) - set(block))
    if missing:
        raise MappingValidationError(f"'{section}' missing fields: {missing}")
    out: dict[str, list[str]] = {}
    for key, variants in block.items():
        if not isinstance(variants, list) or not variants:
            raise MappingValidationError(
                f"'{section}.{key}' must be a non-empty list of header names"
            )
        out[str(key)] = [str(v) for v in variants]
    return out


def parse_column_mapping(raw: str) -> ColumnMapping:
    data = yaml.safe_load(raw)
    if not isinstance(data, dict):
        raise MappingValidationError("mapping file must be a YAML mapping")
    return ColumnMapping(
        version=str(data.get("version", "unversioned")),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
        sheets=_validate_section(data, "sheets", SHEET_KINDS),
        members=_validate_section(data, "members", MEMBER_FIELDS),
        renewals=_validate_section(data, "renewals", RENEWAL_FIELDS),
    )


def load_column_mapping(path: Path | None = None) -> ColumnMapping:
    """Load the bundled mapping, or *path* when given.

    Raises:
        MappingValidationError: If a section or field is missing/invalid.
        FileNotFoundError: If *path* does not exist.
    """
    return parse_column_mapping((path or DEFAULT_MAPPING_PATH).read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Column / sheet resolution
# ---------------------------------------------------------------------------

def get_column_value(row: dict[str, Any], variants: list[str]) -> Any:
    """Return the value of the first variant present on *row*, else None."""
    for name in variants:
        if name in row:
            return row[name]
    return None


def _names_overlap(a: str, b: str) -> bool:
    a, b = a.lower(), b.lower()
    return a in b or b in a


def find_sheet(sheet_names: list[str], variants: list[str]) -> str | None:
    """Return the first sheet matching the highest-priority variant."""
    for variant in variants:
        for sheet in sheet_names:
            if _names_overlap(sheet, variant):
                return sheet
    return None


def resolve_sheets(mapping: ColumnMapping, sheet_names: list[str]) -> tuple[str, str]:
    """Return (members_sheet, renewals_sheet) or raise MissingSheetsError."""
    members = find_sheet(sheet_names, mapping.sheets["members"])
    renewals = find_sheet(sheet_names, mapping.sheets["renewals"])
    missing = []
    if members is None:
        missing.append(MEMBERS_SHEET_LABEL)
    if renewals is None:
        missing.append(RENEWALS_SHEET_LABEL)
    if missing:
        raise MissingSheetsError(missing, list(sheet_names))
    return members, renewals  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Typed rows
# ---------------------------------------------------------------------------

@dataclass
class MemberRow:
    student_id: int | None
    name: str | None
    father_name: str | None
    contact_number: str | None
    sex: str | None
    seat_number: str | None
    membership_date: datetime | None
    total_paid: Decimal | None
    membership_till: datetime | None
    membership_status: str | None
    last_payment_date: datetime | None
    aadhaar_number: str | None
    address: str | None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class RenewalRow:
    student_id: int | None
    seat_number: str | None
    amount: Decimal | None
    payment_date: datetime | None
    payment_mode: str
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def map_member_row(mapping: ColumnMapping, row: dict[str, Any]) -> MemberRow:
    cols = mapping.members

    def get(name: str) -> Any:
        return get_column_value(row, cols[name])

    return MemberRow(
        student_id=parse_student_id(get("id")),
        name=trim(get("name")),
        father_name=trim(get("father_name")),
        contact_number=normalize_contact(get("contact_number")),
        sex=parse_gender(get("sex")),
        seat_number=trim(get("seat_number")),
        membership_date=parse_excel_date(get("membership_date")),
        total_paid=parse_amount(get("total_paid")),
        membership_till=parse_excel_date(get("membership_till")),
        membership_status=normalize_membership_status(get("membership_status")),
        last_payment_date=parse_excel_date(get("last_payment_date")),
        aadhaar_number=clean_identity_number(get("aadhaar_number")),
        address=trim(get("address")),
        raw=row,
    )


def map_renewal_row(mapping: ColumnMapping, row: dict[str, Any]) -> RenewalRow:
    cols = mapping.renewals

    def get(name: str) -> Any:
        return get_column_value(row, cols[name])

    return RenewalRow(
        student_id=parse_student_id(get("id")),
        seat_number=trim(get("seat_number")),
        amount=parse_amount(get("amount_paid")),
        payment_date=parse_excel_date(get("payment_date")),
        payment_mode=normalize_payment_mode(get("payment_mode")),
        raw=row,
    )
