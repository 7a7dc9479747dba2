"""study_room_etl.shared

Shared utilities used by the import, backup/restore and reset pipelines.
Includes the exception taxonomy, RejectWriter, run counters, the table
catalog (known tables plus live discovery) and report-writing support.
"""

from __future__ import annotations

import csv
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psycopg

SCHEMA = "public"
PROTECTED_TABLE = "users"
ADMIN_USERNAME = "admin"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ImportValidationError(Exception):
    """Structural input problem detected before any transaction opens."""


class NoFileError(ImportValidationError):
    def __init__(self) -> None:
        super().__init__("No file uploaded")


class MissingSheetsError(ImportValidationError):
    """Raised when the members and/or renewals worksheet cannot be found."""

    def __init__(self, missing: list[str], available: list[str]) -> None:
        self.missing = missing
        self.available = available
        super().__init__(
            f"Missing required sheets: {', '.join(missing)}. "
            f"Available: {', '.join(available)}"
        )


class RestoreFormatError(ImportValidationError):
    """Backup document is not a JSON object keyed by table name."""


class IdentityExhaustedError(Exception):
    """Raised when strict identity policy is on and every candidate collided."""


def new_request_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for skipped import rows.

    Members and renewals rows have different headers, so the raw row is
    stored as a JSON payload under a fixed set of columns.
    """

    FIELDNAMES = ["_sheet", "_row_number", "_reject_reason", "_raw"]

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, sheet: str, row_number: int, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=self.FIELDNAMES)
            self._writer.writeheader()
        self._writer.writerow({
            "_sheet": sheet,
            "_row_number": row_number,
            "_reject_reason": reason,
            "_raw": json.dumps(row, ensure_ascii=False, default=str),
        })
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class SectionCounters:
    total: int = 0
    imported: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class RunCounters:
    members: SectionCounters = field(default_factory=SectionCounters)
    renewals: SectionCounters = field(default_factory=SectionCounters)
    seats_inserted: int = 0
    seat_assignments_skipped: int = 0
    identity_generated: int = 0
    identity_regenerated: int = 0
    identity_exhausted: int = 0
    identity_probe_failures: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return self.members.imported + self.renewals.imported

    @property
    def skipped(self) -> int:
        return self.members.skipped + self.renewals.skipped

    def skip(self, section: SectionCounters, reason: str) -> None:
        section.skipped += 1
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "members": self.members.to_dict(),
            "renewals": self.renewals.to_dict(),
            "seats_inserted": self.seats_inserted,
            "seat_assignments_skipped": self.seat_assignments_skipped,
            "identity_generated": self.identity_generated,
            "identity_regenerated": self.identity_regenerated,
            "identity_exhausted": self.identity_exhausted,
            "identity_probe_failures": self.identity_probe_failures,
            "skip_reasons": dict(self.skip_reasons),
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Table catalog
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TableSpec:
    """A table this engine knows how to restore, or a discovered stranger.

    Unknown tables (``known=False``) are still backed up and wiped, but
    never restored: their row shape is not modelled here.
    """

    name: str
    conflict_key: tuple[str, ...] = ("id",)
    columns: tuple[str, ...] = ()
    known: bool = True


KNOWN_TABLES: dict[str, TableSpec] = {
    "seats": TableSpec(
        "seats",
        conflict_key=("seat_number",),
        columns=("seat_number", "occupant_sex", "created_at", "updated_at", "modified_by"),
    ),
    "students": TableSpec(
        "students",
        columns=(
            "id", "name", "father_name", "contact_number", "sex", "seat_number",
            "membership_date", "membership_till", "membership_status",
            "aadhaar_number", "address", "created_at", "updated_at", "modified_by",
        ),
    ),
    "users": TableSpec(
        "users",
        columns=(
            "id", "username", "password_hash", "role", "permissions", "status",
            "created_at", "updated_at",
        ),
    ),
    "payments": TableSpec(
        "payments",
        columns=(
            "id", "student_id", "amount", "payment_date", "payment_mode",
            "payment_type", "description", "created_at", "updated_at", "modified_by",
        ),
    ),
    "expenses": TableSpec(
        "expenses",
        columns=(
            "id", "category", "description", "amount", "expense_date",
            "created_at", "updated_at", "modified_by",
        ),
    ),
    "student_fees_config": TableSpec(
        "student_fees_config",
        columns=("id", "gender", "monthly_fees", "created_at", "updated_at"),
    ),
    "seats_history": TableSpec(
        "seats_history",
        columns=("id", "student_id", "seat_number", "action", "changed_at"),
    ),
}


def table_spec(name: str) -> TableSpec:
    """Return the catalog entry for *name* or an unknown-table fallback."""
    return KNOWN_TABLES.get(name) or TableSpec(name, conflict_key=(), known=False)


def discover_tables(
    conn: psycopg.Connection,
    exclude: tuple[str, ...] = (),
) -> list[TableSpec]:
    """List base tables in the schema, in name order, as TableSpecs."""
    rows = conn.execute(
        """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = %s AND table_type = 'BASE TABLE'
        ORDER BY table_name
        """,
        (SCHEMA,),
    ).fetchall()
    return [table_spec(r[0]) for r in rows if r[0] not in exclude]


def table_columns(conn: psycopg.Connection, table: str) -> set[str]:
    rows = conn.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_schema = %s AND table_name = %s
        """,
        (SCHEMA, table),
    ).fetchall()
    return {r[0] for r in rows}


def list_sequences(conn: psycopg.Connection) -> list[str]:
    rows = conn.execute(
        """
        SELECT sequence_name
        FROM information_schema.sequences
        WHERE sequence_schema = %s
        ORDER BY sequence_name
        """,
        (SCHEMA,),
    ).fetchall()
    return [r[0] for r in rows]


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    request_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str | None],
    result: dict[str, Any],
) -> Path:
    report = {
        "request_id": request_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "result": result,
    }
    report_path = Path(f"./artifacts/reports/{request_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
