"""study_room_etl.import_excel

Members + renewals spreadsheet import.

Consumes one .xlsx workbook containing:
  - a members sheet   (Library Members / Members / Students / ...)
  - a renewals sheet  (Renewals / Payments / Renewal / ...)

Produces, inside ONE transaction:
  - students: insert-or-update keyed by id
  - seats   : inserted on first sight, restricted to the student's sex
  - payments: one row per accepted renewal (never creates students)

Row-level defects (missing id / name / amount, unknown student) are
counted as skipped and do not abort the run.  Anything else raised while
the transaction is open rolls the whole import back: no partial import
is ever committed.
"""

from __future__ import annotations

import io
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

import click
import psycopg
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from study_room_etl.identity import IdentityResolution, resolve_identity_number
from study_room_etl.mapping import (
    ColumnMapping,
    MemberRow,
    RenewalRow,
    load_column_mapping,
    map_member_row,
    map_renewal_row,
    resolve_sheets,
)
from study_room_etl.normalize import DEFAULT_CONTACT, clip_upper
from study_room_etl.shared import (
    IdentityExhaustedError,
    ImportValidationError,
    NoFileError,
    RejectWriter,
    RunCounters,
    new_request_id,
    utc_now,
)

PROGRESS_EVERY = 50
SEAT_NUMBER_MAX = 20
DESCRIPTION_SEAT_MAX = 100

# SyntaxError covers ElementTree's ParseError and lxml's XMLSyntaxError
_UNREADABLE_WORKBOOK = (
    InvalidFileException,
    zipfile.BadZipFile,
    KeyError,
    OSError,
    SyntaxError,
    ValueError,
)


# ---------------------------------------------------------------------------
# Workbook loading (no DB)
# ---------------------------------------------------------------------------

@dataclass
class SheetData:
    name: str
    rows: list[dict[str, Any]]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def read_sheet_rows(ws) -> list[dict[str, Any]]:
    """Return data rows as dicts keyed by the (stripped) header row.

    Blank cells are left out of the dict so header-variant lookup falls
    through to the next variant; fully blank rows are dropped.
    """
    rows_iter = ws.iter_rows(values_only=True)
    try:
        header = next(rows_iter)
    except StopIteration:
        return []
    keys = [str(h).strip() if h is not None else None for h in header]
    out: list[dict[str, Any]] = []
    for values in rows_iter:
        row = {
            k: v for k, v in zip(keys, values)
            if k and not _is_blank(v)
        }
        if row:
            out.append(row)
    return out


def load_import_sheets(
    content: bytes | None,
    mapping: ColumnMapping,
) -> tuple[SheetData, SheetData]:
    """Parse the workbook and select the members / renewals sheets.

    Raises ImportValidationError (or a subclass) for a missing upload, an
    unreadable workbook or missing sheets, before any DB work starts.
    """
    if not content:
        raise NoFileError()
    try:
        wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except _UNREADABLE_WORKBOOK as exc:
        raise ImportValidationError(f"Could not read workbook: {exc}") from exc
    try:
        members_name, renewals_name = resolve_sheets(mapping, list(wb.sheetnames))
        # read-only worksheets are parsed lazily, so broken sheet XML surfaces here
        try:
            members = SheetData(members_name, read_sheet_rows(wb[members_name]))
            renewals = SheetData(renewals_name, read_sheet_rows(wb[renewals_name]))
        except _UNREADABLE_WORKBOOK as exc:
            raise ImportValidationError(f"Could not read workbook: {exc}") from exc
    finally:
        wb.close()
    return members, renewals


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class ImportResult:
    request_id: str
    success: bool
    counters: RunCounters = field(default_factory=RunCounters)
    error: str | None = None
    validation_error: bool = False
    dry_run: bool = False
    finished_at: datetime = field(default_factory=utc_now)

    @property
    def message(self) -> str:
        if not self.success:
            if self.validation_error:
                return self.error or "Import failed"
            return f"Import failed: {self.error}. No data was imported."
        imported, skipped = self.counters.imported, self.counters.skipped
        prefix = "[dry-run, rolled back] " if self.dry_run else ""
        if skipped > 0:
            return (
                f"{prefix}Import completed! {imported} records imported, "
                f"{skipped} records skipped due to missing data."
            )
        return f"{prefix}Import completed successfully! All {imported} records imported."

    def to_response(self) -> tuple[int, dict[str, Any]]:
        if not self.success:
            if self.validation_error:
                return 400, {"error": self.error, "requestId": self.request_id}
            return 400, {
                "message": self.message,
                "success": False,
                "allOrNothing": True,
                "error": self.error,
                "requestId": self.request_id,
            }
        c = self.counters
        return 200, {
            "message": self.message,
            "imported": c.imported,
            "skipped": c.skipped,
            "members": {
                **c.members.to_dict(),
                "seatAssignmentsSkipped": c.seat_assignments_skipped,
            },
            "renewals": c.renewals.to_dict(),
            "success": True,
            "allOrNothing": True,
            "dryRun": self.dry_run,
            "requestId": self.request_id,
            "timestamp": self.finished_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------

_UPSERT_STUDENT_SQL = """
INSERT INTO students (
    id, name, father_name, contact_number, sex,
    seat_number, membership_date, membership_till, membership_status,
    aadhaar_number, address, modified_by
) VALUES (
    %(id)s, %(name)s, %(father_name)s, %(contact)s, %(sex)s,
    NULL, %(membership_date)s, %(membership_till)s,
    COALESCE(%(status)s::text, 'active'),
    %(aadhaar)s, COALESCE(%(address)s::text, 'NA'), %(modified_by)s
)
ON CONFLICT (id) DO UPDATE SET
    name = EXCLUDED.name,
    father_name = EXCLUDED.father_name,
    contact_number = EXCLUDED.contact_number,
    sex = CASE
        WHEN EXCLUDED.sex IN ('male', 'female') THEN EXCLUDED.sex
        ELSE students.sex
    END,
    membership_date = EXCLUDED.membership_date,
    membership_till = EXCLUDED.membership_till,
    membership_status = CASE
        WHEN %(status)s::text IN ('active', 'expired', 'suspended') THEN %(status)s::text
        ELSE students.membership_status
    END,
    aadhaar_number = CASE
        WHEN %(aadhaar_supplied)s OR students.aadhaar_number IS NULL
          THEN EXCLUDED.aadhaar_number
        ELSE students.aadhaar_number
    END,
    address = COALESCE(NULLIF(%(address)s::text, ''), students.address),
    modified_by = EXCLUDED.modified_by,
    updated_at = CURRENT_TIMESTAMP
RETURNING id, sex
"""


def _resolve_identity(
    conn: psycopg.Connection,
    member: MemberRow,
    request_id: str,
    counters: RunCounters,
    strict_identity: bool,
) -> IdentityResolution:
    res = resolve_identity_number(conn, member.aadhaar_number, member.student_id)
    if res.generated:
        counters.identity_generated += 1
    counters.identity_regenerated += res.attempts
    if res.probe_failed:
        counters.identity_probe_failures += 1
        click.echo(
            f"[{request_id}] WARN: identity uniqueness probe failed for "
            f"student {member.student_id}; keeping current candidate",
            err=True,
        )
    if res.exhausted:
        counters.identity_exhausted += 1
        if strict_identity:
            raise IdentityExhaustedError(
                f"could not find a free identity number for student {member.student_id} "
                f"after {res.attempts} attempts"
            )
        counters.warnings.append(
            f"student {member.student_id}: identity attempts exhausted; "
            "relying on the unique constraint"
        )
    return res


def _assign_seat(
    conn: psycopg.Connection,
    student_id: int,
    seat_raw: str,
    student_sex: str | None,
    modified_by: int | None,
    counters: RunCounters,
) -> bool:
    """Ensure the seat exists, then assign it if it is free and its restriction allows.

    Returns False when the assignment was a no-op: the seat is restricted
    to the other sex or another active student already holds it.
    """
    seat = seat_raw[:SEAT_NUMBER_MAX]
    existing = conn.execute(
        "SELECT occupant_sex FROM seats WHERE seat_number = %s",
        (seat,),
    ).fetchone()
    if existing is None:
        conn.execute(
            """
            INSERT INTO seats (seat_number, occupant_sex, created_at, updated_at, modified_by)
            VALUES (%s, %s, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP, %s)
            """,
            (seat, student_sex, modified_by),
        )
        counters.seats_inserted += 1

    assigned = conn.execute(
        """
        UPDATE students
        SET seat_number = %(seat)s::text,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = %(student_id)s
          AND EXISTS (
            SELECT 1 FROM seats
            WHERE seat_number = %(seat)s::text
              AND (occupant_sex IS NULL OR occupant_sex = %(sex)s::text)
          )
          AND NOT EXISTS (
            SELECT 1 FROM students other
            WHERE other.seat_number = %(seat)s::text
              AND other.id <> %(student_id)s
              AND other.membership_status = 'active'
          )
        RETURNING seat_number
        """,
        {"seat": seat, "student_id": student_id, "sex": student_sex},
    ).fetchone()
    if assigned is None:
        counters.seat_assignments_skipped += 1
        return False
    return True


def _release_seat(conn: psycopg.Connection, student_id: int) -> None:
    conn.execute(
        "UPDATE students SET seat_number = NULL WHERE id = %s AND seat_number IS NOT NULL",
        (student_id,),
    )


def _process_member(
    conn: psycopg.Connection,
    member: MemberRow,
    modified_by: int | None,
    request_id: str,
    counters: RunCounters,
    strict_identity: bool,
) -> str | None:
    """Write one member row.  Returns a skip reason, or None when imported."""
    if member.student_id is None:
        return "missing_id"
    if member.name is None:
        return "missing_name"

    identity = _resolve_identity(conn, member, request_id, counters, strict_identity)

    student = conn.execute(
        _UPSERT_STUDENT_SQL,
        {
            "id": member.student_id,
            "name": clip_upper(member.name),
            "father_name": clip_upper(member.father_name),
            "contact": member.contact_number or DEFAULT_CONTACT,
            "sex": member.sex,
            "membership_date": member.membership_date or utc_now(),
            "membership_till": member.membership_till,
            "status": member.membership_status,
            "aadhaar": identity.value,
            "aadhaar_supplied": member.aadhaar_number is not None,
            "address": member.address,
            "modified_by": modified_by,
        },
    ).fetchone()

    if student is None:
        return None
    assigned = False
    if member.seat_number:
        assigned = _assign_seat(
            conn, student[0], member.seat_number, student[1], modified_by, counters,
        )
    if not assigned:
        _release_seat(conn, student[0])
    return None


# ---------------------------------------------------------------------------
# Renewals
# ---------------------------------------------------------------------------

def _process_renewal(
    conn: psycopg.Connection,
    renewal: RenewalRow,
    modified_by: int | None,
) -> str | None:
    """Insert one payment.  Returns a skip reason, or None when imported."""
    if renewal.student_id is None:
        return "missing_id"
    if renewal.amount is None or renewal.amount == 0:
        return "missing_amount"

    exists = conn.execute(
        "SELECT id FROM students WHERE id = %s",
        (renewal.student_id,),
    ).fetchone()
    if exists is None:
        return "unknown_student"

    seat_label = (renewal.seat_number or "N/A")[:DESCRIPTION_SEAT_MAX]
    conn.execute(
        """
        INSERT INTO payments (
            student_id, amount, payment_date, payment_mode, description,
            modified_by, created_at, updated_at
        ) VALUES (%s, %s, %s, %s, %s, %s, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
        """,
        (
            renewal.student_id,
            max(Decimal(0), renewal.amount),
            renewal.payment_date or utc_now(),
            renewal.payment_mode,
            f"Renewal payment - Seat {seat_label}",
            modified_by,
        ),
    )
    return None


# ---------------------------------------------------------------------------
# DB phase
# ---------------------------------------------------------------------------

def _import_members(
    conn: psycopg.Connection,
    sheet: SheetData,
    mapping: ColumnMapping,
    modified_by: int | None,
    request_id: str,
    counters: RunCounters,
    rejects: RejectWriter | None,
    strict_identity: bool,
) -> None:
    section = counters.members
    section.total = len(sheet.rows)
    click.echo(f"[{request_id}] Processing members sheet {sheet.name!r} ({section.total} rows)")
    for idx, raw in enumerate(sheet.rows):
        member = map_member_row(mapping, raw)
        reason = _process_member(
            conn, member, modified_by, request_id, counters, strict_identity,
        )
        if reason is None:
            section.imported += 1
        else:
            counters.skip(section, reason)
            if rejects is not None:
                rejects.write(sheet.name, idx + 2, raw, reason)
        if (idx + 1) % PROGRESS_EVERY == 0:
            click.echo(f"[{request_id}] members progress: {idx + 1}/{section.total}")


def _import_renewals(
    conn: psycopg.Connection,
    sheet: SheetData,
    mapping: ColumnMapping,
    modified_by: int | None,
    request_id: str,
    counters: RunCounters,
    rejects: RejectWriter | None,
) -> None:
    section = counters.renewals
    section.total = len(sheet.rows)
    click.echo(f"[{request_id}] Processing renewals sheet {sheet.name!r} ({section.total} rows)")
    for idx, raw in enumerate(sheet.rows):
        renewal = map_renewal_row(mapping, raw)
        reason = _process_renewal(conn, renewal, modified_by)
        if reason is None:
            section.imported += 1
        else:
            counters.skip(section, reason)
            if rejects is not None:
                rejects.write(sheet.name, idx + 2, raw, reason)
        if (idx + 1) % PROGRESS_EVERY == 0:
            click.echo(f"[{request_id}] renewals progress: {idx + 1}/{section.total}")


def run_import(
    conn: psycopg.Connection,
    content: bytes | None,
    modified_by: int | None = None,
    mapping: ColumnMapping | None = None,
    request_id: str | None = None,
    rejects: RejectWriter | None = None,
    strict_identity: bool = False,
    dry_run: bool = False,
) -> ImportResult:
    """Import a members/renewals workbook all-or-nothing.

    Args:
        conn: Open psycopg connection (autocommit off).  The caller owns
            its lifetime; this function commits or rolls back.
        content: Raw .xlsx bytes.
        modified_by: User id stamped on every written row.
        strict_identity: Treat identity-number exhaustion as fatal.
        dry_run: Run everything, then roll back.

    Returns:
        ImportResult; ``to_response()`` yields the HTTP status and body.
    """
    request_id = request_id or new_request_id("admin-import")
    mapping = mapping or load_column_mapping()
    counters = RunCounters()

    try:
        members, renewals = load_import_sheets(content, mapping)
    except ImportValidationError as exc:
        click.echo(f"[{request_id}] Import rejected: {exc}", err=True)
        return ImportResult(request_id, False, counters, error=str(exc), validation_error=True)

    click.echo(f"[{request_id}] Transaction started for import")
    try:
        _import_members(
            conn, members, mapping, modified_by, request_id,
            counters, rejects, strict_identity,
        )
        _import_renewals(
            conn, renewals, mapping, modified_by, request_id, counters, rejects,
        )
    except Exception as exc:
        conn.rollback()
        click.echo(
            f"[{request_id}] FATAL: import failed, rolled back: "
            f"{type(exc).__name__}: {exc}",
            err=True,
        )
        return ImportResult(request_id, False, counters, error=str(exc), dry_run=dry_run)

    if dry_run:
        conn.rollback()
        click.echo(f"[{request_id}] [dry-run] All changes rolled back.")
    else:
        conn.commit()
        click.echo(
            f"[{request_id}] Import committed: {counters.members.imported} members, "
            f"{counters.renewals.imported} renewals, {counters.skipped} skipped"
        )
    return ImportResult(request_id, True, counters, dry_run=dry_run)


def build_import_report(result: ImportResult) -> str:
    c = result.counters
    lines = [
        "=" * 60,
        "Members / Renewals Import Report",
        f"  request_id: {result.request_id}",
        f"  dry_run: {result.dry_run}",
        "=" * 60,
        f"  members total:           {c.members.total}",
        f"    → imported:            {c.members.imported}",
        f"    → skipped:             {c.members.skipped}",
        f"  seats inserted:          {c.seats_inserted}",
        f"  seat assignments skipped: {c.seat_assignments_skipped}",
        f"  renewals total:          {c.renewals.total}",
        f"    → imported:            {c.renewals.imported}",
        f"    → skipped:             {c.renewals.skipped}",
        f"  identity generated:      {c.identity_generated}",
        f"  identity regenerated:    {c.identity_regenerated}",
        f"  identity exhausted:      {c.identity_exhausted}",
    ]
    if c.skip_reasons:
        lines.append("  skip reasons:")
        for reason, n in sorted(c.skip_reasons.items()):
            lines.append(f"    {reason}: {n}")
    if not result.success:
        lines.append(f"FAILED: {result.error}")
    if c.warnings:
        lines.append(f"\nWarnings ({len(c.warnings)}):")
        for w in c.warnings[:20]:
            lines.append(f"  {w}")
        if len(c.warnings) > 20:
            lines.append(f"  ... and {len(c.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
