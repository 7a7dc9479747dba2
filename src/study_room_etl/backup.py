"""study_room_etl.backup

Full-database JSON snapshot and its symmetric restore.

Backup is best-effort across tables: every base table found in the
catalog is dumped with SELECT *, and a table whose query fails is
recorded as an empty list instead of aborting the snapshot.

Restore is all-or-nothing: one transaction wipes the restorable tables
(children before parents) and re-inserts the snapshot with
ON CONFLICT DO NOTHING, so running it twice is harmless.  Student
contacts are re-normalized, and the reserved admin user is never
touched.  Whether payments carries the optional ``remarks`` column is
probed against the live schema before any insert is built.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import click
import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from study_room_etl.normalize import clean_identity_number, contact_or_default
from study_room_etl.shared import (
    ADMIN_USERNAME,
    NoFileError,
    RestoreFormatError,
    TableSpec,
    discover_tables,
    new_request_id,
    table_columns,
    table_spec,
)

BACKUP_FILENAME = "study-room-backup.json"

# Deleted in this order, then re-inserted in RESTORE_ORDER.
WIPE_ORDER = ("payments", "expenses", "students", "seats", "student_fees_config")
RESTORE_ORDER = ("seats", "students", "users", "payments", "expenses", "student_fees_config")

OPTIONAL_PAYMENT_COLUMN = "remarks"


# ---------------------------------------------------------------------------
# Backup
# ---------------------------------------------------------------------------

def run_backup(conn: psycopg.Connection, request_id: str | None = None) -> dict[str, list[dict]]:
    """Snapshot every base table into ``{table: [row, ...]}``.

    Each table is read under its own savepoint so one failing SELECT does
    not poison the reads that follow.  The connection is rolled back at
    the end; nothing is written.
    """
    request_id = request_id or new_request_id("admin-backup")
    backup: dict[str, list[dict]] = {}
    tables = discover_tables(conn)
    click.echo(f"[{request_id}] Backing up {len(tables)} table(s)")
    with conn.cursor(row_factory=dict_row) as cur:
        for spec in tables:
            cur.execute("SAVEPOINT backup_table")
            try:
                cur.execute(sql.SQL("SELECT * FROM {}").format(sql.Identifier(spec.name)))
                rows = cur.fetchall()
            except psycopg.Error as exc:
                cur.execute("ROLLBACK TO SAVEPOINT backup_table")
                click.echo(
                    f"[{request_id}] WARN: backup of {spec.name} failed, "
                    f"recorded as empty: {exc}",
                    err=True,
                )
                rows = []
            else:
                cur.execute("RELEASE SAVEPOINT backup_table")
            backup[spec.name] = rows
            click.echo(f"[{request_id}]   {spec.name}: {len(rows)} row(s)")
    conn.rollback()
    return backup


def dump_backup(backup: dict[str, list[dict]]) -> str:
    """Serialize a snapshot; datetimes and decimals become strings."""
    return json.dumps(backup, indent=2, default=str)


def parse_backup(content: bytes | str | None) -> dict[str, list[dict]]:
    """Parse an uploaded snapshot.

    Raises:
        NoFileError: No content.
        RestoreFormatError: Not JSON, or not an object of row lists.
    """
    if not content:
        raise NoFileError()
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RestoreFormatError(f"Backup is not UTF-8 text: {exc}") from exc
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise RestoreFormatError(f"Backup is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise RestoreFormatError("Backup must be a JSON object keyed by table name")
    for table, rows in data.items():
        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise RestoreFormatError(f"Backup table {table!r} must be a list of row objects")
    return data


# ---------------------------------------------------------------------------
# Restore
# ---------------------------------------------------------------------------

@dataclass
class RestoreResult:
    request_id: str
    success: bool
    restored: dict[str, int]
    error: str | None = None
    validation_error: bool = False

    def to_response(self) -> tuple[int, dict[str, Any]]:
        if self.success:
            return 200, {"message": "Restore completed successfully"}
        if self.validation_error:
            return 400, {"error": self.error}
        return 500, {"error": f"Restore failed: {self.error}"}


def _prepare_row(table: str, row: dict[str, Any]) -> dict[str, Any]:
    """Per-table value fix-ups applied before insert."""
    if table == "students":
        row = dict(row)
        row["contact_number"] = contact_or_default(row.get("contact_number"))
        if "aadhaar_number" in row:
            row["aadhaar_number"] = clean_identity_number(row["aadhaar_number"])
        if "address" in row and not row["address"]:
            row["address"] = "NA"
    elif table == "users" and "permissions" in row:
        row = dict(row)
        if isinstance(row["permissions"], (dict, list)):
            row["permissions"] = Jsonb(row["permissions"])
    return row


def _insert_sql(spec: TableSpec, columns: list[str]) -> sql.Composed:
    # users also carries a unique username; any conflict there is a no-op too.
    if spec.name == "users" or not spec.conflict_key:
        conflict = sql.SQL("ON CONFLICT DO NOTHING")
    else:
        conflict = sql.SQL("ON CONFLICT ({}) DO NOTHING").format(
            sql.SQL(", ").join(map(sql.Identifier, spec.conflict_key))
        )
    return sql.SQL("INSERT INTO {} ({}) VALUES ({}) {}").format(
        sql.Identifier(spec.name),
        sql.SQL(", ").join(map(sql.Identifier, columns)),
        sql.SQL(", ").join(sql.Placeholder(c) for c in columns),
        conflict,
    )


def restore_columns(spec: TableSpec, has_remarks: bool) -> tuple[str, ...]:
    if spec.name == "payments" and has_remarks:
        return spec.columns + (OPTIONAL_PAYMENT_COLUMN,)
    return spec.columns


def _restore_table(
    conn: psycopg.Connection,
    spec: TableSpec,
    rows: list[dict[str, Any]],
    allowed: tuple[str, ...],
) -> int:
    count = 0
    for row in rows:
        if spec.name == "users" and row.get("username") == ADMIN_USERNAME:
            continue
        row = _prepare_row(spec.name, row)
        # Only columns the snapshot carries; absent ones take table defaults.
        columns = [c for c in allowed if c in row]
        if spec.name == "students" and "contact_number" not in columns:
            columns.append("contact_number")
        if not columns:
            continue
        conn.execute(_insert_sql(spec, columns), {c: row[c] for c in columns})
        count += 1
    return count


def run_restore(
    conn: psycopg.Connection,
    content: bytes | str | dict | None,
    request_id: str | None = None,
) -> RestoreResult:
    """Replace the restorable tables with the snapshot, all-or-nothing.

    *content* may be raw upload bytes/text or an already-parsed snapshot.
    """
    request_id = request_id or new_request_id("admin-restore")
    try:
        backup = content if isinstance(content, dict) else parse_backup(content)
    except (NoFileError, RestoreFormatError) as exc:
        click.echo(f"[{request_id}] Restore rejected: {exc}", err=True)
        return RestoreResult(request_id, False, {}, error=str(exc), validation_error=True)

    restored: dict[str, int] = {}
    try:
        has_remarks = OPTIONAL_PAYMENT_COLUMN in table_columns(conn, "payments")
        click.echo(
            f"[{request_id}] Transaction started for restore "
            f"(payments.remarks present: {has_remarks})"
        )
        for table in WIPE_ORDER:
            conn.execute(sql.SQL("DELETE FROM {}").format(sql.Identifier(table)))
        for table in RESTORE_ORDER:
            spec = table_spec(table)
            restored[table] = _restore_table(
                conn, spec, backup.get(table) or [], restore_columns(spec, has_remarks),
            )
            click.echo(f"[{request_id}]   {table}: {restored[table]} row(s) restored")
        for table in sorted(set(backup) - set(RESTORE_ORDER)):
            click.echo(f"[{request_id}]   {table}: not restorable, ignored")
    except Exception as exc:
        conn.rollback()
        click.echo(
            f"[{request_id}] FATAL: restore failed, rolled back: "
            f"{type(exc).__name__}: {exc}",
            err=True,
        )
        return RestoreResult(request_id, False, restored, error=str(exc))

    conn.commit()
    click.echo(f"[{request_id}] Restore committed")
    return RestoreResult(request_id, True, restored)
