"""study_room_etl.export_excel

Read-only spreadsheet exports.

run_export() rebuilds the two-sheet members/renewals workbook using the
canonical historical headers, so the file can be fed straight back into
run_import().  build_full_report() dumps every populated table into its
own auto-fitted sheet for operators.

Neither function opens a transaction or mutates anything.
"""

from __future__ import annotations

import io
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import click
import psycopg
from openpyxl import Workbook
from openpyxl.utils import get_column_letter

from study_room_etl.shared import new_request_id, table_columns, utc_now

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
EXPORT_FILENAME = "library-data-export.xlsx"
MEMBERS_SHEET = "Library Members"
RENEWALS_SHEET = "Renewals"
MIN_COLUMN_WIDTH = 10

_MEMBERS_SQL = """
SELECT
    s.id,
    s.name AS "Name_Student",
    s.father_name AS "Father_Name",
    s.contact_number AS "Contact Number",
    s.sex,
    s.membership_date AS "Membership_Date",
    s.membership_till AS "Membership_Till",
    s.membership_status AS "Membership_Status",
    COALESCE(payment_summary.total_paid, 0) AS "Total_Paid",
    payment_summary.last_payment_date AS "Last_Payment_date",
    se.seat_number AS "Seat Number",
    s.aadhaar_number AS "Aadhaar",
    s.address AS "Address"
FROM students s
LEFT JOIN seats se ON s.seat_number = se.seat_number
LEFT JOIN (
    SELECT student_id,
           SUM(amount) AS total_paid,
           MAX(payment_date) AS last_payment_date
    FROM payments
    GROUP BY student_id
) payment_summary ON s.id = payment_summary.student_id
ORDER BY s.id
"""

_RENEWALS_SQL = """
SELECT
    p.student_id AS "ID",
    st.seat_number AS "Seat_Number",
    p.amount AS "Amount_paid",
    p.payment_date AS "Payment_date",
    p.payment_mode AS "Payment_mode"
FROM payments p
LEFT JOIN students st ON p.student_id = st.id
ORDER BY p.payment_date DESC
"""

# (sheet title, query, required table).  Users never expose password hashes.
_REPORT_SHEETS = [
    ("Users", "SELECT id, username, role, status, created_at FROM users ORDER BY id", "users"),
    ("Students", "SELECT * FROM students ORDER BY id", "students"),
    ("Payments", "SELECT * FROM payments ORDER BY id", "payments"),
    ("Seats", "SELECT * FROM seats ORDER BY seat_number", "seats"),
    ("Expenses", "SELECT * FROM expenses ORDER BY id", "expenses"),
    ("Seat History", "SELECT * FROM seats_history ORDER BY id", "seats_history"),
]


def cell_value(value: Any) -> Any:
    """Coerce a DB value into something openpyxl can write.

    openpyxl rejects tz-aware datetimes, so they are shifted to UTC and
    made naive.  Decimals become floats; dicts/lists become their repr.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (dict, list)):
        return str(value)
    return value


def _query(conn: psycopg.Connection, sql: str) -> tuple[list[str], list[tuple]]:
    cur = conn.execute(sql)
    headers = [d.name for d in cur.description]
    return headers, cur.fetchall()


def _append_sheet(wb: Workbook, title: str, headers: list[str], rows: list[tuple]) -> Any:
    ws = wb.create_sheet(title)
    ws.append(headers)
    for row in rows:
        ws.append([cell_value(v) for v in row])
    return ws


def autofit_columns(ws, headers: list[str], rows: list[tuple]) -> None:
    """Width per column: longest rendered value (header included) + 2, min 10."""
    for idx, header in enumerate(headers):
        longest = len(str(header))
        for row in rows:
            value = row[idx]
            if value is not None:
                longest = max(longest, len(str(value)))
        ws.column_dimensions[get_column_letter(idx + 1)].width = max(
            MIN_COLUMN_WIDTH, longest + 2,
        )


def _to_bytes(wb: Workbook) -> bytes:
    # Drop openpyxl's default blank sheet once real sheets exist.
    default = wb.worksheets[0]
    if len(wb.worksheets) > 1 and default.title == "Sheet" and default.max_row == 1 \
            and default["A1"].value is None:
        wb.remove(default)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def run_export(conn: psycopg.Connection, request_id: str | None = None) -> bytes:
    """Build the members/renewals workbook and return the .xlsx bytes."""
    request_id = request_id or new_request_id("admin-export")
    click.echo(f"[{request_id}] Starting export-excel")
    member_headers, members = _query(conn, _MEMBERS_SQL)
    renewal_headers, renewals = _query(conn, _RENEWALS_SQL)

    wb = Workbook()
    _append_sheet(wb, MEMBERS_SHEET, member_headers, members)
    _append_sheet(wb, RENEWALS_SHEET, renewal_headers, renewals)
    click.echo(
        f"[{request_id}] Export completed: {len(members)} members, "
        f"{len(renewals)} renewals"
    )
    return _to_bytes(wb)


def full_report_filename(today: date | None = None) -> str:
    today = today or utc_now().date()
    return f"full-data-report-{today.isoformat()}.xlsx"


def build_full_report(conn: psycopg.Connection, request_id: str | None = None) -> bytes:
    """One auto-fitted sheet per populated table; missing or empty tables are left out."""
    request_id = request_id or new_request_id("admin-report")
    wb = Workbook()
    written = 0
    for title, sql, table in _REPORT_SHEETS:
        if not table_columns(conn, table):
            click.echo(f"[{request_id}] {table}: not present, skipped")
            continue
        headers, rows = _query(conn, sql)
        if not rows:
            continue
        ws = _append_sheet(wb, title, headers, rows)
        autofit_columns(ws, headers, rows)
        written += 1
    click.echo(f"[{request_id}] Full report built with {written} sheet(s)")
    return _to_bytes(wb)
