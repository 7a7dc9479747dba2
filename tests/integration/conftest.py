"""Integration test fixtures.

Applies the bundled study-room schema against an ephemeral PostgreSQL
database provided by pytest-postgresql before each integration test.
"""

from __future__ import annotations

import io
from pathlib import Path

import psycopg
import pytest
from openpyxl import Workbook
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
SCHEMA_FILES = [
    PROJECT_ROOT / "src" / "study_room_etl" / "sql" / "0001_core_schema.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (connection, dsn) with the schema applied.

    Function scope gives every test a fresh database.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for schema_file in SCHEMA_FILES:
            conn.execute(schema_file.read_text(encoding="utf-8"))
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def make_workbook():
    """Build .xlsx bytes from ``{sheet_title: [header_row, *rows]}``."""

    def build(sheets: dict[str, list[list]]) -> bytes:
        wb = Workbook()
        wb.remove(wb.active)
        for title, rows in sheets.items():
            ws = wb.create_sheet(title)
            for row in rows:
                ws.append(row)
        buf = io.BytesIO()
        wb.save(buf)
        return buf.getvalue()

    return build


def count(conn: psycopg.Connection, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


@pytest.fixture
def row_count():
    return count
