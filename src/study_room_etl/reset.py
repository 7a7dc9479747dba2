"""study_room_etl.reset

Clean-database orchestration and the default re-seed step.

run_clean_database() empties every base table except ``users`` in one
transaction: user-defined triggers are disabled around the deletes,
payments/expenses/students go first so foreign keys hold, and every
sequence restarts (students_id_seq at the fresh-start watermark).  After
commit an external re-seed command runs through an injected
CommandRunner.  Its failure is reported separately: by then the wipe is
already durable.

The default re-seed command is this package's own CLI in ``seed_schema``
mode, which calls apply_schema() and seed_defaults().
"""

from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import click
import psycopg
from psycopg import sql

from study_room_etl.shared import (
    PROTECTED_TABLE,
    SCHEMA,
    discover_tables,
    list_sequences,
    new_request_id,
)

SQL_DIR = Path(__file__).parent / "sql"
STUDENT_ID_SEQUENCE = "students_id_seq"
STUDENT_ID_WATERMARK = 20250001
DELETE_FIRST = ("payments", "expenses", "students")

DEFAULT_MONTHLY_FEES = {"male": "600.00", "female": "550.00"}


# ---------------------------------------------------------------------------
# External command runner
# ---------------------------------------------------------------------------

@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str


class CommandRunner(Protocol):
    def run(self, command: list[str], env: dict[str, str] | None = None) -> CommandResult:
        ...


class SubprocessRunner:
    """Runs the command to completion and captures both streams."""

    def run(self, command: list[str], env: dict[str, str] | None = None) -> CommandResult:
        merged = {**os.environ, **(env or {})}
        try:
            proc = subprocess.run(command, capture_output=True, text=True, env=merged)
        except OSError as exc:
            return CommandResult(127, "", f"could not start {command[0]!r}: {exc}")
        return CommandResult(proc.returncode, proc.stdout, proc.stderr)


def default_setup_command() -> list[str]:
    return [sys.executable, "-m", "study_room_etl.cli", "--mode", "seed_schema"]


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class CleanResult:
    request_id: str
    cleaned: bool
    tables: list[str]
    setup: CommandResult | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.cleaned and self.setup is not None and self.setup.exit_code == 0

    def to_response(self) -> tuple[int, dict[str, Any]]:
        if not self.cleaned:
            return 500, {"error": "Failed to clean database", "details": self.error}
        if not self.success:
            return 500, {
                "error": "Database cleaned but re-seed command failed",
                "setupError": self.setup.stderr if self.setup else self.error,
            }
        return 200, {
            "message": "Database cleaned and re-seed command executed successfully",
            "setupOutput": self.setup.stdout,
        }


# ---------------------------------------------------------------------------
# Wipe
# ---------------------------------------------------------------------------

def user_triggers(conn: psycopg.Connection, table: str) -> list[str]:
    """Non-internal, non-RI trigger names on *table*."""
    rows = conn.execute(
        """
        SELECT tgname
        FROM pg_trigger
        WHERE tgrelid = %s::regclass
          AND NOT tgisinternal
          AND tgname NOT LIKE 'RI_ConstraintTrigger%%'
        ORDER BY tgname
        """,
        (f'{SCHEMA}."{table}"',),
    ).fetchall()
    return [r[0] for r in rows]


def _set_triggers(conn: psycopg.Connection, triggers: dict[str, list[str]], enable: bool) -> None:
    verb = sql.SQL("ENABLE" if enable else "DISABLE")
    for table, names in triggers.items():
        for name in names:
            conn.execute(
                sql.SQL("ALTER TABLE {} {} TRIGGER {}").format(
                    sql.Identifier(table), verb, sql.Identifier(name),
                )
            )


def delete_order(tables: list[str]) -> list[str]:
    first = [t for t in DELETE_FIRST if t in tables]
    return first + [t for t in tables if t not in first]


def wipe_tables(conn: psycopg.Connection, request_id: str) -> list[str]:
    """Delete all rows outside the protected table and restart sequences.

    Runs inside the caller's transaction; does not commit.
    """
    tables = [t.name for t in discover_tables(conn, exclude=(PROTECTED_TABLE,))]
    click.echo(f"[{request_id}] Tables to clean: {', '.join(tables) or '(none)'}")

    triggers = {t: user_triggers(conn, t) for t in tables}
    _set_triggers(conn, triggers, enable=False)
    for table in delete_order(tables):
        conn.execute(sql.SQL("DELETE FROM {}").format(sql.Identifier(table)))
    _set_triggers(conn, triggers, enable=True)

    sequences = list_sequences(conn)
    for seq in sequences:
        conn.execute(sql.SQL("ALTER SEQUENCE {} RESTART WITH 1").format(sql.Identifier(seq)))
    if STUDENT_ID_SEQUENCE in sequences:
        conn.execute(
            sql.SQL("ALTER SEQUENCE {} RESTART WITH {}").format(
                sql.Identifier(STUDENT_ID_SEQUENCE), sql.SQL(str(STUDENT_ID_WATERMARK)),
            )
        )
    else:
        click.echo(f"[{request_id}] WARN: {STUDENT_ID_SEQUENCE} not found; not restarted", err=True)
    return tables


def run_clean_database(
    conn: psycopg.Connection,
    runner: CommandRunner | None = None,
    command: list[str] | None = None,
    env: dict[str, str] | None = None,
    request_id: str | None = None,
) -> CleanResult:
    """Wipe, commit, then run the re-seed *command* through *runner*."""
    request_id = request_id or new_request_id("clean-db")
    runner = runner or SubprocessRunner()
    command = command or default_setup_command()
    click.echo(f"[{request_id}] Starting clean-database")
    try:
        tables = wipe_tables(conn, request_id)
    except Exception as exc:
        conn.rollback()
        click.echo(f"[{request_id}] FATAL: clean failed, rolled back: {exc}", err=True)
        return CleanResult(request_id, False, [], error=str(exc))
    conn.commit()
    click.echo(f"[{request_id}] Database cleaned; running {' '.join(command)}")

    setup = runner.run(command, env=env)
    if setup.stdout:
        click.echo(f"[{request_id}] [setup] {setup.stdout.rstrip()}")
    if setup.exit_code != 0:
        click.echo(
            f"[{request_id}] Re-seed failed (exit {setup.exit_code}): {setup.stderr.rstrip()}",
            err=True,
        )
    return CleanResult(request_id, True, tables, setup=setup)


# ---------------------------------------------------------------------------
# Schema + seed (the default re-seed step)
# ---------------------------------------------------------------------------

def schema_files() -> list[Path]:
    return sorted(SQL_DIR.glob("*.sql"))


def apply_schema(conn: psycopg.Connection) -> list[str]:
    """Execute the bundled idempotent schema files in name order."""
    applied = []
    for path in schema_files():
        conn.execute(path.read_text(encoding="utf-8"))
        applied.append(path.name)
    return applied


def seed_defaults(conn: psycopg.Connection) -> int:
    """Insert the default monthly fee rows; existing genders are left alone."""
    inserted = 0
    for gender, fees in DEFAULT_MONTHLY_FEES.items():
        cur = conn.execute(
            """
            INSERT INTO student_fees_config (gender, monthly_fees)
            VALUES (%s, %s)
            ON CONFLICT (gender) DO NOTHING
            """,
            (gender, fees),
        )
        inserted += cur.rowcount
    return inserted
