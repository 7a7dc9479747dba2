"""study_room_etl.cli

Operator entrypoint for the study-room bulk data tools.

Usage:
    study-room-etl --mode import_excel --db-dsn "$DB_DSN" --file-path members.xlsx
    study-room-etl --mode backup --output-path study-room-backup.json
    study-room-etl --mode restore --file-path study-room-backup.json
    study-room-etl --mode clean_database
    python -m study_room_etl.cli --mode seed_schema

Every run prints ``[request_id]``-prefixed progress and writes a JSON run
report to ./artifacts/reports/<request_id>.json.
"""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import click
import psycopg

from study_room_etl.backup import BACKUP_FILENAME, dump_backup, run_backup, run_restore
from study_room_etl.export_excel import (
    EXPORT_FILENAME,
    build_full_report,
    full_report_filename,
    run_export,
)
from study_room_etl.import_excel import build_import_report, run_import
from study_room_etl.mapping import MappingValidationError, load_column_mapping
from study_room_etl.reset import apply_schema, run_clean_database, seed_defaults
from study_room_etl.shared import RejectWriter, new_request_id, utc_now, write_run_report

MODES = [
    "import_excel", "export_excel", "full_report",
    "backup", "restore", "clean_database", "seed_schema",
]

_REQUEST_PREFIX = {
    "import_excel": "admin-import",
    "export_excel": "admin-export",
    "full_report": "admin-report",
    "backup": "admin-backup",
    "restore": "admin-restore",
    "clean_database": "clean-db",
    "seed_schema": "seed-schema",
}


def _require_file(file_path: str | None, mode: str, request_id: str) -> bytes:
    if not file_path:
        click.echo(f"[{request_id}] FATAL: {mode} mode requires --file-path", err=True)
        sys.exit(1)
    path = Path(file_path)
    if not path.exists():
        click.echo(f"[{request_id}] FATAL: file not found: {path}", err=True)
        sys.exit(1)
    return path.read_bytes()


def _write_output(data: bytes, output_path: Path, request_id: str) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(data)
    click.echo(f"[{request_id}] Wrote {output_path} ({len(data)} bytes)")


@click.command()
@click.option(
    "--mode",
    required=True,
    type=click.Choice(MODES),
    help="Operation to run",
)
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (env: DB_DSN)")
@click.option("--file-path", default=None, type=click.Path(), help="[import_excel|restore] Input file")
@click.option(
    "--output-path", default=None, type=click.Path(),
    help="[export_excel|full_report|backup] Output file",
)
@click.option("--modified-by", default=None, type=int, help="[import_excel] User id stamped on written rows")
@click.option(
    "--mapping-file", default=None, type=click.Path(),
    help="[import_excel] Column mapping YAML (defaults to the bundled file)",
)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/import_rejects.csv",
    show_default=True,
    type=click.Path(),
    help="[import_excel] CSV of skipped rows",
)
@click.option(
    "--strict-identity", is_flag=True, default=False,
    help="[import_excel] Fail the import when no free identity number is found",
)
@click.option(
    "--setup-command", default=None,
    help="[clean_database] Re-seed command (shell-split); defaults to seed_schema mode",
)
@click.option("--dry-run", is_flag=True, default=False, help="[import_excel] Roll back at the end")
@click.option("--request-id", default=None, help="Override request id for log correlation")
def main(
    mode: str,
    db_dsn: str,
    file_path: str | None,
    output_path: str | None,
    modified_by: int | None,
    mapping_file: str | None,
    rejects_path: str,
    strict_identity: bool,
    setup_command: str | None,
    dry_run: bool,
    request_id: str | None,
) -> None:
    """Study-room backup, restore, spreadsheet import/export and reset."""
    request_id = request_id or new_request_id(_REQUEST_PREFIX[mode])
    started_at = utc_now().isoformat()
    click.echo(f"[{request_id}] Starting {mode} run (dry_run={dry_run})")

    mapping = None
    if mode == "import_excel":
        try:
            mapping = load_column_mapping(Path(mapping_file) if mapping_file else None)
        except (MappingValidationError, FileNotFoundError) as exc:
            click.echo(f"[{request_id}] FATAL: invalid column mapping: {exc}", err=True)
            sys.exit(1)
        content = _require_file(file_path, mode, request_id)
    elif mode == "restore":
        content = _require_file(file_path, mode, request_id)

    try:
        conn = psycopg.connect(db_dsn, autocommit=False)
    except psycopg.OperationalError as exc:
        click.echo(f"[{request_id}] FATAL: could not connect: {exc}", err=True)
        sys.exit(1)

    failed = False
    sources: dict[str, str | None] = {"file_path": file_path, "output_path": output_path}
    try:
        if mode == "import_excel":
            rejects = RejectWriter(Path(rejects_path))
            try:
                result = run_import(
                    conn, content,
                    modified_by=modified_by,
                    mapping=mapping,
                    request_id=request_id,
                    rejects=rejects,
                    strict_identity=strict_identity,
                    dry_run=dry_run,
                )
            finally:
                rejects.close()
            click.echo(build_import_report(result))
            if rejects.count:
                click.echo(f"[{request_id}] {rejects.count} skipped row(s) written to {rejects_path}")
            sources["mapping_hash"] = mapping.yaml_hash
            sources["rejects_path"] = rejects_path if rejects.count else None
            summary = {**result.counters.to_dict(), "success": result.success, "error": result.error}
            failed = not result.success

        elif mode == "export_excel":
            out = Path(output_path or EXPORT_FILENAME)
            _write_output(run_export(conn, request_id), out, request_id)
            summary = {"output_path": str(out)}

        elif mode == "full_report":
            out = Path(output_path or full_report_filename())
            _write_output(build_full_report(conn, request_id), out, request_id)
            summary = {"output_path": str(out)}

        elif mode == "backup":
            snapshot = run_backup(conn, request_id)
            out = Path(output_path or BACKUP_FILENAME)
            _write_output(dump_backup(snapshot).encode("utf-8"), out, request_id)
            summary = {"tables": {t: len(rows) for t, rows in snapshot.items()}}

        elif mode == "restore":
            result = run_restore(conn, content, request_id)
            summary = {"restored": result.restored, "success": result.success, "error": result.error}
            failed = not result.success

        elif mode == "clean_database":
            command = shlex.split(setup_command) if setup_command else None
            result = run_clean_database(
                conn, command=command, env={"DB_DSN": db_dsn}, request_id=request_id,
            )
            status, body = result.to_response()
            summary = {"tables": result.tables, "status": status, **body}
            failed = not result.success

        else:  # seed_schema
            applied = apply_schema(conn)
            inserted = seed_defaults(conn)
            conn.commit()
            click.echo(
                f"[{request_id}] Schema applied ({', '.join(applied)}); "
                f"{inserted} fee config row(s) seeded"
            )
            summary = {"applied": applied, "fee_rows_seeded": inserted}
    finally:
        conn.close()

    report_path = write_run_report(request_id, started_at, mode, dry_run, sources, summary)
    click.echo(f"[{request_id}] Run report: {report_path}")
    if failed:
        click.echo(f"[{request_id}] {mode} failed; exiting non-zero", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
