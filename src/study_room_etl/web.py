"""
Admin HTTP routes for backup, restore, spreadsheet import/export and reset.

The blueprint is built by create_admin_blueprint() with everything it
needs injected: a ``connect`` callable returning a fresh psycopg
connection (one per request, always closed), the host application's
admin guard decorator, and optionally the re-seed runner/command.
"""

from __future__ import annotations

import io
from http import HTTPStatus
from typing import Any, Callable

import click
import psycopg
from flask import Blueprint, jsonify, request, send_file

from study_room_etl.backup import BACKUP_FILENAME, dump_backup, run_backup, run_restore
from study_room_etl.export_excel import (
    EXPORT_FILENAME,
    XLSX_MIMETYPE,
    build_full_report,
    full_report_filename,
    run_export,
)
from study_room_etl.import_excel import run_import
from study_room_etl.mapping import ColumnMapping
from study_room_etl.reset import CommandRunner, run_clean_database
from study_room_etl.shared import new_request_id

ALLOWED_EXTENSIONS = {"xlsx", "json"}
MAX_UPLOAD_BYTES = 50 * 1024 * 1024


class UploadRejected(ValueError):
    def __init__(self, message: str, status: HTTPStatus) -> None:
        super().__init__(message)
        self.status = status


def allowed_file(filename: str | None) -> bool:
    if not filename or "." not in filename:
        return False
    return filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


def read_upload(field: str = "file") -> bytes | None:
    """Return the uploaded bytes, or None when nothing was sent.

    Raises UploadRejected for a disallowed extension or an oversize file.
    """
    file_storage = request.files.get(field)
    if file_storage is None or file_storage.filename == "":
        return None
    if not allowed_file(file_storage.filename):
        raise UploadRejected(
            "Only .xlsx and .json files are allowed", HTTPStatus.BAD_REQUEST,
        )
    content_length = request.content_length
    if content_length and content_length > MAX_UPLOAD_BYTES:
        raise UploadRejected("Upload exceeds maximum size limit.", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
    content = file_storage.read()
    if len(content) > MAX_UPLOAD_BYTES:
        raise UploadRejected("Upload exceeds maximum size limit.", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
    return content


def create_admin_blueprint(
    connect: Callable[[], psycopg.Connection],
    *,
    require_admin: Callable[[Callable], Callable],
    current_user_id: Callable[[], int | None] | None = None,
    runner: CommandRunner | None = None,
    setup_command: list[str] | None = None,
    setup_env: dict[str, str] | None = None,
    mapping: ColumnMapping | None = None,
    url_prefix: str = "/api/admin",
) -> Blueprint:
    bp = Blueprint("study_room_admin", __name__, url_prefix=url_prefix)

    def _respond(result) -> Any:
        status, body = result.to_response()
        return jsonify(body), status

    @bp.errorhandler(UploadRejected)
    def _upload_rejected(exc: UploadRejected):
        return jsonify({"error": str(exc)}), exc.status

    @bp.get("/backup")
    @require_admin
    def backup():
        request_id = new_request_id("admin-backup")
        conn = connect()
        try:
            snapshot = run_backup(conn, request_id)
        except psycopg.Error as exc:
            click.echo(f"[{request_id}] Backup error: {exc}", err=True)
            return jsonify({"error": f"Backup failed: {exc}"}), HTTPStatus.INTERNAL_SERVER_ERROR
        finally:
            conn.close()
        return send_file(
            io.BytesIO(dump_backup(snapshot).encode("utf-8")),
            mimetype="application/json",
            as_attachment=True,
            download_name=BACKUP_FILENAME,
        )

    @bp.post("/restore")
    @require_admin
    def restore():
        content = read_upload()
        conn = connect()
        try:
            result = run_restore(conn, content, new_request_id("admin-restore"))
        finally:
            conn.close()
        return _respond(result)

    @bp.post("/import-excel")
    @require_admin
    def import_excel():
        content = read_upload()
        modified_by = current_user_id() if current_user_id else None
        conn = connect()
        try:
            result = run_import(
                conn,
                content,
                modified_by=modified_by,
                mapping=mapping,
                request_id=new_request_id("admin-import"),
            )
        finally:
            conn.close()
        return _respond(result)

    @bp.get("/export-excel")
    @require_admin
    def export_excel():
        request_id = new_request_id("admin-export")
        conn = connect()
        try:
            data = run_export(conn, request_id)
        except psycopg.Error as exc:
            click.echo(f"[{request_id}] Export error: {exc}", err=True)
            return jsonify({"error": f"Export failed: {exc}"}), HTTPStatus.INTERNAL_SERVER_ERROR
        finally:
            conn.close()
        return send_file(
            io.BytesIO(data),
            mimetype=XLSX_MIMETYPE,
            as_attachment=True,
            download_name=EXPORT_FILENAME,
        )

    @bp.get("/full-report")
    @require_admin
    def full_report():
        request_id = new_request_id("admin-report")
        conn = connect()
        try:
            data = build_full_report(conn, request_id)
        except psycopg.Error as exc:
            click.echo(f"[{request_id}] Full report error: {exc}", err=True)
            return jsonify({"error": "Failed to generate report"}), HTTPStatus.INTERNAL_SERVER_ERROR
        finally:
            conn.close()
        return send_file(
            io.BytesIO(data),
            mimetype=XLSX_MIMETYPE,
            as_attachment=True,
            download_name=full_report_filename(),
        )

    @bp.post("/clean-database")
    @require_admin
    def clean_database():
        conn = connect()
        try:
            result = run_clean_database(
                conn,
                runner=runner,
                command=setup_command,
                env=setup_env,
                request_id=new_request_id("clean-db"),
            )
        finally:
            conn.close()
        return _respond(result)

    return bp
