"""Unit tests for the Flask admin blueprint (operations monkeypatched)."""

from __future__ import annotations

import io
from unittest.mock import MagicMock

import pytest
from flask import Flask

from study_room_etl import web
from study_room_etl.backup import RestoreResult
from study_room_etl.import_excel import ImportResult
from study_room_etl.reset import CleanResult, CommandResult
from study_room_etl.shared import RunCounters


@pytest.fixture
def conns():
    return []


@pytest.fixture
def client(conns):
    def connect():
        conn = MagicMock()
        conns.append(conn)
        return conn

    app = Flask(__name__)
    app.register_blueprint(
        web.create_admin_blueprint(
            connect,
            require_admin=lambda f: f,
            current_user_id=lambda: 11,
        )
    )
    return app.test_client()


def _upload(name: str, data: bytes = b"payload"):
    return {"file": (io.BytesIO(data), name)}


class TestAllowedFile:
    def test_extensions(self):
        assert web.allowed_file("members.xlsx")
        assert web.allowed_file("backup.JSON")
        assert not web.allowed_file("members.csv")
        assert not web.allowed_file("noext")
        assert not web.allowed_file(None)


class TestImportExcel:
    def test_passes_upload_and_user(self, client, conns, monkeypatch):
        seen = {}

        def fake_run_import(conn, content, **kwargs):
            seen["content"] = content
            seen["modified_by"] = kwargs["modified_by"]
            counters = RunCounters()
            counters.members.imported = 1
            return ImportResult(kwargs["request_id"], True, counters)

        monkeypatch.setattr(web, "run_import", fake_run_import)
        resp = client.post(
            "/api/admin/import-excel",
            data=_upload("members.xlsx", b"xlsx-bytes"),
            content_type="multipart/form-data",
        )
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["success"] is True
        assert body["requestId"].startswith("admin-import-")
        assert seen == {"content": b"xlsx-bytes", "modified_by": 11}
        conns[0].close.assert_called_once()

    def test_wrong_extension_rejected(self, client, conns):
        resp = client.post(
            "/api/admin/import-excel",
            data=_upload("members.csv"),
            content_type="multipart/form-data",
        )
        assert resp.status_code == 400
        assert "xlsx" in resp.get_json()["error"]
        assert conns == []

    def test_no_file_reported_by_operation(self, client, monkeypatch):
        monkeypatch.setattr(
            web, "run_import",
            lambda conn, content, **kw: ImportResult(
                kw["request_id"], False, error="No file uploaded", validation_error=True,
            ),
        )
        resp = client.post("/api/admin/import-excel", data={}, content_type="multipart/form-data")
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "No file uploaded"

    def test_connection_closed_on_crash(self, client, conns, monkeypatch):
        def boom(conn, content, **kw):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(web, "run_import", boom)
        client.application.testing = False
        resp = client.post(
            "/api/admin/import-excel",
            data=_upload("members.xlsx"),
            content_type="multipart/form-data",
        )
        assert resp.status_code == 500
        conns[0].close.assert_called_once()


class TestRestore:
    def test_success(self, client, monkeypatch):
        monkeypatch.setattr(
            web, "run_restore",
            lambda conn, content, request_id: RestoreResult(request_id, True, {"students": 2}),
        )
        resp = client.post(
            "/api/admin/restore",
            data=_upload("backup.json", b"{}"),
            content_type="multipart/form-data",
        )
        assert resp.status_code == 200
        assert resp.get_json() == {"message": "Restore completed successfully"}

    def test_failure(self, client, monkeypatch):
        monkeypatch.setattr(
            web, "run_restore",
            lambda conn, content, request_id: RestoreResult(request_id, False, {}, error="boom"),
        )
        resp = client.post(
            "/api/admin/restore",
            data=_upload("backup.json", b"{}"),
            content_type="multipart/form-data",
        )
        assert resp.status_code == 500
        assert resp.get_json() == {"error": "Restore failed: boom"}


class TestDownloads:
    def test_backup_attachment(self, client, monkeypatch):
        monkeypatch.setattr(web, "run_backup", lambda conn, request_id: {"seats": [{"seat_number": "A1"}]})
        resp = client.get("/api/admin/backup")
        assert resp.status_code == 200
        assert resp.mimetype == "application/json"
        assert 'filename=study-room-backup.json' in resp.headers["Content-Disposition"]
        assert resp.get_json() == {"seats": [{"seat_number": "A1"}]}

    def test_export_attachment(self, client, monkeypatch):
        monkeypatch.setattr(web, "run_export", lambda conn, request_id: b"PK-fake")
        resp = client.get("/api/admin/export-excel")
        assert resp.status_code == 200
        assert resp.data == b"PK-fake"
        assert "library-data-export.xlsx" in resp.headers["Content-Disposition"]

    def test_full_report_attachment(self, client, monkeypatch):
        monkeypatch.setattr(web, "build_full_report", lambda conn, request_id: b"PK-fake")
        resp = client.get("/api/admin/full-report")
        assert resp.status_code == 200
        assert "full-data-report-" in resp.headers["Content-Disposition"]


class TestCleanDatabase:
    def test_setup_failure_is_500_with_setup_error(self, client, monkeypatch):
        monkeypatch.setattr(
            web, "run_clean_database",
            lambda conn, **kw: CleanResult(
                kw["request_id"], True, ["seats"], setup=CommandResult(2, "", "seed crashed"),
            ),
        )
        resp = client.post("/api/admin/clean-database")
        assert resp.status_code == 500
        assert resp.get_json()["setupError"] == "seed crashed"

    def test_success(self, client, monkeypatch):
        monkeypatch.setattr(
            web, "run_clean_database",
            lambda conn, **kw: CleanResult(
                kw["request_id"], True, ["seats"], setup=CommandResult(0, "ok", ""),
            ),
        )
        resp = client.post("/api/admin/clean-database")
        assert resp.status_code == 200
        assert resp.get_json()["setupOutput"] == "ok"
