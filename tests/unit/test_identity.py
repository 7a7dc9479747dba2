"""Unit tests for study_room_etl.identity (fake probes, no DB)."""

from unittest.mock import MagicMock

import psycopg
import pytest

from study_room_etl.identity import (
    MAX_IDENTITY_ATTEMPTS,
    IdentityProbeError,
    db_probe,
    is_available,
    resolve_identity,
)


def _counter_generator(start=100000000000):
    state = {"n": start}

    def generate():
        state["n"] += 1
        return str(state["n"])

    return generate


class TestIsAvailable:
    def test_unheld(self):
        assert is_available(None, 7)

    def test_same_student(self):
        assert is_available(7, 7)

    def test_held_by_other(self):
        assert not is_available(8, 7)


class TestResolveIdentity:
    def test_free_candidate_kept(self):
        res = resolve_identity("123456789012", 7, probe=lambda v: None)
        assert res.value == "123456789012"
        assert not res.generated
        assert res.attempts == 0
        assert not res.exhausted

    def test_same_student_preserved(self):
        res = resolve_identity("123456789012", 7, probe=lambda v: 7)
        assert res.value == "123456789012"
        assert not res.generated

    def test_collision_regenerates(self):
        held = {"123456789012": 8}
        res = resolve_identity(
            "123456789012", 7, probe=held.get, generate=_counter_generator(),
        )
        assert res.value == "100000000001"
        assert res.generated
        assert res.attempts == 1

    def test_missing_candidate_generated(self):
        res = resolve_identity(None, 7, probe=lambda v: None, generate=lambda: "555555555555")
        assert res.value == "555555555555"
        assert res.generated
        assert res.attempts == 0

    def test_exhaustion_after_max_attempts(self):
        calls = []

        def probe(value):
            calls.append(value)
            return 99

        res = resolve_identity(
            "123456789012", 7, probe=probe, generate=_counter_generator(),
        )
        assert res.exhausted
        assert res.attempts == MAX_IDENTITY_ATTEMPTS
        assert len(calls) == MAX_IDENTITY_ATTEMPTS
        # last generated value is kept as the best-effort answer
        assert res.value == "100000000005"

    def test_probe_failure_keeps_candidate(self):
        def probe(value):
            raise IdentityProbeError("boom")

        res = resolve_identity("123456789012", 7, probe=probe)
        assert res.value == "123456789012"
        assert res.probe_failed
        assert not res.exhausted


class TestDbProbe:
    def test_returns_holder_id(self):
        conn = MagicMock()
        conn.execute.return_value.fetchone.return_value = (42,)
        assert db_probe(conn)("123456789012") == 42
        statements = [c.args[0] for c in conn.execute.call_args_list]
        assert statements[0] == "SAVEPOINT identity_probe"
        assert statements[-1] == "RELEASE SAVEPOINT identity_probe"

    def test_returns_none_when_unheld(self):
        conn = MagicMock()
        conn.execute.return_value.fetchone.return_value = None
        assert db_probe(conn)("123456789012") is None

    def test_db_error_rolls_back_to_savepoint(self):
        conn = MagicMock()

        def execute(sql, params=None):
            if sql.lstrip().startswith("SELECT"):
                raise psycopg.OperationalError("gone")
            return MagicMock()

        conn.execute.side_effect = execute
        with pytest.raises(IdentityProbeError):
            db_probe(conn)("123456789012")
        statements = [c.args[0] for c in conn.execute.call_args_list]
        assert statements[-1] == "ROLLBACK TO SAVEPOINT identity_probe"
