"""study_room_etl.identity

Identity (Aadhaar) number resolution for imported students.

A candidate is accepted when no student holds it, or when the holder is
the same student id being imported (an update, not a conflict).  Otherwise
a fresh number is generated and probed again, up to MAX_IDENTITY_ATTEMPTS
regenerations.  When every attempt collides the last generated value is
returned with ``exhausted=True``; whether that is fatal is the caller's
policy.  The students.aadhaar_number unique constraint stays the final
arbiter.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import psycopg

from study_room_etl.normalize import generate_identity_number

MAX_IDENTITY_ATTEMPTS = 5

Probe = Callable[[str], "int | None"]


class IdentityProbeError(Exception):
    """The uniqueness probe itself failed (not a collision)."""


@dataclass
class IdentityResolution:
    value: str
    generated: bool
    attempts: int = 0
    exhausted: bool = False
    probe_failed: bool = False


def is_available(holder_id: int | None, incoming_id: int | None) -> bool:
    """True when nobody holds the number or the holder is the incoming id."""
    return holder_id is None or str(holder_id) == str(incoming_id)


def resolve_identity(
    candidate: str | None,
    incoming_id: int | None,
    probe: Probe,
    generate: Callable[[], str] = generate_identity_number,
    max_attempts: int = MAX_IDENTITY_ATTEMPTS,
) -> IdentityResolution:
    """Resolve a unique identity number using *probe* to find holders.

    *probe* returns the id of the student holding a number, or None.  A
    probe raising IdentityProbeError ends the loop early and the current
    candidate is kept (best effort).
    """
    generated = candidate is None
    value = candidate if candidate is not None else generate()
    attempts = 0
    while attempts < max_attempts:
        try:
            holder = probe(value)
        except IdentityProbeError:
            return IdentityResolution(value, generated, attempts, probe_failed=True)
        if is_available(holder, incoming_id):
            return IdentityResolution(value, generated, attempts)
        value = generate()
        generated = True
        attempts += 1
    return IdentityResolution(value, generated, attempts, exhausted=True)


def db_probe(conn: psycopg.Connection) -> Probe:
    """Build a probe against the students table.

    Each lookup runs under its own savepoint so a failing probe does not
    abort the surrounding import transaction.
    """

    def probe(value: str) -> int | None:
        conn.execute("SAVEPOINT identity_probe")
        try:
            row = conn.execute(
                "SELECT id FROM students WHERE aadhaar_number = %s LIMIT 1",
                (value,),
            ).fetchone()
        except psycopg.Error as exc:
            conn.execute("ROLLBACK TO SAVEPOINT identity_probe")
            raise IdentityProbeError(str(exc)) from exc
        conn.execute("RELEASE SAVEPOINT identity_probe")
        return row[0] if row else None

    return probe


def resolve_identity_number(
    conn: psycopg.Connection,
    candidate: str | None,
    incoming_id: int | None,
    generate: Callable[[], str] = generate_identity_number,
    max_attempts: int = MAX_IDENTITY_ATTEMPTS,
) -> IdentityResolution:
    return resolve_identity(candidate, incoming_id, db_probe(conn), generate, max_attempts)
