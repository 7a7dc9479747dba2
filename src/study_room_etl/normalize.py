"""Normalization functions for spreadsheet and backup ingestion.

All functions accept raw cell / JSON values (str, numbers, dates or None)
and return the canonical domain value or None.
"""

from __future__ import annotations

import random
import re
import time
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

# Spreadsheet serial day 0; includes the historical 1900 leap-year bug.
EXCEL_EPOCH = datetime(1899, 12, 30, tzinfo=timezone.utc)

# Source spreadsheets were authored in IST and carry that bias.
TZ_CORRECTION = timedelta(hours=5, minutes=30)

DEFAULT_CONTACT = "1234567890"

VALID_SEXES = ("male", "female")
VALID_MEMBERSHIP_STATUSES = ("active", "expired", "suspended")
VALID_PAYMENT_MODES = ("cash", "online")

_FALLBACK_DATE_FORMATS = ("%m/%d/%Y", "%b %d, %Y", "%d %b %Y")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Stringify and strip; treat None and empty string as None.

    Integral floats (spreadsheet cells like 12.0) are rendered without
    the trailing '.0'.
    """
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    v = str(value).strip()
    return v if v else None


def clip_upper(value: Any, limit: int = 100) -> str:
    """Upper-case and clip to *limit* characters; None becomes ''."""
    v = trim(value)
    if v is None:
        return ""
    return v[:limit].upper()


# ---------------------------------------------------------------------------
# Rule 2: parse_excel_date
# ---------------------------------------------------------------------------

def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_date_string(value: str) -> datetime | None:
    v = value.strip()
    if not v:
        return None
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(v))
    except ValueError:
        pass
    for fmt in _FALLBACK_DATE_FORMATS:
        try:
            return _as_utc(datetime.strptime(v, fmt))
        except ValueError:
            continue
    return None


def parse_excel_date(value: Any) -> datetime | None:
    """Convert a native date, ISO-like string or spreadsheet serial to UTC.

    Every branch subtracts the fixed 5.5 hour correction.  Serial numbers
    must be greater than 1; anything unparseable returns None.

    >>> parse_excel_date("2024-01-15").isoformat()
    '2024-01-14T18:30:00+00:00'
    """
    if value is None or isinstance(value, bool):
        return None
    # dates near datetime.min overflow in the UTC shift or the correction
    try:
        if isinstance(value, datetime):
            parsed = _as_utc(value)
        elif isinstance(value, date):
            parsed = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        elif isinstance(value, str):
            parsed = _parse_date_string(value)
        elif isinstance(value, (int, float, Decimal)) and value > 1:
            parsed = EXCEL_EPOCH + timedelta(days=float(value))
        else:
            return None
        return parsed - TZ_CORRECTION if parsed is not None else None
    except OverflowError:
        return None


# ---------------------------------------------------------------------------
# Rule 3: parse_gender
# ---------------------------------------------------------------------------

def parse_gender(value: Any) -> str | None:
    """'M', 'male', 'Male' -> 'male'; 'f*' -> 'female'; anything else -> None."""
    v = trim(value)
    if v is None:
        return None
    v = v.lower()
    if v.startswith("m"):
        return "male"
    if v.startswith("f"):
        return "female"
    return None


# ---------------------------------------------------------------------------
# Rule 4: contact numbers
# ---------------------------------------------------------------------------

def normalize_contact(value: Any) -> str | None:
    """Keep digits only; return them when exactly 10 long, else None."""
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    return digits if len(digits) == 10 else None


def contact_or_default(value: Any) -> str:
    """Contact for mandatory writes: normalized value or DEFAULT_CONTACT."""
    return normalize_contact(value) or DEFAULT_CONTACT


# ---------------------------------------------------------------------------
# Rule 5: identity (Aadhaar) numbers
# ---------------------------------------------------------------------------

def clean_identity_number(value: Any) -> str | None:
    """Return the digits of *value* when they form exactly 12 digits."""
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    return digits if len(digits) == 12 else None


def generate_identity_number(
    now_ms: int | None = None,
    rng: random.Random | None = None,
) -> str:
    """Last 8 digits of the millisecond clock + 4 random digits.

    Best-effort unique only; collisions are handled by the identity
    resolver and, finally, by the database unique constraint.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    rand = (rng or random).randint(0, 9999)
    candidate = str(now_ms)[-8:] + f"{rand:04d}"
    return candidate[:12]


# ---------------------------------------------------------------------------
# Rule 6: numbers and enumerations
# ---------------------------------------------------------------------------

def parse_student_id(value: Any) -> int | None:
    """Parse a student id from a cell; non-integral values return None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    v = trim(value)
    if v is None:
        return None
    try:
        num = Decimal(v)
    except InvalidOperation:
        return None
    if not num.is_finite() or num != num.to_integral_value():
        return None
    return int(num)


def parse_amount(value: Any) -> Decimal | None:
    """Parse a monetary amount; strips currency symbols and thousands commas."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        num = Decimal(str(value))
    else:
        v = trim(value)
        if v is None:
            return None
        v = re.sub(r"[^\d.\-]", "", v)
        try:
            num = Decimal(v)
        except InvalidOperation:
            return None
    return None if num.is_nan() or num.is_infinite() else num


def normalize_payment_mode(value: Any) -> str:
    """Lower-cased mode when it is 'cash' or 'online'; otherwise 'cash'."""
    v = trim(value)
    mode = v.lower() if v else "cash"
    return mode if mode in VALID_PAYMENT_MODES else "cash"


def normalize_membership_status(value: Any) -> str | None:
    v = trim(value)
    if v is None:
        return None
    v = v.lower()
    return v if v in VALID_MEMBERSHIP_STATUSES else None
