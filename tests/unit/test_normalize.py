"""Unit tests for study_room_etl.normalize."""

import random
from datetime import date, datetime, timezone
from decimal import Decimal

from study_room_etl.normalize import (
    DEFAULT_CONTACT,
    clean_identity_number,
    clip_upper,
    contact_or_default,
    generate_identity_number,
    normalize_contact,
    normalize_membership_status,
    normalize_payment_mode,
    parse_amount,
    parse_excel_date,
    parse_gender,
    parse_student_id,
    trim,
)


# ---------------------------------------------------------------------------
# trim / clip_upper
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  asha  ") == "asha"

    def test_blank_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None

    def test_integral_float_drops_decimal(self):
        assert trim(12.0) == "12"

    def test_fractional_float_kept(self):
        assert trim(12.5) == "12.5"


class TestClipUpper:
    def test_uppercases(self):
        assert clip_upper("asha devi") == "ASHA DEVI"

    def test_clips_to_limit(self):
        assert clip_upper("a" * 150) == "A" * 100

    def test_none_becomes_empty(self):
        assert clip_upper(None) == ""


# ---------------------------------------------------------------------------
# parse_excel_date
# ---------------------------------------------------------------------------

class TestParseExcelDate:
    def test_serial_number(self):
        assert parse_excel_date(45000) == datetime(2023, 3, 14, 18, 30, tzinfo=timezone.utc)

    def test_iso_date_string(self):
        assert parse_excel_date("2024-01-15") == datetime(2024, 1, 14, 18, 30, tzinfo=timezone.utc)

    def test_iso_string_with_z(self):
        assert parse_excel_date("2024-01-15T06:00:00Z") == datetime(
            2024, 1, 15, 0, 30, tzinfo=timezone.utc
        )

    def test_slash_format(self):
        assert parse_excel_date("01/15/2024") == datetime(2024, 1, 14, 18, 30, tzinfo=timezone.utc)

    def test_naive_datetime_treated_as_utc(self):
        assert parse_excel_date(datetime(2024, 1, 15)) == datetime(
            2024, 1, 14, 18, 30, tzinfo=timezone.utc
        )

    def test_plain_date(self):
        assert parse_excel_date(date(2024, 1, 15)) == datetime(
            2024, 1, 14, 18, 30, tzinfo=timezone.utc
        )

    def test_serial_one_or_less_is_none(self):
        assert parse_excel_date(1) is None
        assert parse_excel_date(0) is None

    def test_garbage_is_none(self):
        assert parse_excel_date("not a date") is None

    def test_none(self):
        assert parse_excel_date(None) is None

    def test_bool_is_none(self):
        assert parse_excel_date(True) is None

    def test_year_one_string_is_none(self):
        assert parse_excel_date("0001-01-01") is None

    def test_year_one_datetime_is_none(self):
        assert parse_excel_date(datetime(1, 1, 1, 3, 0)) is None
        assert parse_excel_date(date(1, 1, 1)) is None

    def test_year_one_with_positive_offset_is_none(self):
        assert parse_excel_date("0001-01-01T02:00:00+05:30") is None

    def test_huge_serial_is_none(self):
        assert parse_excel_date(10 ** 12) is None


# ---------------------------------------------------------------------------
# parse_gender
# ---------------------------------------------------------------------------

class TestParseGender:
    def test_male_variants(self):
        for raw in ("M", "male", "Male", " m "):
            assert parse_gender(raw) == "male"

    def test_female_variants(self):
        for raw in ("F", "female", "Female"):
            assert parse_gender(raw) == "female"

    def test_unknown_is_none(self):
        assert parse_gender("X") is None

    def test_blank_is_none(self):
        assert parse_gender("") is None
        assert parse_gender(None) is None


# ---------------------------------------------------------------------------
# Contacts and identity numbers
# ---------------------------------------------------------------------------

class TestContact:
    def test_formatted_number(self):
        assert normalize_contact("98765-43210") == "9876543210"

    def test_numeric_cell(self):
        assert normalize_contact(9876543210) == "9876543210"

    def test_wrong_length_is_none(self):
        assert normalize_contact("12345") is None
        assert normalize_contact("+91 98765 43210") is None

    def test_default_applied(self):
        assert contact_or_default("bad") == DEFAULT_CONTACT
        assert contact_or_default(None) == DEFAULT_CONTACT

    def test_default_not_applied_when_valid(self):
        assert contact_or_default("9876543210") == "9876543210"


class TestIdentityNumber:
    def test_clean_accepts_spaced_digits(self):
        assert clean_identity_number("1234 5678 9012") == "123456789012"

    def test_clean_rejects_short(self):
        assert clean_identity_number("12345678901") is None

    def test_generate_is_twelve_digits(self):
        value = generate_identity_number(now_ms=1700000012345, rng=random.Random(1))
        assert len(value) == 12
        assert value.isdigit()
        assert value.startswith("00012345")

    def test_generate_pads_random_part(self):
        class Zero:
            def randint(self, a, b):
                return 7

        assert generate_identity_number(now_ms=1700000012345, rng=Zero()) == "000123450007"


# ---------------------------------------------------------------------------
# Numbers and enumerations
# ---------------------------------------------------------------------------

class TestParseStudentId:
    def test_int(self):
        assert parse_student_id(7) == 7

    def test_integral_float(self):
        assert parse_student_id(7.0) == 7

    def test_numeric_string(self):
        assert parse_student_id(" 42 ") == 42

    def test_fractional_is_none(self):
        assert parse_student_id(7.5) is None
        assert parse_student_id("7.5") is None

    def test_text_is_none(self):
        assert parse_student_id("abc") is None
        assert parse_student_id("inf") is None

    def test_blank_is_none(self):
        assert parse_student_id("") is None
        assert parse_student_id(None) is None


class TestParseAmount:
    def test_number(self):
        assert parse_amount(600) == Decimal("600")

    def test_currency_string(self):
        assert parse_amount("₹1,200.50") == Decimal("1200.50")

    def test_negative_kept(self):
        assert parse_amount("-50") == Decimal("-50")

    def test_garbage_is_none(self):
        assert parse_amount("n/a") is None

    def test_nan_is_none(self):
        assert parse_amount(float("nan")) is None


class TestEnumerations:
    def test_payment_mode_default(self):
        assert normalize_payment_mode(None) == "cash"
        assert normalize_payment_mode("cheque") == "cash"

    def test_payment_mode_online(self):
        assert normalize_payment_mode(" Online ") == "online"

    def test_membership_status(self):
        assert normalize_membership_status("Active") == "active"
        assert normalize_membership_status("Expired") == "expired"
        assert normalize_membership_status("paused") is None
