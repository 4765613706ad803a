"""Unit tests for masterdata_etl.normalize."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from masterdata_etl.normalize import (
    canonical_decimal,
    dedupe_column_names,
    format_instant,
    normalize_column_name,
    parse_bool,
    parse_numeric,
    parse_temporal,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


# ---------------------------------------------------------------------------
# column names
# ---------------------------------------------------------------------------

class TestNormalizeColumnName:
    def test_space_replaced(self):
        assert normalize_column_name("Full Name") == "Full_Name"

    def test_punctuation_replaced(self):
        assert normalize_column_name("Special!Header") == "Special_Header"

    def test_bom_stripped(self):
        assert normalize_column_name("\ufeffName") == "Name"

    def test_legal_name_unchanged(self):
        assert normalize_column_name("customer_id2") == "customer_id2"

    def test_none(self):
        assert normalize_column_name(None) == ""


class TestDedupeColumnNames:
    def test_duplicates_suffixed_in_order(self):
        assert dedupe_column_names(["Name", "Name", "Name"]) == ["Name", "Name_1", "Name_2"]

    def test_collision_after_normalization(self):
        assert dedupe_column_names(["a b", "a_b"]) == ["a_b", "a_b_1"]

    def test_empty_header_gets_position_name(self):
        assert dedupe_column_names(["id", "", "x"]) == ["id", "column_2", "x"]

    def test_suffix_skips_taken_names(self):
        assert dedupe_column_names(["a", "a_1", "a"]) == ["a", "a_1", "a_2"]


# ---------------------------------------------------------------------------
# parse_bool
# ---------------------------------------------------------------------------

class TestParseBool:
    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("TRUE", True), ("False", False), (" false ", False),
    ])
    def test_accepted(self, raw, expected):
        assert parse_bool(raw) is expected

    @pytest.mark.parametrize("raw", ["yes", "1", "t", "", None])
    def test_rejected(self, raw):
        assert parse_bool(raw) is None


# ---------------------------------------------------------------------------
# parse_numeric / canonical_decimal
# ---------------------------------------------------------------------------

class TestParseNumeric:
    def test_integer(self):
        assert parse_numeric("42") == Decimal("42")

    def test_decimal(self):
        assert parse_numeric("-3.25") == Decimal("-3.25")

    def test_exponent(self):
        assert parse_numeric("1.5e3") == Decimal("1500")

    def test_leading_dot(self):
        assert parse_numeric(".5") == Decimal("0.5")

    @pytest.mark.parametrize("raw", ["abc", "1,000", "12abc", "NaN", "Infinity", "", None])
    def test_not_numeric(self, raw):
        assert parse_numeric(raw) is None

    @pytest.mark.parametrize("raw", ["1e999999999", "-2E+1001", "1e-1001"])
    def test_exponent_out_of_range(self, raw):
        assert parse_numeric(raw) is None

    def test_exponent_at_limit(self):
        assert parse_numeric("1e1000") == Decimal("1E+1000")

    def test_zero_with_tiny_exponent(self):
        assert parse_numeric("0e-5000") == 0


class TestCanonicalDecimal:
    def test_trailing_zeros_removed(self):
        assert canonical_decimal(Decimal("1.50")) == "1.5"

    def test_exponent_expanded(self):
        assert canonical_decimal(Decimal("-3.5e2")) == "-350"

    def test_negative_zero(self):
        assert canonical_decimal(Decimal("-0.00")) == "0"

    def test_equal_numbers_same_text(self):
        assert canonical_decimal(Decimal("100")) == canonical_decimal(Decimal("1E+2"))


# ---------------------------------------------------------------------------
# temporal values
# ---------------------------------------------------------------------------

class TestParseTemporal:
    def test_offset_converted_to_utc(self):
        assert parse_temporal("2025-01-01T12:00:00+08:00") == "2025-01-01T04:00:00Z"

    def test_zulu_instant(self):
        assert parse_temporal("2025-03-04T05:06:07Z") == "2025-03-04T05:06:07Z"

    def test_fraction_kept(self):
        assert parse_temporal("2025-03-04T05:06:07.250Z") == "2025-03-04T05:06:07.25Z"

    def test_local_datetime_passes_through(self):
        assert parse_temporal("2025-01-01T12:00:00") == "2025-01-01T12:00:00"

    def test_local_date_passes_through(self):
        assert parse_temporal("2025-01-01") == "2025-01-01"

    @pytest.mark.parametrize("raw", ["2025-13-01", "2025-02-30", "01/02/2025", "hello", ""])
    def test_not_temporal(self, raw):
        assert parse_temporal(raw) is None


class TestFormatInstant:
    def test_offset_datetime(self):
        dt = datetime(2025, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=8)))
        assert format_instant(dt) == "2025-01-01T04:00:00Z"
