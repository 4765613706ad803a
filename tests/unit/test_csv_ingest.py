"""Unit tests for masterdata_etl.csv_ingest.

No database access required.
"""

from __future__ import annotations

import io
from decimal import Decimal
from pathlib import Path

from masterdata_etl.csv_ingest import infer_value, parse_csv


# ---------------------------------------------------------------------------
# infer_value
# ---------------------------------------------------------------------------

class TestInferValue:
    def test_bool_wins_over_string(self):
        assert infer_value("TRUE") is True

    def test_number(self):
        assert infer_value("42") == Decimal("42")

    def test_exponent_number(self):
        assert infer_value("-1.5E2") == Decimal("-150")

    def test_runaway_exponent_stays_text(self):
        assert infer_value("1e999999999") == "1e999999999"

    def test_offset_datetime_to_utc(self):
        assert infer_value("2025-01-01T12:00:00+08:00") == "2025-01-01T04:00:00Z"

    def test_local_date_unchanged(self):
        assert infer_value("2025-06-30") == "2025-06-30"

    def test_plain_string_trimmed(self):
        assert infer_value("  Alice ") == "Alice"

    def test_empty(self):
        assert infer_value("") == ""
        assert infer_value(None) == ""


# ---------------------------------------------------------------------------
# parse_csv
# ---------------------------------------------------------------------------

class TestParseCsv:
    def test_type_inference_row(self):
        rows = list(parse_csv('Name,Col2,Col3,Col4\n"Alice",42,true,2025-01-01T12:00:00+08:00\n'))
        assert rows == [{
            "Name": "Alice",
            "Col2": Decimal("42"),
            "Col3": True,
            "Col4": "2025-01-01T04:00:00Z",
        }]
        assert isinstance(rows[0]["Name"], str)

    def test_bom_and_header_normalization(self):
        rows = list(parse_csv("\ufeffFull Name,Full Name,e-mail\nA,B,c@x.com\n"))
        assert list(rows[0]) == ["Full_Name", "Full_Name_1", "e_mail"]

    def test_quoted_commas_and_escaped_quotes(self):
        rows = list(parse_csv('a,b\n"x, y","say ""hi"""\n'))
        assert rows == [{"a": "x, y", "b": 'say "hi"'}]

    def test_blank_lines_skipped(self):
        rows = list(parse_csv("a,b\n1,2\n\n   \n3,4\n"))
        assert [r["a"] for r in rows] == [Decimal("1"), Decimal("3")]

    def test_short_row_padded_long_row_truncated(self):
        rows = list(parse_csv("a,b,c\n1\n1,2,3,4\n"))
        assert rows[0] == {"a": Decimal("1"), "b": "", "c": ""}
        assert rows[1] == {"a": Decimal("1"), "b": Decimal("2"), "c": Decimal("3")}

    def test_none_yields_nothing(self):
        assert list(parse_csv(None)) == []

    def test_empty_content_yields_nothing(self):
        assert list(parse_csv("")) == []
        assert list(parse_csv(b"")) == []

    def test_header_only_yields_nothing(self):
        assert list(parse_csv("a,b\n")) == []

    def test_bytes_with_bom(self):
        rows = list(parse_csv("\ufeffid,v\nr1,x\n".encode("utf-8")))
        assert rows == [{"id": "r1", "v": "x"}]

    def test_binary_stream(self):
        rows = list(parse_csv(io.BytesIO(b"a\n1\n")))
        assert rows == [{"a": Decimal("1")}]

    def test_text_stream(self):
        rows = list(parse_csv(io.StringIO("a\nhello\n")))
        assert rows == [{"a": "hello"}]

    def test_path(self, tmp_path: Path):
        p = tmp_path / "upload.csv"
        p.write_text("\ufeffa,b\n1,two\n", encoding="utf-8")
        assert list(parse_csv(p)) == [{"a": Decimal("1"), "b": "two"}]

    def test_lazy_generator(self):
        gen = parse_csv("a\n1\n2\n")
        assert next(gen) == {"a": Decimal("1")}
        assert next(gen) == {"a": Decimal("2")}
