"""Unit tests for masterdata_etl.typed_value."""

from __future__ import annotations

from decimal import Decimal

import pytest

from masterdata_etl.typed_value import (
    Tag,
    TypedValue,
    decode,
    decode_item,
    encode,
    encode_item,
    from_wire,
    item_from_wire,
    item_to_wire,
    to_wire,
    typed_equal,
)


# ---------------------------------------------------------------------------
# encode
# ---------------------------------------------------------------------------

class TestEncode:
    def test_none_is_null(self):
        assert encode(None).tag is Tag.NULL

    def test_empty_string_is_null(self):
        assert encode("").is_null

    def test_bool_before_number(self):
        assert encode(True) == TypedValue(Tag.BOOL, True)

    def test_int_is_decimal_number(self):
        tv = encode(7)
        assert tv.tag is Tag.N
        assert isinstance(tv.value, Decimal)

    def test_float_via_shortest_text(self):
        assert encode(0.1).value == Decimal("0.1")

    def test_nested_map_and_list(self):
        tv = encode({"a": [1, "x"], "b": {"c": None}})
        assert tv.tag is Tag.M
        assert tv.value["a"].tag is Tag.L
        assert tv.value["b"].value["c"].is_null

    def test_string_set(self):
        assert encode({"a", "b"}).tag is Tag.SS

    def test_number_set(self):
        assert encode({1, 2}).tag is Tag.NS

    def test_binary_set(self):
        assert encode({b"\x00", b"\x01"}).tag is Tag.BS

    def test_empty_set_is_null(self):
        assert encode(set()).is_null

    def test_mixed_set_rejected(self):
        with pytest.raises(TypeError):
            encode({"a", 1})

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), Decimal("NaN")])
    def test_non_finite_rejected(self, bad):
        with pytest.raises(TypeError):
            encode(bad)

    def test_unsupported_object_rejected(self):
        with pytest.raises(TypeError):
            encode(object())

    @pytest.mark.parametrize("huge", [Decimal("1E+1001"), 10 ** 1001, "1e-1001"])
    def test_exponent_out_of_range_rejected(self, huge):
        with pytest.raises(TypeError):
            TypedValue.number(huge)


# ---------------------------------------------------------------------------
# round trip
# ---------------------------------------------------------------------------

class TestRoundTrip:
    @pytest.mark.parametrize("value", [
        None,
        True,
        False,
        Decimal("0"),
        Decimal("-12.5"),
        Decimal("12345678901234567890.123456789"),
        "hello",
        {"k": "v", "n": Decimal("1")},
        ["a", Decimal("2"), [True, None]],
        {"a", "b"},
        {Decimal("1"), Decimal("2.5")},
        {b"\x00\xff"},
        {"outer": {"inner": ["x", {"deep": False}]}},
    ])
    def test_decode_encode(self, value):
        assert decode(encode(value)) == value

    def test_ints_decode_numerically_equal(self):
        assert decode(encode(42)) == 42

    def test_through_wire_form(self):
        tv = encode({"n": Decimal("1.50"), "s": {"x", "y"}, "b": {b"ab"}, "l": [None]})
        assert from_wire(to_wire(tv)) == tv


# ---------------------------------------------------------------------------
# wire form
# ---------------------------------------------------------------------------

class TestWire:
    def test_number_canonical_text(self):
        assert to_wire(TypedValue.number(Decimal("1.500"))) == {"N": "1.5"}

    def test_equal_numbers_equal_wire(self):
        assert to_wire(encode(Decimal("1E+2"))) == to_wire(encode(100))

    def test_null(self):
        assert to_wire(TypedValue.null()) == {"NULL": True}

    def test_sets_sorted(self):
        assert to_wire(encode({"b", "a"})) == {"SS": ["a", "b"]}

    def test_binary_set_base64(self):
        assert to_wire(encode({b"hi"})) == {"BS": ["aGk="]}

    def test_malformed_rejected(self):
        with pytest.raises(ValueError):
            from_wire({"S": "a", "N": "1"})

    def test_item_round_trip(self):
        item = encode_item({"id": "r1", "qty": 3, "ok": True})
        assert item_from_wire(item_to_wire(item)) == item
        assert decode_item(item) == {"id": "r1", "qty": Decimal("3"), "ok": True}


# ---------------------------------------------------------------------------
# typed_equal
# ---------------------------------------------------------------------------

class TestTypedEqual:
    def test_numeric_not_textual(self):
        assert typed_equal(encode(Decimal("1.0")), encode(1))

    def test_list_order_sensitive(self):
        assert not typed_equal(encode([1, 2]), encode([2, 1]))

    def test_set_order_insensitive(self):
        assert typed_equal(encode({"a", "b"}), encode({"b", "a"}))

    def test_deep_map(self):
        assert typed_equal(encode({"a": {"b": [1]}}), encode({"a": {"b": [Decimal(1)]}}))

    def test_missing_only_equals_missing(self):
        assert typed_equal(None, None)
        assert not typed_equal(None, TypedValue.null())

    def test_string_vs_number(self):
        assert not typed_equal(encode("1"), encode(1))
