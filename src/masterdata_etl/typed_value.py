"""masterdata_etl.typed_value

Tagged storage representation for schema-less staging items.

A TypedValue is one of a closed set of variants (see Tag).  encode() maps
native Python values onto it, decode() maps back:

    None / ""            → NULL
    bool                 → BOOL
    int, float, Decimal  → N      (always decoded as Decimal)
    str                  → S
    dict                 → M
    list, tuple          → L
    set of str           → SS
    set of numbers       → NS
    set of bytes         → BS

to_wire() / from_wire() convert to and from the JSON-compatible tagged form
the store persists ({"S": "x"}, {"N": "1.5"}, {"NULL": true}, ...).  Numbers
are written in canonical decimal text so equal numbers have equal wire forms.
"""

from __future__ import annotations

import base64
import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from masterdata_etl.normalize import canonical_decimal, decimal_in_range


class Tag(str, Enum):
    NULL = "NULL"
    N = "N"
    BOOL = "BOOL"
    S = "S"
    M = "M"
    L = "L"
    SS = "SS"
    NS = "NS"
    BS = "BS"


@dataclass(frozen=True)
class TypedValue:
    """One tagged value.

    Payload per tag: NULL → None, N → Decimal, BOOL → bool, S → str,
    M → dict[str, TypedValue], L → tuple[TypedValue, ...],
    SS/NS/BS → frozenset of str / Decimal / bytes.

    Dataclass equality is the structural equality of the domain: numeric
    for N, deep for M, order-sensitive for L, set equality for sets.
    """

    tag: Tag
    value: Any = None

    @classmethod
    def null(cls) -> "TypedValue":
        return cls(Tag.NULL)

    @classmethod
    def number(cls, value: int | float | Decimal | str) -> "TypedValue":
        return cls(Tag.N, _to_decimal(value))

    @classmethod
    def boolean(cls, value: bool) -> "TypedValue":
        return cls(Tag.BOOL, bool(value))

    @classmethod
    def string(cls, value: str) -> "TypedValue":
        return cls(Tag.S, value)

    @property
    def is_null(self) -> bool:
        return self.tag is Tag.NULL


# ---------------------------------------------------------------------------
# Native ↔ TypedValue
# ---------------------------------------------------------------------------

def encode(value: Any) -> TypedValue:
    """Encode a native value. Raises TypeError for unsupported shapes."""
    if value is None:
        return TypedValue.null()
    if isinstance(value, bool):
        return TypedValue.boolean(value)
    if isinstance(value, (int, float, Decimal)):
        return TypedValue.number(value)
    if isinstance(value, str):
        if value == "":
            return TypedValue.null()
        return TypedValue.string(value)
    if isinstance(value, dict):
        return TypedValue(Tag.M, {str(k): encode(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return TypedValue(Tag.L, tuple(encode(v) for v in value))
    if isinstance(value, (set, frozenset)):
        return _encode_set(value)
    raise TypeError(f"unsupported value type: {type(value).__name__}")


def _encode_set(value: set | frozenset) -> TypedValue:
    if not value:
        return TypedValue.null()
    if all(isinstance(v, str) for v in value):
        return TypedValue(Tag.SS, frozenset(value))
    if all(isinstance(v, (bytes, bytearray)) for v in value):
        return TypedValue(Tag.BS, frozenset(bytes(v) for v in value))
    if all(
        isinstance(v, (int, float, Decimal)) and not isinstance(v, bool)
        for v in value
    ):
        return TypedValue(Tag.NS, frozenset(_to_decimal(v) for v in value))
    raise TypeError("set members must all be str, all numbers, or all bytes")


def _to_decimal(value: int | float | Decimal | str) -> Decimal:
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise TypeError(f"non-finite number is not representable: {value!r}")
        return Decimal(repr(value))
    try:
        result = Decimal(value)
    except InvalidOperation as exc:
        raise TypeError(f"not a number: {value!r}") from exc
    if not result.is_finite():
        raise TypeError(f"non-finite number is not representable: {value!r}")
    if not decimal_in_range(result):
        raise TypeError(f"number exponent out of range: {value!r}")
    return result


def decode(tv: TypedValue) -> Any:
    """Decode a TypedValue back to a native value (numbers as Decimal)."""
    tag = tv.tag
    if tag is Tag.NULL:
        return None
    if tag is Tag.N:
        return tv.value
    if tag is Tag.BOOL:
        return tv.value
    if tag is Tag.S:
        return tv.value
    if tag is Tag.M:
        return {k: decode(v) for k, v in tv.value.items()}
    if tag is Tag.L:
        return [decode(v) for v in tv.value]
    if tag in (Tag.SS, Tag.NS, Tag.BS):
        return set(tv.value)
    raise ValueError(f"unknown tag: {tag!r}")


def encode_item(row: dict[str, Any]) -> dict[str, TypedValue]:
    return {k: encode(v) for k, v in row.items()}


def decode_item(item: dict[str, TypedValue]) -> dict[str, Any]:
    return {k: decode(v) for k, v in item.items()}


def typed_equal(a: TypedValue | None, b: TypedValue | None) -> bool:
    """Structural equality; a missing attribute only equals another missing one."""
    if a is None or b is None:
        return a is None and b is None
    return a == b


# ---------------------------------------------------------------------------
# TypedValue ↔ wire (JSON-compatible tagged dicts)
# ---------------------------------------------------------------------------

def to_wire(tv: TypedValue) -> dict[str, Any]:
    tag = tv.tag
    if tag is Tag.NULL:
        return {"NULL": True}
    if tag is Tag.N:
        return {"N": canonical_decimal(tv.value)}
    if tag is Tag.BOOL:
        return {"BOOL": tv.value}
    if tag is Tag.S:
        return {"S": tv.value}
    if tag is Tag.M:
        return {"M": {k: to_wire(v) for k, v in tv.value.items()}}
    if tag is Tag.L:
        return {"L": [to_wire(v) for v in tv.value]}
    if tag is Tag.SS:
        return {"SS": sorted(tv.value)}
    if tag is Tag.NS:
        return {"NS": sorted(canonical_decimal(v) for v in tv.value)}
    if tag is Tag.BS:
        return {"BS": sorted(base64.b64encode(v).decode("ascii") for v in tv.value)}
    raise ValueError(f"unknown tag: {tag!r}")


def from_wire(wire: dict[str, Any]) -> TypedValue:
    if not isinstance(wire, dict) or len(wire) != 1:
        raise ValueError(f"malformed wire value: {wire!r}")
    (key, payload), = wire.items()
    tag = Tag(key)
    if tag is Tag.NULL:
        return TypedValue.null()
    if tag is Tag.N:
        return TypedValue.number(Decimal(payload))
    if tag is Tag.BOOL:
        return TypedValue.boolean(payload)
    if tag is Tag.S:
        return TypedValue.string(payload)
    if tag is Tag.M:
        return TypedValue(Tag.M, {k: from_wire(v) for k, v in payload.items()})
    if tag is Tag.L:
        return TypedValue(Tag.L, tuple(from_wire(v) for v in payload))
    if tag is Tag.SS:
        return TypedValue(Tag.SS, frozenset(payload))
    if tag is Tag.NS:
        return TypedValue(Tag.NS, frozenset(Decimal(v) for v in payload))
    return TypedValue(Tag.BS, frozenset(base64.b64decode(v) for v in payload))


def item_to_wire(item: dict[str, TypedValue]) -> dict[str, Any]:
    return {k: to_wire(v) for k, v in item.items()}


def item_from_wire(wire: dict[str, Any]) -> dict[str, TypedValue]:
    return {k: from_wire(v) for k, v in wire.items()}
