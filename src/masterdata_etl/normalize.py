"""Normalization functions for staging ingestion.

All value functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

_BOM = "\ufeff"
_ILLEGAL_COLUMN_CHARS = re.compile(r"[^A-Za-z0-9_]")
_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_TEMPORAL_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}"
    r"(T\d{2}:\d{2}(:\d{2}(\.\d{1,9})?)?(Z|z|[+-]\d{2}:\d{2})?)?$"
)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: column names
# ---------------------------------------------------------------------------

def normalize_column_name(value: str | None) -> str:
    """Strip a BOM and outer whitespace, then replace illegal characters with '_'.

    'Full Name' → 'Full_Name', 'Special!Header' → 'Special_Header'.
    Returns '' when nothing is left.
    """
    if value is None:
        return ""
    v = value.replace(_BOM, "").strip()
    return _ILLEGAL_COLUMN_CHARS.sub("_", v)


def dedupe_column_names(names: list[str]) -> list[str]:
    """Normalize a header row and suffix duplicates with _1, _2, ...

    First-seen order is preserved; the first occurrence keeps its name.
    Names that normalize to '' become column_<position> (1-based).
    """
    seen: set[str] = set()
    result: list[str] = []
    for idx, raw in enumerate(names):
        base = normalize_column_name(raw) or f"column_{idx + 1}"
        name = base
        n = 0
        while name in seen:
            n += 1
            name = f"{base}_{n}"
        seen.add(name)
        result.append(name)
    return result


# ---------------------------------------------------------------------------
# Rule 3: booleans
# ---------------------------------------------------------------------------

def parse_bool(value: str | None) -> bool | None:
    """Exact 'true'/'false' (case-insensitive) → bool, anything else → None."""
    v = trim(value)
    if v is None:
        return None
    lowered = v.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return None


# ---------------------------------------------------------------------------
# Rule 4: parse_numeric
# ---------------------------------------------------------------------------

# Plain-text rendering of a decimal is as long as its exponent; keep it bounded.
MAX_DECIMAL_EXPONENT = 1000


def decimal_in_range(value: Decimal) -> bool:
    if not value.is_finite():
        return False
    return value.is_zero() or abs(value.adjusted()) <= MAX_DECIMAL_EXPONENT


def parse_numeric(value: str | None) -> Decimal | None:
    """Parse an integer, decimal or exponent-form number, returning None on failure.

    Numbers whose exponent lies outside +/-MAX_DECIMAL_EXPONENT are not
    treated as numbers.
    """
    v = trim(value)
    if v is None or not _NUMERIC_RE.match(v):
        return None
    try:
        parsed = Decimal(v)
    except InvalidOperation:
        return None
    return parsed if decimal_in_range(parsed) else None


def canonical_decimal(value: Decimal) -> str:
    """Plain (non-exponent) text of a decimal with trailing zeros removed.

    Decimal('-3.5e2') → '-350', Decimal('1.50') → '1.5', Decimal('-0') → '0'.
    """
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


# ---------------------------------------------------------------------------
# Rule 5: temporal values
# ---------------------------------------------------------------------------

def format_instant(value: datetime) -> str:
    """Render an aware datetime as a UTC instant: 2025-01-01T04:00:00Z."""
    utc = value.astimezone(timezone.utc)
    text = utc.strftime("%Y-%m-%dT%H:%M:%S")
    if utc.microsecond:
        text += f".{utc.microsecond:06d}".rstrip("0")
    return text + "Z"


def parse_temporal(value: str | None) -> str | None:
    """Return the canonical text of an ISO date/datetime, or None if not temporal.

    Values carrying a zone ('Z' or an offset) are converted to a UTC instant.
    Local datetimes and plain dates pass through unchanged.
    """
    v = trim(value)
    if v is None or not _TEMPORAL_RE.match(v):
        return None
    if "T" not in v:
        try:
            date.fromisoformat(v)
        except ValueError:
            return None
        return v
    text = v[:-1] + "+00:00" if v[-1] in "Zz" else v
    try:
        parsed = datetime.fromisoformat(_pad_fraction(text))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return v
    return format_instant(parsed)


def _pad_fraction(text: str) -> str:
    """fromisoformat on older interpreters only accepts 3 or 6 fraction digits."""
    m = re.search(r"\.(\d+)", text)
    if not m:
        return text
    digits = m.group(1)[:6].ljust(6, "0")
    return text[:m.start(1)] + digits + text[m.end(1):]

