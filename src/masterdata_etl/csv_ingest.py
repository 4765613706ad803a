"""masterdata_etl.csv_ingest

CSV → row objects for staging.

Header handling:
  - leading BOM stripped
  - each token normalized (characters outside [A-Za-z0-9_] → '_')
  - duplicates suffixed _1, _2, ... in first-seen order

Per-field type inference, first match wins:
  1. 'true' / 'false' (any case)          → bool
  2. integer / decimal / exponent number  → Decimal
  3. ISO instant / offset datetime        → UTC instant text ('...Z')
     ISO local datetime / local date      → unchanged text
  4. anything else                        → str (trimmed; csv un-escapes quotes)

Rows are produced lazily; blank lines are skipped.  Missing trailing fields
read as '' and surplus fields are dropped.
"""

from __future__ import annotations

import csv
import io
from decimal import Decimal
from pathlib import Path
from typing import IO, Any, Iterator, Union

from masterdata_etl.normalize import (
    dedupe_column_names,
    parse_bool,
    parse_numeric,
    parse_temporal,
)

CsvSource = Union[Path, str, bytes, IO[str], IO[bytes], None]


def infer_value(raw: str | None) -> bool | Decimal | str:
    """Type-infer a single CSV field."""
    if raw is None:
        return ""
    value = raw.strip()
    if value == "":
        return ""
    as_bool = parse_bool(value)
    if as_bool is not None:
        return as_bool
    as_num = parse_numeric(value)
    if as_num is not None:
        return as_num
    as_ts = parse_temporal(value)
    if as_ts is not None:
        return as_ts
    return value


def parse_csv(source: CsvSource) -> Iterator[dict[str, Any]]:
    """Yield one dict per data line of source.

    source may be a Path, raw bytes, CSV text, a text or binary stream, or
    None.  None, empty content and a header-only file all yield nothing.
    """
    if source is None:
        return
    if isinstance(source, Path):
        with source.open(encoding="utf-8-sig", newline="") as fh:
            yield from _parse_stream(fh)
        return
    if isinstance(source, bytes):
        yield from _parse_stream(io.StringIO(source.decode("utf-8-sig"), newline=""))
        return
    if isinstance(source, str):
        yield from _parse_stream(io.StringIO(source, newline=""))
        return
    if isinstance(source, (io.RawIOBase, io.BufferedIOBase)) or "b" in getattr(source, "mode", ""):
        wrapper = io.TextIOWrapper(source, encoding="utf-8-sig", newline="")
        try:
            yield from _parse_stream(wrapper)
        finally:
            wrapper.detach()
        return
    yield from _parse_stream(source)


def _parse_stream(fh: IO[str]) -> Iterator[dict[str, Any]]:
    reader = csv.reader(fh, skipinitialspace=False)
    header: list[str] | None = None
    for fields in reader:
        if header is None:
            if not fields or all(not f.strip() for f in fields):
                continue
            header = dedupe_column_names(fields)
            continue
        if not fields or (len(fields) == 1 and not fields[0].strip()):
            continue
        row: dict[str, Any] = {}
        for idx, name in enumerate(header):
            row[name] = infer_value(fields[idx] if idx < len(fields) else "")
        yield row
