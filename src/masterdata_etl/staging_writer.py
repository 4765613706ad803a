"""masterdata_etl.staging_writer

Batch insert of ingested rows into the staging table.

Processing order per row:
  1. normalize column names (same rules as CSV headers); a name that
     differs from a column already in the table only by case takes the
     existing spelling
  2. encode every non-empty field with the TypedValue codec
  3. keep the caller's id or generate a UUID
  4. attach workflow metadata (organization_id, policy_id, domain_name,
     file_id, uploaded_by, uploaded_date, is_processed=0, is_handled=0)
  5. buffer into batches of at most batch_size (25) and flush

A flush retries only the items the store reports as unprocessed, with
exponential backoff and jitter (RetryPolicy).  max_attempts=None keeps
retrying until the store accepts everything.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from masterdata_etl.config import MAX_BATCH_SIZE, RetrySettings
from masterdata_etl.normalize import dedupe_column_names, trim
from masterdata_etl.shared import (
    BatchWriteExhausted,
    IngestValidationError,
    RunCounters,
    make_clock,
)
from masterdata_etl.store import Item, ItemStore
from masterdata_etl.typed_value import TypedValue, decode_item, encode

log = logging.getLogger(__name__)

FLAG_OFF = TypedValue.number(0)
FLAG_ON = TypedValue.number(1)

# Written by the workflow; never remapped onto a row column.
METADATA_NAMES = frozenset({
    "id", "organization_id", "policy_id", "domain_name", "file_id",
    "uploaded_by", "uploaded_date", "is_processed", "is_handled",
})


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Exponential backoff with jitter for partially failed batches.

    The window for attempt n is min(base_delay * 2**n, max_delay); the actual
    delay is drawn uniformly from the upper half of that window.
    """

    base_delay: float = 1.0
    max_delay: float = 8.0
    max_attempts: int | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, settings: RetrySettings, **kwargs: Any) -> "RetryPolicy":
        return cls(
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            max_attempts=settings.max_attempts,
            **kwargs,
        )

    def window(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def delay_for(self, attempt: int) -> float:
        upper = self.window(attempt)
        return self.rng.uniform(upper / 2, upper)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass
class StagingMetadata:
    domain_name: str | None
    organization_id: str | None = None
    policy_id: str | None = None
    file_id: str | None = None
    uploaded_by: str | None = None


@dataclass
class InsertionSummary:
    total_inserted: int
    preview: list[dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

class BatchStagingWriter:
    def __init__(
        self,
        store: ItemStore,
        *,
        batch_size: int = MAX_BATCH_SIZE,
        preview_limit: int = 50,
        retry: RetryPolicy | None = None,
        clock: Callable[[], str] | None = None,
        counters: RunCounters | None = None,
    ) -> None:
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be in [1, {MAX_BATCH_SIZE}]")
        self._store = store
        self._batch_size = batch_size
        self._preview_limit = preview_limit
        self._retry = retry or RetryPolicy()
        self._clock = clock or make_clock()
        self._counters = counters or RunCounters()

    @property
    def counters(self) -> RunCounters:
        return self._counters

    def insert(
        self,
        table: str,
        rows: Iterable[dict[str, Any]],
        meta: StagingMetadata,
    ) -> InsertionSummary:
        """Write rows to table in bounded batches.

        Raises:
            IngestValidationError: If meta.domain_name is blank.
            BatchWriteExhausted: If a bounded retry policy gives up.
        """
        if trim(meta.domain_name) is None:
            raise IngestValidationError("domain_name is mandatory")

        uploaded_date = self._clock()
        known = existing_names_by_lower(self._store.attribute_names(table))
        preview: list[dict[str, Any]] = []
        batch: list[Item] = []
        total = 0

        for row in rows:
            item = build_staging_item(row, meta, uploaded_date, known)
            if len(preview) < self._preview_limit:
                preview.append(decode_item(item))
            batch.append(item)
            if len(batch) == self._batch_size:
                self._flush(table, batch)
                batch = []
            total += 1

        if batch:
            self._flush(table, batch)

        self._counters.rows_inserted += total
        log.info("staged %d rows into %s (file_id=%s)", total, table, meta.file_id)
        return InsertionSummary(total_inserted=total, preview=preview)

    def _flush(self, table: str, batch: list[Item]) -> None:
        unprocessed = self._store.batch_write_items(table, batch)
        self._counters.batches_written += 1
        attempt = 0
        while unprocessed:
            if self._retry.exhausted(attempt):
                raise BatchWriteExhausted(
                    f"{len(unprocessed)} item(s) still unprocessed after {attempt} retries",
                    unprocessed,
                )
            delay = self._retry.delay_for(attempt)
            log.warning(
                "%d of %d item(s) unprocessed in %s; retry %d in %.2fs",
                len(unprocessed), len(batch), table, attempt + 1, delay,
            )
            self._retry.sleep(delay)
            unprocessed = self._store.batch_write_items(table, unprocessed)
            self._counters.batch_retries += 1
            attempt += 1


def existing_names_by_lower(names: Iterable[str]) -> dict[str, str]:
    """Map lower-cased attribute name → spelling to reuse.

    When several spellings exist the first one that is not all lower case
    wins ("Email" over "email"), as in update_diff.
    """
    by_lower: dict[str, str] = {}
    for name in sorted(names):
        lower = name.lower()
        current = by_lower.get(lower)
        if current is None or (current == lower and name != lower):
            by_lower[lower] = name
    return by_lower


def build_staging_item(
    row: dict[str, Any],
    meta: StagingMetadata,
    uploaded_date: str,
    known: dict[str, str] | None = None,
) -> Item:
    """Encode one row and attach workflow metadata.

    Empty and None fields are left out.  Blank metadata values are omitted
    rather than stored empty.  known maps lower-cased column names to the
    spelling already in use; new names are added to it.
    """
    if known is None:
        known = {}
    keys = list(row.keys())
    names = dedupe_column_names([str(k) for k in keys])
    own = set(names)
    item: Item = {}
    row_id: str | None = None
    for key, name in zip(keys, names):
        value = row[key]
        if name == "id":
            row_id = trim(str(value)) if value is not None else None
            continue
        tv = encode(value)
        if tv.is_null:
            continue
        lower = name.lower()
        spelled = name if lower in METADATA_NAMES else known.setdefault(lower, name)
        # A spelling the row itself carries keeps its own column.
        if spelled != name and (spelled in own or spelled in item):
            spelled = name
        item[spelled] = tv

    item["id"] = TypedValue.string(row_id or str(uuid.uuid4()))
    _put_text(item, "organization_id", meta.organization_id)
    _put_text(item, "policy_id", meta.policy_id)
    _put_text(item, "domain_name", (meta.domain_name or "").strip().lower())
    _put_text(item, "file_id", meta.file_id)
    _put_text(item, "uploaded_by", meta.uploaded_by)
    _put_text(item, "uploaded_date", uploaded_date)
    item["is_processed"] = FLAG_OFF
    item["is_handled"] = FLAG_OFF
    return item


def _put_text(item: Item, key: str, value: str | None) -> None:
    v = trim(value)
    if v is None:
        item.pop(key, None)
        return
    item[key] = TypedValue.string(v)
