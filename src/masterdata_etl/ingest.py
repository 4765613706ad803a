"""masterdata_etl.ingest

Entry points that turn an upload into a header record plus staging rows.

Two sources:
  ingest_csv      a CSV file; the file name must be unique across headers
  ingest_payload  a JSON object of the form

        {"data": {"domain_name": "...", "policy_id": "...", "uploaded_by": "...",
                  "<column>": <value>, ...}}

      where every non-reserved key of "data" is one row column, or, for
      several rows, {"data": {"domain_name": ..., "policy_id": ...,
      "items": [{...}, {...}]}}.

Validation failures raise IngestValidationError.  Anything unexpected once
staging has started is logged and reported as "Data create failed".
"""

from __future__ import annotations

import csv
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from masterdata_etl.config import StagingConfig
from masterdata_etl.csv_ingest import CsvSource, parse_csv
from masterdata_etl.headers import HeaderRecord, HeaderRepository
from masterdata_etl.normalize import trim
from masterdata_etl.shared import (
    ConditionalCheckFailed,
    IngestValidationError,
    ProcessStage,
    RunCounters,
    make_clock,
)
from masterdata_etl.staging_writer import BatchStagingWriter, RetryPolicy, StagingMetadata
from masterdata_etl.store import ItemStore

log = logging.getLogger(__name__)

RESERVED_PAYLOAD_KEYS = frozenset({"domain_name", "policy_id", "uploaded_by"})
PAYLOAD_FILE_NAME = "Data Ingest Workflow"

SUCCESS_MESSAGE = "Data create successfully."
FAILURE_MESSAGE = "Data create failed"


@dataclass
class IngestResult:
    message: str
    total_inserted: int
    file_id: str | None = None
    preview: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class IngestRequest:
    domain_name: str | None
    policy_id: str | None
    uploaded_by: str | None
    items: list[dict[str, Any]]


def parse_ingest_payload(payload: Any) -> IngestRequest:
    """Split a JSON ingest payload into selectors and row bodies.

    Keys are trimmed and None values dropped; rows left empty are discarded.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
        raise IngestValidationError("Payload must contain a 'data' object.")
    data: dict[str, Any] = payload["data"]

    def selector(key: str) -> str | None:
        val = data.get(key)
        return trim(str(val)) if val is not None else None

    if "items" in data:
        raw_items = data["items"]
        if not isinstance(raw_items, list) or not all(isinstance(i, dict) for i in raw_items):
            raise IngestValidationError("'items' must be a list of objects.")
    else:
        raw_items = [{k: v for k, v in data.items() if k not in RESERVED_PAYLOAD_KEYS}]

    items = []
    for raw in raw_items:
        row = {
            str(k).strip(): v
            for k, v in raw.items()
            if k is not None and str(k).strip() and v is not None
        }
        if row:
            items.append(row)

    return IngestRequest(
        domain_name=selector("domain_name"),
        policy_id=selector("policy_id"),
        uploaded_by=selector("uploaded_by"),
        items=items,
    )


def _require(value: str | None, message: str) -> str:
    v = trim(value)
    if v is None:
        raise IngestValidationError(message)
    return v


def _ensure_tables(store: ItemStore, config: StagingConfig) -> None:
    for table in (config.header_table, config.staging_table):
        if not store.table_exists(table):
            log.info("creating table %s", table)
            store.ensure_table(table)


def _stage(
    store: ItemStore,
    config: StagingConfig,
    *,
    file_name: str,
    rows: list[dict[str, Any]],
    domain_name: str,
    policy_id: str,
    organization_id: str | None,
    uploaded_by: str | None,
    clock: Callable[[], str],
    retry: RetryPolicy | None,
    counters: RunCounters,
) -> IngestResult:
    headers = HeaderRepository(store, config.header_table, clock)
    header = HeaderRecord(
        id=str(uuid.uuid4()),
        file_name=file_name,
        domain_name=domain_name,
        organization_id=organization_id or "",
        policy_id=policy_id,
        uploaded_by=uploaded_by or "",
        total_rows_count=len(rows),
        process_stage=ProcessStage.UNPROCESSED,
    )
    writer = BatchStagingWriter(
        store,
        batch_size=config.batch_size,
        preview_limit=config.preview_limit,
        retry=retry or RetryPolicy.from_settings(config.retry),
        clock=clock,
        counters=counters,
    )
    try:
        headers.save(header)
        summary = writer.insert(
            config.staging_table,
            rows,
            StagingMetadata(
                domain_name=domain_name,
                organization_id=organization_id,
                policy_id=policy_id,
                file_id=header.id,
                uploaded_by=uploaded_by,
            ),
        )
    except (IngestValidationError, ConditionalCheckFailed):
        raise
    except Exception:
        log.exception("ingest of %r failed", file_name)
        counters.warnings.append(f"ingest of {file_name!r} failed")
        return IngestResult(message=FAILURE_MESSAGE, total_inserted=0)

    return IngestResult(
        message=SUCCESS_MESSAGE,
        total_inserted=summary.total_inserted,
        file_id=header.id,
        preview=summary.preview,
    )


def ingest_csv(
    store: ItemStore,
    config: StagingConfig,
    source: CsvSource,
    *,
    file_name: str | None,
    domain_name: str | None,
    policy_id: str | None,
    organization_id: str | None = None,
    uploaded_by: str | None = None,
    clock: Callable[[], str] | None = None,
    retry: RetryPolicy | None = None,
    counters: RunCounters | None = None,
) -> IngestResult:
    """Stage every data row of a CSV upload under a new header.

    Raises:
        IngestValidationError: On a missing file name, domain or policy, a
            file name already in use, a file that is not valid
            UTF-8 CSV, or a file without data rows.
    """
    counters = counters if counters is not None else RunCounters()
    fn = _require(file_name, "File is required.")
    domain = _require(domain_name, "Domain is required.")
    policy = _require(policy_id, "Policy is required.")

    _ensure_tables(store, config)
    headers = HeaderRepository(store, config.header_table)
    if headers.filename_exists(fn):
        raise IngestValidationError(
            f"A file named {fn} already exists. Choose a different name"
        )

    try:
        rows = list(parse_csv(source))
    except UnicodeDecodeError as exc:
        raise IngestValidationError(
            f"CSV file is not valid UTF-8 (byte {exc.start}: {exc.reason})."
        ) from exc
    except csv.Error as exc:
        raise IngestValidationError(f"CSV file is malformed: {exc}") from exc
    counters.rows_read += len(rows)
    if not rows:
        raise IngestValidationError("CSV file contains no data rows.")

    return _stage(
        store, config,
        file_name=fn,
        rows=rows,
        domain_name=domain,
        policy_id=policy,
        organization_id=organization_id,
        uploaded_by=uploaded_by,
        clock=clock or make_clock(config.timezone),
        retry=retry,
        counters=counters,
    )


def ingest_payload(
    store: ItemStore,
    config: StagingConfig,
    payload: Any,
    *,
    organization_id: str | None = None,
    uploaded_by: str | None = None,
    clock: Callable[[], str] | None = None,
    retry: RetryPolicy | None = None,
    counters: RunCounters | None = None,
) -> IngestResult:
    """Stage the row(s) of a JSON ingest payload under a new header.

    uploaded_by inside the payload wins over the argument.

    Raises:
        IngestValidationError: On a malformed payload, a missing domain or
            policy, or no non-empty row.
    """
    counters = counters if counters is not None else RunCounters()
    request = parse_ingest_payload(payload)
    domain = _require(request.domain_name, "domain_name is mandatory.")
    policy = _require(request.policy_id, "policy_id is mandatory.")
    counters.rows_read += len(request.items)
    if not request.items:
        raise IngestValidationError("items must not be empty.")

    _ensure_tables(store, config)
    return _stage(
        store, config,
        file_name=PAYLOAD_FILE_NAME,
        rows=request.items,
        domain_name=domain,
        policy_id=policy,
        organization_id=organization_id,
        uploaded_by=request.uploaded_by or uploaded_by,
        clock=clock or make_clock(config.timezone),
        retry=retry,
        counters=counters,
    )
