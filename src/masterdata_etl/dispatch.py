"""masterdata_etl.dispatch

Downstream hand-off of staged rows, one file at a time.

BatchDispatcher.dispatch_next():
  1. pick the oldest UNPROCESSED header that still has unclaimed rows
     (drained files become COMPLETED, fully-claimed files are skipped)
  2. load its unclaimed rows
  3. move the header to PROCESSING
  4. per row: claim → publish → mark_processed
     - a lost claim is skipped (another worker has the row)
     - a failed publish reverts the claim and re-raises

Publishers follow one small protocol so the CLI can post over HTTP or, for
local runs, drop payloads into a directory.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

import requests

from masterdata_etl.claims import ClaimCoordinator
from masterdata_etl.config import StagingConfig
from masterdata_etl.headers import HeaderRecord, HeaderRepository
from masterdata_etl.normalize import canonical_decimal
from masterdata_etl.shared import DispatchError, ProcessStage, RunCounters
from masterdata_etl.typed_value import decode_item

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------

def _json_default(value: Any) -> Any:
    # Integral decimals are exact as JSON integers; anything else travels as
    # its canonical text so no digit is lost to a float.
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return canonical_decimal(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def build_payload(
    header: HeaderRecord,
    record: dict[str, Any],
    data_type: str,
    rules: Sequence[dict[str, Any]] = (),
) -> dict[str, Any]:
    """Wrap one decoded staging row in the downstream envelope."""
    return {
        "data_entry": {
            "data_type": data_type,
            "domain_name": header.domain_name,
            "file_id": header.id,
            "policy_id": header.policy_id,
            "data": record,
            "validation_rules": [
                {
                    "rule_name": r.get("rule_name"),
                    "column_name": r.get("column_name"),
                    "value": r.get("value"),
                    "rule_description": r.get("rule_description"),
                }
                for r in rules
            ],
        }
    }


def payload_to_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Publishers
# ---------------------------------------------------------------------------

class Publisher(Protocol):
    def publish(self, payload: dict[str, Any]) -> None:
        """Deliver payload at least once; raise DispatchError on failure."""
        ...


@dataclass
class HttpPublisher:
    """POST each payload as JSON to a fixed URL."""

    url: str
    timeout: int = 30
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def publish(self, payload: dict[str, Any]) -> None:
        try:
            resp = self.session.post(
                self.url,
                data=payload_to_json(payload),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise DispatchError(f"POST {self.url} failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise DispatchError(f"POST {self.url} returned HTTP {resp.status_code}")


@dataclass
class LocalPublisher:
    """Write each payload to base_dir/<file_id>/<row id>.json (local runs, no endpoint)."""

    base_dir: Path

    def publish(self, payload: dict[str, Any]) -> None:
        entry = payload["data_entry"]
        dest = self.base_dir / str(entry["file_id"]) / f"{entry['data'].get('id', 'row')}.json"
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(payload_to_json(payload), encoding="utf-8")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class BatchDispatcher:
    def __init__(
        self,
        claims: ClaimCoordinator,
        headers: HeaderRepository,
        publisher: Publisher,
        config: StagingConfig,
        counters: RunCounters | None = None,
        rules_for: Callable[[HeaderRecord], Sequence[dict[str, Any]]] | None = None,
    ) -> None:
        self._claims = claims
        self._headers = headers
        self._publisher = publisher
        self._config = config
        self._counters = counters or RunCounters()
        self._rules_for = rules_for or (lambda header: ())

    @property
    def counters(self) -> RunCounters:
        return self._counters

    def dispatch_next(self) -> int:
        """Publish the unclaimed rows of the oldest dispatchable UNPROCESSED file.

        Files with nothing left to process are marked COMPLETED.  Files whose
        pending rows are all held by claims that never finished are skipped
        with a warning so later files are not starved.

        Returns the number of rows published (0 when no file is waiting).
        """
        waiting = self._headers.list_by_stage(ProcessStage.UNPROCESSED)
        if not waiting:
            log.info("No unprocessed files found.")
            return 0

        table = self._config.staging_table
        for header in waiting:
            if self._claims.count_pending(table, header.id) == 0:
                log.warning("file %s has no pending rows; marking COMPLETED", header.id)
                self._headers.update_stage(header.id, ProcessStage.COMPLETED)
                continue
            if self._claims.count_unclaimed(table, header.id) == 0:
                log.warning(
                    "file %s: every pending row is claimed but unprocessed; "
                    "skipping until the claims are released", header.id,
                )
                self._counters.files_stalled += 1
                continue
            return self.dispatch_file(header)

        log.info("No dispatchable files found.")
        return 0

    def dispatch_file(self, header: HeaderRecord) -> int:
        """Publish the unclaimed rows of one file and leave it PROCESSING.

        Also used to resume a PROCESSING file whose earlier pass was cut short.

        Raises:
            NoRowsFoundError: If the file has no unclaimed, unprocessed rows.
        """
        table = self._config.staging_table
        rows = self._claims.get_unprocessed_by_file(
            table, header.id, header.policy_id or None, header.domain_name or None
        )

        if header.process_stage is not ProcessStage.PROCESSING:
            self._headers.update_stage(header.id, ProcessStage.PROCESSING)
        rules = self._rules_for(header)

        sent = 0
        for item in rows:
            row_id = str(item["id"].value)
            if not self._claims.claim(table, row_id):
                self._counters.claims_lost += 1
                continue
            self._counters.rows_claimed += 1

            payload = build_payload(header, decode_item(item), self._config.data_type, rules)
            try:
                self._publisher.publish(payload)
            except Exception:
                self._claims.revert_claim(table, row_id)
                raise
            self._claims.mark_processed(table, row_id)
            self._counters.rows_dispatched += 1
            sent += 1

        log.info("Dispatched %d of %d row(s) for file %s", sent, len(rows), header.id)
        return sent
