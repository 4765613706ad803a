"""masterdata_etl.shared

Shared utilities used by the ingest, claim and scheduling modes.
Includes the exception taxonomy, timestamp helpers, run counters and
report-writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Asia/Singapore"
_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


class ProcessStage(str, Enum):
    """Lifecycle of one ingested file: UNPROCESSED → PROCESSING → COMPLETED."""

    UNPROCESSED = "UNPROCESSED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class IngestValidationError(ValueError):
    """Raised for caller errors: missing mandatory field, empty input, bad payload shape."""


class NoRowsFoundError(LookupError):
    """Raised when a file has no unclaimed staging rows although rows were expected."""


class ClaimStateError(RuntimeError):
    """Raised when a flag transition is attempted without holding the claim."""


class ConditionalCheckFailed(RuntimeError):
    """Raised when a guarded write that the caller requires to succeed did not apply."""


class BatchWriteExhausted(RuntimeError):
    """Raised when a bounded retry policy gives up with items still unwritten."""

    def __init__(self, message: str, unprocessed: list[dict[str, Any]]) -> None:
        super().__init__(message)
        self.unprocessed = unprocessed


class DispatchError(RuntimeError):
    """Raised when the downstream target rejects or fails to receive a payload."""


class ConfigValidationError(ValueError):
    """Raised when a YAML config file does not match the expected schema."""


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def now_text(tz_name: str = DEFAULT_TIMEZONE, now: datetime | None = None) -> str:
    """Wall-clock time in tz_name as 'YYYY-MM-DD HH:MM:SS'."""
    current = now if now is not None else datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(ZoneInfo(tz_name)).strftime(_TS_FORMAT)


def make_clock(tz_name: str = DEFAULT_TIMEZONE):
    """Return a zero-argument callable producing now_text(tz_name)."""
    return lambda: now_text(tz_name)


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_inserted: int = 0
    batches_written: int = 0
    batch_retries: int = 0
    rows_claimed: int = 0
    claims_lost: int = 0
    rows_dispatched: int = 0
    files_resumed: int = 0
    files_stalled: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    source_paths: dict[str, str | None],
    counters: RunCounters,
    extra: dict[str, Any] | None = None,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        **source_paths,
        **(extra or {}),
        "counters": counters.to_dict(),
    }
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
