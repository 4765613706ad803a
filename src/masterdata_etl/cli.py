"""masterdata_etl.cli

Unified CLI entrypoint for master-data staging.

Modes (--mode):
  ingest_csv       stage a CSV file under a new header
  ingest_json      stage the row(s) of a JSON ingest payload
  poll             run the scheduler until SIGINT/SIGTERM
  poll_once        run a single scheduler tick
  claim            claim one staging row
  mark_processed   mark a claimed row processed
  revert_claim     release a claim
  update_row       apply a minimal update to one staging row

Usage (ingest_csv):
    python -m masterdata_etl.cli \\
        --mode ingest_csv \\
        --db-dsn "$DB_DSN" \\
        --config config/staging.yml \\
        --csv-path "uploads/customers.csv" \\
        --domain-name customer \\
        --policy-id POL-1 \\
        --organization-id ORG-1 \\
        --uploaded-by "ops@example.com"

Usage (poll):
    python -m masterdata_etl.cli --mode poll --db-dsn "$DB_DSN" --config config/staging.yml
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from masterdata_etl.claims import ClaimCoordinator
from masterdata_etl.config import StagingConfig, load_config
from masterdata_etl.dispatch import BatchDispatcher, HttpPublisher, LocalPublisher, Publisher
from masterdata_etl.headers import HeaderRepository
from masterdata_etl.ingest import FAILURE_MESSAGE, IngestResult, ingest_csv, ingest_payload
from masterdata_etl.scheduler import IngestionScheduler
from masterdata_etl.shared import (
    ClaimStateError,
    ConditionalCheckFailed,
    ConfigValidationError,
    IngestValidationError,
    NoRowsFoundError,
    RunCounters,
    make_clock,
    write_run_report,
)
from masterdata_etl.store import PostgresItemStore
from masterdata_etl.update_diff import UpdateDiffBuilder, apply_update


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _validate_ingest_csv_flags(
    csv_path: str | None, domain_name: str | None, policy_id: str | None, run_id: str,
) -> None:
    missing = [
        flag for flag, val in (
            ("--csv-path", csv_path),
            ("--domain-name", domain_name),
            ("--policy-id", policy_id),
        ) if not val
    ]
    if missing:
        _fatal(run_id, f"ingest_csv requires {', '.join(missing)}")
    if not Path(csv_path).exists():  # type: ignore[arg-type]
        _fatal(run_id, f"CSV file not found: {csv_path}")


def _validate_row_flags(mode: str, row_id: str | None, run_id: str) -> None:
    if not row_id:
        _fatal(run_id, f"{mode} requires --row-id")


def _build_publisher(
    config: StagingConfig, publish_dir: str | None, run_id: str,
) -> Publisher:
    if config.dispatch_url:
        return HttpPublisher(url=config.dispatch_url)
    if publish_dir:
        return LocalPublisher(base_dir=Path(publish_dir))
    _fatal(run_id, "no publisher configured; set dispatch_url in the config or pass --publish-dir")
    raise AssertionError("unreachable")


# ---------------------------------------------------------------------------
# Mode runners
# ---------------------------------------------------------------------------

def _report_ingest(
    run_id: str, started_at: str, mode: str, source: dict[str, str | None],
    counters: RunCounters, result: IngestResult,
) -> None:
    click.echo(f"[{run_id}] {result.message} total_inserted={result.total_inserted} file_id={result.file_id}")
    report_path = write_run_report(
        run_id, started_at, mode, source, counters,
        {"file_id": result.file_id, "message": result.message,
         "preview": result.preview[:5]},
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if result.message == FAILURE_MESSAGE:
        sys.exit(1)


def _run_scheduler(
    store: PostgresItemStore, config: StagingConfig, publisher: Publisher,
    counters: RunCounters, *, once: bool, run_id: str,
) -> None:
    clock = make_clock(config.timezone)
    claims = ClaimCoordinator(store, clock)
    headers = HeaderRepository(store, config.header_table, clock)
    dispatcher = BatchDispatcher(claims, headers, publisher, config, counters)
    scheduler = IngestionScheduler(store, config, headers, claims, dispatcher)

    if once:
        sent = scheduler.tick()
        click.echo(f"[{run_id}] Dispatched {sent} row(s)")
        return

    stop_event = threading.Event()

    def _stop(signum, frame) -> None:
        click.echo(f"[{run_id}] Received signal {signum}; stopping after current tick")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    scheduler.run(stop_event)
    click.echo(f"[{run_id}] Scheduler stopped; {counters.rows_dispatched} row(s) dispatched")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    required=True,
    type=click.Choice([
        "ingest_csv", "ingest_json", "poll", "poll_once",
        "claim", "mark_processed", "revert_claim", "update_row",
    ]),
)
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (or $DB_DSN)")
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML config file")
@click.option("--csv-path", default=None, type=click.Path(), help="[ingest_csv] Input CSV")
@click.option("--file-name", default=None, help="[ingest_csv] Stored file name (default: CSV basename)")
@click.option("--json-path", default=None, type=click.Path(), help="[ingest_json] Payload JSON file")
@click.option("--domain-name", default=None, help="[ingest_csv] Domain of the rows")
@click.option("--policy-id", default=None, help="[ingest_csv] Validation policy id")
@click.option("--organization-id", default=None, help="[ingest_*] Owning organization")
@click.option("--uploaded-by", default=None, help="[ingest_*] Uploader identity")
@click.option("--row-id", default=None, help="[claim|mark_processed|revert_claim|update_row] Staging row id")
@click.option("--table", default=None, help="[claim|mark_processed|revert_claim|update_row] Table (default: staging_table)")
@click.option("--fields-json", default=None, help="[update_row] JSON object of desired field values")
@click.option("--publish-dir", default=None, type=click.Path(), help="[poll|poll_once] Write payloads here when no dispatch_url is set")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--log-level", default="INFO", show_default=True)
def main(
    mode: str,
    db_dsn: str,
    config_path: str | None,
    csv_path: str | None,
    file_name: str | None,
    json_path: str | None,
    domain_name: str | None,
    policy_id: str | None,
    organization_id: str | None,
    uploaded_by: str | None,
    row_id: str | None,
    table: str | None,
    fields_json: str | None,
    publish_dir: str | None,
    run_id: str | None,
    log_level: str,
) -> None:
    """Master-data staging CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    counters = RunCounters()
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format=f"%(asctime)s %(levelname)s [{run_id}] %(name)s: %(message)s",
    )

    try:
        config = load_config(Path(config_path) if config_path else None)
    except (ConfigValidationError, FileNotFoundError) as exc:
        _fatal(run_id, f"config: {exc}")

    click.echo(f"[{run_id}] Starting {mode} run")

    # Validate flags before touching the database.
    if mode == "ingest_csv":
        _validate_ingest_csv_flags(csv_path, domain_name, policy_id, run_id)
    elif mode == "ingest_json":
        if not json_path or not Path(json_path).exists():
            _fatal(run_id, f"ingest_json requires an existing --json-path (got {json_path!r})")
    elif mode in ("claim", "mark_processed", "revert_claim"):
        _validate_row_flags(mode, row_id, run_id)
    elif mode == "update_row":
        _validate_row_flags(mode, row_id, run_id)
        if not fields_json:
            _fatal(run_id, "update_row requires --fields-json")

    publisher = None
    if mode in ("poll", "poll_once"):
        publisher = _build_publisher(config, publish_dir, run_id)

    conn = psycopg.connect(db_dsn, autocommit=False)
    store = PostgresItemStore(conn)
    target = table or config.staging_table
    try:
        if mode == "ingest_csv":
            path = Path(csv_path)  # type: ignore[arg-type]
            result = ingest_csv(
                store, config, path,
                file_name=file_name or path.name,
                domain_name=domain_name,
                policy_id=policy_id,
                organization_id=organization_id,
                uploaded_by=uploaded_by,
                counters=counters,
            )
            _report_ingest(run_id, started_at, mode, {"csv_path": str(path)}, counters, result)

        elif mode == "ingest_json":
            try:
                payload = json.loads(Path(json_path).read_text(encoding="utf-8"))  # type: ignore[arg-type]
            except json.JSONDecodeError as exc:
                _fatal(run_id, f"invalid JSON in {json_path}: {exc}")
            result = ingest_payload(
                store, config, payload,
                organization_id=organization_id,
                uploaded_by=uploaded_by,
                counters=counters,
            )
            _report_ingest(run_id, started_at, mode, {"json_path": json_path}, counters, result)

        elif mode in ("poll", "poll_once"):
            _run_scheduler(
                store, config, publisher, counters,  # type: ignore[arg-type]
                once=(mode == "poll_once"), run_id=run_id,
            )

        elif mode == "claim":
            coordinator = ClaimCoordinator(store, make_clock(config.timezone))
            if coordinator.claim(target, row_id):  # type: ignore[arg-type]
                click.echo(f"[{run_id}] Claimed {target}/{row_id}")
            else:
                click.echo(f"[{run_id}] Claim lost: {target}/{row_id} is already held")

        elif mode == "mark_processed":
            coordinator = ClaimCoordinator(store, make_clock(config.timezone))
            coordinator.mark_processed(target, row_id)  # type: ignore[arg-type]
            click.echo(f"[{run_id}] Marked processed {target}/{row_id}")

        elif mode == "revert_claim":
            coordinator = ClaimCoordinator(store, make_clock(config.timezone))
            if coordinator.revert_claim(target, row_id):  # type: ignore[arg-type]
                click.echo(f"[{run_id}] Released {target}/{row_id}")
            else:
                click.echo(f"[{run_id}] Nothing to release: {target}/{row_id} is not claimed")

        elif mode == "update_row":
            try:
                desired = json.loads(fields_json)  # type: ignore[arg-type]
            except json.JSONDecodeError as exc:
                _fatal(run_id, f"--fields-json is not valid JSON: {exc}")
            if not isinstance(desired, dict):
                _fatal(run_id, "--fields-json must be a JSON object")
            plan = apply_update(
                store, target, row_id, desired,  # type: ignore[arg-type]
                UpdateDiffBuilder(make_clock(config.timezone)),
            )
            if plan.is_empty:
                click.echo(f"[{run_id}] No changes for {target}/{row_id}")
            else:
                click.echo(
                    f"[{run_id}] Updated {target}/{row_id}: {plan.updated_fields} field(s) "
                    f"({plan.expression()})"
                )

    except (IngestValidationError, ClaimStateError, NoRowsFoundError, ConditionalCheckFailed) as exc:
        _fatal(run_id, str(exc))
    finally:
        conn.close()


if __name__ == "__main__":
    main()
