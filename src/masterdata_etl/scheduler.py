"""masterdata_etl.scheduler

Fixed-interval poll loop that keeps at most one file in flight.

Per tick:
  - staging or header table missing      → nothing to do
  - a header is PROCESSING               → COMPLETED once the file has no
                                           unprocessed rows left; resumed when
                                           some of them are unclaimed (e.g.
                                           after a failed publish); otherwise
                                           wait for the held claims
  - otherwise                            → dispatch the next UNPROCESSED file

A tick never raises.  Stage changes and dispatch are best effort: a crash
between them can leave a header PROCESSING with nothing sent.
"""

from __future__ import annotations

import logging
import threading

from masterdata_etl.claims import ClaimCoordinator
from masterdata_etl.config import StagingConfig
from masterdata_etl.dispatch import BatchDispatcher
from masterdata_etl.headers import HeaderRepository
from masterdata_etl.shared import ProcessStage
from masterdata_etl.store import ItemStore

log = logging.getLogger(__name__)


class IngestionScheduler:
    def __init__(
        self,
        store: ItemStore,
        config: StagingConfig,
        headers: HeaderRepository,
        claims: ClaimCoordinator,
        dispatcher: BatchDispatcher,
    ) -> None:
        self._store = store
        self._config = config
        self._headers = headers
        self._claims = claims
        self._dispatcher = dispatcher

    def tick(self) -> int:
        """Run one poll cycle. Returns the number of rows dispatched."""
        log.info("Checking workflow status...")
        try:
            if not (
                self._store.table_exists(self._config.staging_table)
                and self._store.table_exists(self._config.header_table)
            ):
                log.info("Staging tables not present yet; skipping tick.")
                return 0

            in_flight = self._headers.fetch_oldest_by_stage(ProcessStage.PROCESSING)
            if in_flight is not None:
                table = self._config.staging_table
                pending = self._claims.count_pending(table, in_flight.id)
                if pending == 0:
                    self._headers.update_stage(in_flight.id, ProcessStage.COMPLETED)
                    log.info("File %s fully processed; marked COMPLETED.", in_flight.id)
                    return 0
                if self._claims.count_unclaimed(table, in_flight.id) > 0:
                    log.info(
                        "File %s has %d pending row(s) with unclaimed work; resuming.",
                        in_flight.id, pending,
                    )
                    self._dispatcher.counters.files_resumed += 1
                    return self._dispatcher.dispatch_file(in_flight)
                log.info(
                    "File %s still PROCESSING (%d row(s) pending). Will check again on next poll.",
                    in_flight.id, pending,
                )
                return 0

            return self._dispatcher.dispatch_next()
        except Exception:
            log.exception("Unexpected error while polling workflow status or pushing next batch.")
            return 0

    def run(self, stop_event: threading.Event) -> None:
        """Tick every polling_interval_seconds until stop_event is set."""
        interval = self._config.polling_interval_seconds
        log.info("Scheduler started (interval=%.1fs)", interval)
        while not stop_event.is_set():
            self.tick()
            stop_event.wait(interval)
        log.info("Scheduler stopped")
