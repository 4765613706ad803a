"""masterdata_etl.claims

Per-row claim / process / release transitions on the staging table.

Flag model (is_handled, is_processed):

    (0, 0)  unclaimed
    (1, 0)  claimed, in progress
    (1, 1)  processed
    (0, 1)  not produced by these transitions; nothing here prevents it

Each transition is a single guarded update_item() call, so concurrent callers
are serialized per row by the store.  Losing a claim race is a normal outcome
and is reported as False; only mark_processed() raises, because calling it
without holding the claim is a bug in the caller.
"""

from __future__ import annotations

import logging
from typing import Callable

from masterdata_etl.shared import ClaimStateError, NoRowsFoundError, make_clock
from masterdata_etl.staging_writer import FLAG_OFF, FLAG_ON
from masterdata_etl.store import Item, ItemStore
from masterdata_etl.typed_value import TypedValue

log = logging.getLogger(__name__)


class ClaimCoordinator:
    def __init__(self, store: ItemStore, clock: Callable[[], str] | None = None) -> None:
        self._store = store
        self._clock = clock or make_clock()

    def claim(self, table: str, row_id: str) -> bool:
        """Take the row for processing. False if someone else already holds it."""
        won = self._store.update_item(
            table,
            row_id,
            {"is_handled": FLAG_ON, "claimed_at": TypedValue.string(self._clock())},
            guard={"is_handled": FLAG_OFF},
        )
        if won:
            log.debug("claimed %s/%s", table, row_id)
        else:
            log.info("claim lost %s/%s", table, row_id)
        return won

    def mark_processed(self, table: str, row_id: str) -> None:
        """Flag a claimed row as processed.

        Raises:
            ClaimStateError: If the row is missing or not currently claimed.
        """
        applied = self._store.update_item(
            table,
            row_id,
            {"is_processed": FLAG_ON, "processed_at": TypedValue.string(self._clock())},
            guard={"is_handled": FLAG_ON},
        )
        if not applied:
            raise ClaimStateError(
                f"mark_processed on {table}/{row_id} without a held claim"
            )

    def revert_claim(self, table: str, row_id: str) -> bool:
        """Release a claim so the row can be claimed again. is_processed is untouched."""
        released = self._store.update_item(
            table,
            row_id,
            {"is_handled": FLAG_OFF},
            guard={"is_handled": FLAG_ON},
        )
        if not released:
            log.warning("revert_claim on %s/%s found no held claim", table, row_id)
        return released

    def get_unprocessed_by_file(
        self,
        table: str,
        file_id: str,
        policy_id: str | None = None,
        domain_name: str | None = None,
    ) -> list[Item]:
        """Unclaimed, unprocessed rows of one file, in insertion order.

        Raises:
            NoRowsFoundError: If nothing matches.
        """
        equals: dict[str, TypedValue] = {
            "file_id": TypedValue.string(file_id),
            "is_processed": FLAG_OFF,
            "is_handled": FLAG_OFF,
        }
        if policy_id:
            equals["policy_id"] = TypedValue.string(policy_id)
        if domain_name:
            equals["domain_name"] = TypedValue.string(domain_name.strip().lower())
        rows = self._store.scan(table, equals)
        if not rows:
            raise NoRowsFoundError("Data not found in staging table.")
        return rows

    def count_pending(self, table: str, file_id: str) -> int:
        """Rows of file_id that are not yet processed, claimed or not."""
        return len(self._store.scan(
            table,
            {"file_id": TypedValue.string(file_id), "is_processed": FLAG_OFF},
        ))

    def count_unclaimed(self, table: str, file_id: str) -> int:
        """Rows of file_id that nobody holds and that are not yet processed."""
        return len(self._store.scan(
            table,
            {
                "file_id": TypedValue.string(file_id),
                "is_processed": FLAG_OFF,
                "is_handled": FLAG_OFF,
            },
        ))
