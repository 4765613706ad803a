"""masterdata_etl.headers

One header record per ingested file.  The header carries the file's
process_stage, which the scheduler walks UNPROCESSED → PROCESSING → COMPLETED
one file at a time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from masterdata_etl.shared import ConditionalCheckFailed, ProcessStage, make_clock
from masterdata_etl.store import Item, ItemStore
from masterdata_etl.typed_value import TypedValue
from masterdata_etl.update_diff import UpdateDiffBuilder, UpdatePlan, write_plan

log = logging.getLogger(__name__)

__all__ = ["HeaderRecord", "HeaderRepository", "ProcessStage"]


@dataclass
class HeaderRecord:
    id: str
    file_name: str = ""
    domain_name: str = ""
    organization_id: str = ""
    policy_id: str = ""
    uploaded_by: str = ""
    total_rows_count: int = 0
    process_stage: ProcessStage = ProcessStage.UNPROCESSED
    file_status: str = ""
    uploaded_date: str = ""
    updated_date: str = ""

    def to_item(self) -> Item:
        return {
            "id": TypedValue.string(self.id),
            "file_name": TypedValue.string(self.file_name),
            "domain_name": TypedValue.string(self.domain_name),
            "organization_id": TypedValue.string(self.organization_id),
            "policy_id": TypedValue.string(self.policy_id),
            "uploaded_by": TypedValue.string(self.uploaded_by),
            "uploaded_date": TypedValue.string(self.uploaded_date),
            "updated_date": TypedValue.string(self.updated_date),
            "total_rows_count": TypedValue.number(self.total_rows_count),
            "process_stage": TypedValue.string(self.process_stage.value),
            "file_status": TypedValue.string(self.file_status),
        }

    @classmethod
    def from_item(cls, item: Item) -> "HeaderRecord":
        def text(key: str) -> str:
            tv = item.get(key)
            return "" if tv is None or tv.is_null else str(tv.value)

        count = item.get("total_rows_count")
        stage = text("process_stage") or ProcessStage.UNPROCESSED.value
        return cls(
            id=text("id"),
            file_name=text("file_name"),
            domain_name=text("domain_name"),
            organization_id=text("organization_id"),
            policy_id=text("policy_id"),
            uploaded_by=text("uploaded_by"),
            total_rows_count=int(count.value) if count is not None and not count.is_null else 0,
            process_stage=ProcessStage(stage),
            file_status=text("file_status"),
            uploaded_date=text("uploaded_date"),
            updated_date=text("updated_date"),
        )


class HeaderRepository:
    def __init__(
        self,
        store: ItemStore,
        table: str,
        clock: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._table = table
        self._clock = clock or make_clock()

    @property
    def table(self) -> str:
        return self._table

    def save(self, header: HeaderRecord) -> HeaderRecord:
        if not header.uploaded_date:
            header.uploaded_date = self._clock()
        self._store.put_item(self._table, header.to_item())
        log.info("header saved id=%s file_name=%r stage=%s",
                 header.id, header.file_name, header.process_stage.value)
        return header

    def get(self, file_id: str) -> HeaderRecord | None:
        item = self._store.get_item(self._table, file_id)
        return HeaderRecord.from_item(item) if item is not None else None

    def list_by_stage(self, stage: ProcessStage) -> list[HeaderRecord]:
        """Headers in stage, oldest uploaded_date first; ties keep insertion order."""
        dated = []
        for item in self._store.scan(
            self._table, {"process_stage": TypedValue.string(stage.value)}
        ):
            uploaded = item.get("uploaded_date")
            if uploaded is None or uploaded.is_null:
                continue
            dated.append((uploaded.value, item))
        dated.sort(key=lambda pair: pair[0])
        return [HeaderRecord.from_item(item) for _, item in dated]

    def fetch_oldest_by_stage(self, stage: ProcessStage) -> HeaderRecord | None:
        """Header in stage with the smallest uploaded_date, or None."""
        waiting = self.list_by_stage(stage)
        return waiting[0] if waiting else None

    def update_stage(self, file_id: str, stage: ProcessStage) -> None:
        """Move a header to stage.

        Raises:
            ConditionalCheckFailed: If no header with file_id exists.
        """
        applied = self._store.update_item(
            self._table,
            file_id,
            {
                "process_stage": TypedValue.string(stage.value),
                "updated_date": TypedValue.string(self._clock()),
            },
            guard={"id": TypedValue.string(file_id)},
        )
        if not applied:
            raise ConditionalCheckFailed(f"Header '{file_id}' does not exist.")
        log.info("header %s → %s", file_id, stage.value)

    def filename_exists(self, file_name: str) -> bool:
        fn = (file_name or "").strip()
        if not fn:
            raise ValueError("file_name must not be blank")
        return bool(self._store.scan(self._table, {"file_name": TypedValue.string(fn)}))

    def update_header(
        self,
        file_id: str,
        desired: dict[str, Any],
        builder: UpdateDiffBuilder | None = None,
    ) -> UpdatePlan:
        """Edit header attributes; a real change sends the file back to UNPROCESSED."""
        current = self._store.get_item(self._table, file_id)
        if current is None:
            raise ConditionalCheckFailed(f"Header '{file_id}' does not exist.")
        plan = (builder or UpdateDiffBuilder(self._clock)).build_header_update(desired, current)
        write_plan(self._store, self._table, file_id, plan)
        return plan
