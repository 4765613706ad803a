"""masterdata_etl.update_diff

Minimal partial updates for staging rows and header records.

build_update(desired, current) compares each desired field with the stored
attribute and emits a SET (or REMOVE, for a desired None) only where the
value actually differs.  Keys match case-insensitively; when the item already
holds the attribute under another spelling that spelling is reused.

If anything changed the row is invalidated as well:

    is_processed → 0    processed_at → ""
    is_handled   → 0    claimed_at   → ""
    updated_date → now

so an edited row is reprocessed and no stale claim survives the edit.

build_rollback(before, after) produces the compensating plan that restores
a snapshot taken before a mutation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from masterdata_etl.shared import (
    ConditionalCheckFailed,
    NoRowsFoundError,
    ProcessStage,
    make_clock,
)
from masterdata_etl.store import Item, ItemStore
from masterdata_etl.typed_value import TypedValue, encode, typed_equal

log = logging.getLogger(__name__)

# Workflow attributes owned by the invalidation rule, never taken from desired.
_WORKFLOW_FIELDS = frozenset({
    "is_processed", "processed_at", "is_handled", "claimed_at", "updated_date",
})
_HEADER_RESET_FIELDS = frozenset({"file_status", "is_processed", "process_stage", "updated_date"})


@dataclass
class UpdatePlan:
    """Placeholder-based update description.

    set_parts are "#n0 = :v0" fragments and remove_parts are "#n1" names;
    names maps '#'-placeholders to attribute names and values maps
    ':'-placeholders to TypedValues.
    """

    set_parts: list[str] = field(default_factory=list)
    remove_parts: list[str] = field(default_factory=list)
    names: dict[str, str] = field(default_factory=dict)
    values: dict[str, TypedValue] = field(default_factory=dict)
    updated_fields: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.set_parts and not self.remove_parts

    def add_set(self, name_ph: str, attr: str, value_ph: str, value: TypedValue) -> None:
        self.names[name_ph] = attr
        self.values[value_ph] = value
        self.set_parts.append(f"{name_ph} = {value_ph}")
        self.updated_fields += 1

    def add_remove(self, name_ph: str, attr: str) -> None:
        self.names[name_ph] = attr
        self.remove_parts.append(name_ph)
        self.updated_fields += 1

    def assignments(self) -> dict[str, TypedValue]:
        """SET fragments resolved to {attribute: value}."""
        out: dict[str, TypedValue] = {}
        for part in self.set_parts:
            name_ph, value_ph = (p.strip() for p in part.split("=", 1))
            out[self.names[name_ph]] = self.values[value_ph]
        return out

    def removals(self) -> list[str]:
        return [self.names[ph] for ph in self.remove_parts]

    def expression(self) -> str:
        text = ""
        if self.set_parts:
            text = "SET " + ", ".join(self.set_parts)
        if self.remove_parts:
            text += (" " if text else "") + "REMOVE " + ", ".join(self.remove_parts)
        return text


def _choose_existing_key(variants: list[str] | None) -> str | None:
    # Prefer the spelling that is not all lower case ("Status" over "status").
    if not variants:
        return None
    for v in variants:
        if v != v.lower():
            return v
    return variants[0]


class UpdateDiffBuilder:
    def __init__(self, clock: Callable[[], str] | None = None) -> None:
        self._clock = clock or make_clock()

    def build_update(self, desired: dict[str, Any], current: Item) -> UpdatePlan:
        plan = UpdatePlan()
        by_lower: dict[str, list[str]] = {}
        for key in current:
            by_lower.setdefault(key.lower(), []).append(key)

        idx = 0
        for raw_key, raw_val in desired.items():
            if raw_key == "id" or raw_key.lower() in _WORKFLOW_FIELDS:
                continue
            existing_key = _choose_existing_key(by_lower.get(raw_key.lower()))

            if raw_val is None:
                if existing_key is not None:
                    plan.add_remove(f"#n{idx}", existing_key)
                    idx += 1
                continue

            attr = existing_key or raw_key
            target = encode(raw_val)
            if typed_equal(current.get(attr), target):
                continue
            plan.add_set(f"#n{idx}", attr, f":v{idx}", target)
            idx += 1

        if plan.is_empty:
            return plan

        plan.add_set("#processed_at", "processed_at", ":processedEmpty", TypedValue.string(""))
        plan.add_set("#is_processed", "is_processed", ":zeroProcessed", TypedValue.number(0))
        plan.add_set("#claimed_at", "claimed_at", ":claimedEmpty", TypedValue.string(""))
        plan.add_set("#is_handled", "is_handled", ":zeroHandled", TypedValue.number(0))
        plan.add_set("#updated_date", "updated_date", ":now", TypedValue.string(self._clock()))
        return plan

    def build_header_update(self, desired: dict[str, Any], current: Item) -> UpdatePlan:
        """Header variant: only attributes already on the header are touched."""
        plan = UpdatePlan()
        idx = 0
        for key, raw_val in desired.items():
            if key == "id" or key in _HEADER_RESET_FIELDS:
                continue
            if key not in current or raw_val is None:
                continue
            target = encode(raw_val)
            if typed_equal(current[key], target):
                continue
            plan.add_set(f"#n{idx}", key, f":v{idx}", target)
            idx += 1

        if plan.is_empty:
            return plan

        resets = (
            ("file_status", ":fileStatusEmpty", TypedValue.string("")),
            ("is_processed", ":zeroProcessed", TypedValue.number(0)),
            ("process_stage", ":processStageEmpty",
             TypedValue.string(ProcessStage.UNPROCESSED.value)),
            ("updated_date", ":now", TypedValue.string(self._clock())),
        )
        for attr, value_ph, value in resets:
            if attr in current:
                plan.add_set(f"#{attr}", attr, value_ph, value)
        return plan

    def build_rollback(self, before: dict[str, Any], after: Item) -> UpdatePlan:
        """SET every snapshot field whose stored value has since changed."""
        plan = UpdatePlan()
        idx = 0
        for key, before_val in before.items():
            if key == "id":
                continue
            restored = encode(before_val)
            if typed_equal(after.get(key), restored):
                continue
            plan.add_set(f"#rbn{idx}", key, f":rbv{idx}", restored)
            idx += 1
        return plan


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------

def _load(store: ItemStore, table: str, item_id: str) -> Item:
    current = store.get_item(table, item_id)
    if current is None:
        raise NoRowsFoundError(f"No item '{item_id}' in {table}.")
    return current


def write_plan(store: ItemStore, table: str, item_id: str, plan: UpdatePlan) -> None:
    """Apply plan to an existing item.

    Raises:
        ConditionalCheckFailed: If the item disappeared before the write.
    """
    if plan.is_empty:
        return
    applied = store.update_item(
        table,
        item_id,
        plan.assignments(),
        plan.removals(),
        guard={"id": TypedValue.string(item_id)},
    )
    if not applied:
        raise ConditionalCheckFailed(f"Item '{item_id}' in {table} no longer exists.")
    log.info("updated %s/%s: %s", table, item_id, plan.expression())


def apply_update(
    store: ItemStore,
    table: str,
    item_id: str,
    desired: dict[str, Any],
    builder: UpdateDiffBuilder | None = None,
) -> UpdatePlan:
    """Diff desired against the stored row and write the result.

    Raises:
        NoRowsFoundError: If the row does not exist.
    """
    builder = builder or UpdateDiffBuilder()
    plan = builder.build_update(desired, _load(store, table, item_id))
    write_plan(store, table, item_id, plan)
    return plan


def apply_rollback(
    store: ItemStore,
    table: str,
    item_id: str,
    before: dict[str, Any],
    builder: UpdateDiffBuilder | None = None,
) -> UpdatePlan:
    builder = builder or UpdateDiffBuilder()
    plan = builder.build_rollback(before, _load(store, table, item_id))
    write_plan(store, table, item_id, plan)
    return plan
