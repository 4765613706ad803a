"""Unit test fixtures.

FakeItemStore is an in-memory ItemStore with the same guard semantics as the
PostgreSQL store.  A single lock serializes every call, which is what makes
a guarded update atomic here.
"""

from __future__ import annotations

import threading

import pytest

from masterdata_etl.config import StagingConfig
from masterdata_etl.typed_value import TypedValue, typed_equal

FIXED_NOW = "2025-01-01 12:00:00"


class FakeItemStore:
    def __init__(self, tables=("master_data_staging", "master_data_header")):
        self._lock = threading.Lock()
        self.tables: dict[str, dict[str, dict[str, TypedValue]]] = {t: {} for t in tables}
        self.batch_calls: list[tuple[str, int]] = []
        # Per batch_write_items call: how many trailing items to report unprocessed.
        self.unprocessed_plan: list[int] = []

    def table_exists(self, table):
        return table in self.tables

    def ensure_table(self, table):
        with self._lock:
            self.tables.setdefault(table, {})

    def put_item(self, table, item):
        with self._lock:
            self.tables[table][str(item["id"].value)] = dict(item)

    def get_item(self, table, item_id):
        with self._lock:
            item = self.tables[table].get(item_id)
            return dict(item) if item is not None else None

    def batch_write_items(self, table, items):
        with self._lock:
            self.batch_calls.append((table, len(items)))
            fail = self.unprocessed_plan.pop(0) if self.unprocessed_plan else 0
            fail = min(fail, len(items))
            written, rest = items[: len(items) - fail], items[len(items) - fail:]
            for item in written:
                self.tables[table][str(item["id"].value)] = dict(item)
            return list(rest)

    def update_item(self, table, item_id, set_values, remove_names=(), guard=None):
        with self._lock:
            current = self.tables[table].get(item_id)
            if current is None:
                return False
            for key, expected in (guard or {}).items():
                if not typed_equal(current.get(key), expected):
                    return False
            for name in remove_names:
                current.pop(name, None)
            current.update(set_values)
            return True

    def scan(self, table, equals=None):
        with self._lock:
            return [
                dict(item)
                for item in self.tables[table].values()
                if all(typed_equal(item.get(k), v) for k, v in (equals or {}).items())
            ]

    def attribute_names(self, table):
        with self._lock:
            return {name for item in self.tables[table].values() for name in item}


@pytest.fixture
def store():
    return FakeItemStore()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def config():
    return StagingConfig()
