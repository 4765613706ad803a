"""Integration tests for PostgresItemStore and claim exclusivity.

Requires pytest-postgresql (ephemeral PostgreSQL instance).
"""

from __future__ import annotations

import threading
from decimal import Decimal

import psycopg

from masterdata_etl.claims import ClaimCoordinator
from masterdata_etl.store import PostgresItemStore
from masterdata_etl.typed_value import TypedValue, encode_item

STAGING = "master_data_staging"


def _row(row_id, **fields):
    return encode_item({"id": row_id, "is_handled": 0, "is_processed": 0, **fields})


class TestTables:
    def test_migrated_tables_exist(self, db_conn):
        conn, _ = db_conn
        store = PostgresItemStore(conn)
        assert store.table_exists(STAGING)
        assert store.table_exists("master_data_header")
        assert not store.table_exists("not_there")

    def test_ensure_table_idempotent(self, db_conn):
        conn, _ = db_conn
        store = PostgresItemStore(conn)
        store.ensure_table("custom_staging")
        store.ensure_table("custom_staging")
        assert store.table_exists("custom_staging")

    def test_ensure_table_creates_containment_index(self, db_conn):
        conn, _ = db_conn
        PostgresItemStore(conn).ensure_table("custom_staging")
        row = conn.execute(
            "SELECT indexdef FROM pg_indexes WHERE tablename = %s AND indexname = %s",
            ("custom_staging", "custom_staging_item_gin"),
        ).fetchone()
        assert row is not None
        assert "jsonb_path_ops" in row[0]


class TestItems:
    def test_put_get_round_trip(self, db_conn):
        conn, _ = db_conn
        store = PostgresItemStore(conn)
        item = encode_item({
            "id": "r1", "n": Decimal("12.50"), "ok": True, "s": "text",
            "m": {"k": [1, None]}, "tags": {"a", "b"}, "nums": {1, 2},
        })
        store.put_item(STAGING, item)
        assert store.get_item(STAGING, "r1") == item
        assert store.get_item(STAGING, "missing") is None

    def test_put_replaces(self, db_conn):
        conn, _ = db_conn
        store = PostgresItemStore(conn)
        store.put_item(STAGING, _row("r1", a="x"))
        store.put_item(STAGING, _row("r1", b="y"))
        stored = store.get_item(STAGING, "r1")
        assert "a" not in stored
        assert stored["b"] == TypedValue.string("y")

    def test_batch_write_all_processed(self, db_conn):
        conn, _ = db_conn
        store = PostgresItemStore(conn)
        unprocessed = store.batch_write_items(STAGING, [_row(f"r{i}", i=i) for i in range(25)])
        assert unprocessed == []
        assert len(store.scan(STAGING)) == 25

    def test_scan_numeric_equality_and_order(self, db_conn):
        conn, _ = db_conn
        store = PostgresItemStore(conn)
        for i in range(5):
            store.put_item(STAGING, _row(f"r{i}", grp="a" if i % 2 == 0 else "b"))
        rows = store.scan(STAGING, {
            "grp": TypedValue.string("a"),
            "is_handled": TypedValue.number(Decimal("0.0")),
        })
        assert [r["id"].value for r in rows] == ["r0", "r2", "r4"]

    def test_visible_to_other_connection(self, db_conn):
        conn, dsn = db_conn
        PostgresItemStore(conn).put_item(STAGING, _row("r1"))
        with psycopg.connect(dsn) as other:
            assert PostgresItemStore(other).get_item(STAGING, "r1") is not None

    def test_attribute_names(self, db_conn):
        conn, _ = db_conn
        store = PostgresItemStore(conn)
        store.put_item(STAGING, _row("a1", Email="a@x"))
        store.put_item(STAGING, _row("a2", Phone="1"))
        assert store.attribute_names(STAGING) == {
            "id", "is_handled", "is_processed", "Email", "Phone",
        }


class TestUpdateItem:
    def test_guard_holds(self, db_conn):
        conn, _ = db_conn
        store = PostgresItemStore(conn)
        store.put_item(STAGING, _row("r1", note="x"))
        applied = store.update_item(
            STAGING, "r1",
            {"is_handled": TypedValue.number(1)},
            ["note"],
            guard={"is_handled": TypedValue.number(0)},
        )
        assert applied is True
        stored = store.get_item(STAGING, "r1")
        assert stored["is_handled"] == TypedValue.number(1)
        assert "note" not in stored

    def test_guard_fails_nothing_written(self, db_conn):
        conn, _ = db_conn
        store = PostgresItemStore(conn)
        store.put_item(STAGING, _row("r1", is_handled=1))
        applied = store.update_item(
            STAGING, "r1", {"x": TypedValue.string("y")},
            guard={"is_handled": TypedValue.number(0)},
        )
        assert applied is False
        assert "x" not in store.get_item(STAGING, "r1")

    def test_missing_row(self, db_conn):
        conn, _ = db_conn
        store = PostgresItemStore(conn)
        assert store.update_item(STAGING, "ghost", {"x": TypedValue.number(1)}) is False


class TestConcurrentClaims:
    def test_two_connections_one_winner(self, db_conn):
        conn, dsn = db_conn
        store = PostgresItemStore(conn)
        for attempt in range(10):
            row_id = f"race{attempt}"
            store.put_item(STAGING, _row(row_id))

            barrier = threading.Barrier(2)
            results: list[bool] = []
            lock = threading.Lock()

            def worker():
                with psycopg.connect(dsn) as worker_conn:
                    coordinator = ClaimCoordinator(PostgresItemStore(worker_conn))
                    barrier.wait()
                    won = coordinator.claim(STAGING, row_id)
                with lock:
                    results.append(won)

            threads = [threading.Thread(target=worker) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert sorted(results) == [False, True]
            assert store.get_item(STAGING, row_id)["is_handled"] == TypedValue.number(1)
