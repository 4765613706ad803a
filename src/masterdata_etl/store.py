"""masterdata_etl.store

Schema-less item store on PostgreSQL.

Every logical table is a physical table

    id    text PRIMARY KEY
    seq   bigserial          -- insertion order, used by scan()
    item  jsonb NOT NULL      -- the whole record, in TypedValue wire form

so staging rows can carry arbitrary columns.  Equality predicates are
expressed as jsonb containment (item @> '{"is_handled": {"N": "0"}}'); since
numbers are stored in canonical text this is numeric equality.

Conditional updates are a single UPDATE ... WHERE id = %s AND item @> guard,
which PostgreSQL re-evaluates after acquiring the row lock.  Two concurrent
writers guarded on the same flag therefore cannot both succeed.

The caller owns the connection; each public method runs inside
conn.transaction(), which commits on exit when the connection is not already
in a transaction block and becomes a savepoint otherwise.
"""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

import psycopg
from psycopg import errors, sql
from psycopg.types.json import Jsonb

from masterdata_etl.typed_value import TypedValue, item_from_wire, item_to_wire, to_wire

log = logging.getLogger(__name__)

Item = dict[str, TypedValue]

# Errors a retry can reasonably cure: lock contention and cancellation.
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    errors.LockNotAvailable,
    errors.DeadlockDetected,
    errors.SerializationFailure,
    errors.QueryCanceled,
)


class ItemStore(Protocol):
    """Capability set consumed by the staging engine."""

    def table_exists(self, table: str) -> bool: ...

    def ensure_table(self, table: str) -> None: ...

    def put_item(self, table: str, item: Item) -> None: ...

    def get_item(self, table: str, item_id: str) -> Item | None: ...

    def batch_write_items(self, table: str, items: list[Item]) -> list[Item]: ...

    def update_item(
        self,
        table: str,
        item_id: str,
        set_values: dict[str, TypedValue],
        remove_names: Iterable[str] = (),
        guard: dict[str, TypedValue] | None = None,
    ) -> bool: ...

    def scan(self, table: str, equals: dict[str, TypedValue] | None = None) -> list[Item]: ...

    def attribute_names(self, table: str) -> set[str]: ...


def _item_id(item: Item) -> str:
    tv = item.get("id")
    if tv is None or tv.is_null:
        raise ValueError("item has no 'id' attribute")
    return str(tv.value)


def _guard_json(guard: dict[str, TypedValue] | None) -> Jsonb:
    return Jsonb({k: to_wire(v) for k, v in (guard or {}).items()})


class PostgresItemStore:
    """ItemStore backed by one psycopg connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    @property
    def conn(self) -> psycopg.Connection:
        return self._conn

    # -- DDL ---------------------------------------------------------------

    def table_exists(self, table: str) -> bool:
        with self._conn.transaction():
            row = self._conn.execute("SELECT to_regclass(%s)", (table,)).fetchone()
        return row is not None and row[0] is not None

    def ensure_table(self, table: str) -> None:
        """Create table and its containment index, as in migrations/0001."""
        with self._conn.transaction():
            self._conn.execute(
                sql.SQL(
                    "CREATE TABLE IF NOT EXISTS {} "
                    "(id text PRIMARY KEY, seq bigserial, item jsonb NOT NULL)"
                ).format(sql.Identifier(table))
            )
            self._conn.execute(
                sql.SQL(
                    "CREATE INDEX IF NOT EXISTS {} ON {} USING gin (item jsonb_path_ops)"
                ).format(sql.Identifier(f"{table}_item_gin"), sql.Identifier(table))
            )

    # -- single item -------------------------------------------------------

    def put_item(self, table: str, item: Item) -> None:
        with self._conn.transaction():
            self._upsert(table, item)

    def get_item(self, table: str, item_id: str) -> Item | None:
        with self._conn.transaction():
            row = self._conn.execute(
                sql.SQL("SELECT item FROM {} WHERE id = %s").format(sql.Identifier(table)),
                (item_id,),
            ).fetchone()
        return item_from_wire(row[0]) if row else None

    def update_item(
        self,
        table: str,
        item_id: str,
        set_values: dict[str, TypedValue],
        remove_names: Iterable[str] = (),
        guard: dict[str, TypedValue] | None = None,
    ) -> bool:
        """Apply SET/REMOVE to one item if it exists and the guard holds.

        Returns False when the row is missing or the guard fails; nothing is
        written in that case.
        """
        removals = list(remove_names)
        patch = Jsonb({k: to_wire(v) for k, v in set_values.items()})
        with self._conn.transaction():
            cur = self._conn.execute(
                sql.SQL(
                    "UPDATE {} SET item = (item - %s::text[]) || %s "
                    "WHERE id = %s AND item @> %s"
                ).format(sql.Identifier(table)),
                (removals, patch, item_id, _guard_json(guard)),
            )
            applied = cur.rowcount == 1
        if not applied:
            log.debug("guarded update not applied table=%s id=%s", table, item_id)
        return applied

    # -- multi item --------------------------------------------------------

    def batch_write_items(self, table: str, items: list[Item]) -> list[Item]:
        """Put every item, each under its own savepoint.

        Items that hit a transient error are returned as unprocessed; any
        other error aborts the batch.
        """
        unprocessed: list[Item] = []
        with self._conn.transaction():
            for item in items:
                try:
                    with self._conn.transaction():
                        self._upsert(table, item)
                except TRANSIENT_ERRORS as exc:
                    log.warning(
                        "batch item deferred table=%s id=%s: %s",
                        table, _item_id(item), exc,
                    )
                    unprocessed.append(item)
        return unprocessed

    def scan(self, table: str, equals: dict[str, TypedValue] | None = None) -> list[Item]:
        with self._conn.transaction():
            rows = self._conn.execute(
                sql.SQL("SELECT item FROM {} WHERE item @> %s ORDER BY seq").format(
                    sql.Identifier(table)
                ),
                (_guard_json(equals),),
            ).fetchall()
        return [item_from_wire(r[0]) for r in rows]

    def attribute_names(self, table: str) -> set[str]:
        """Every attribute name used by any item of table."""
        with self._conn.transaction():
            rows = self._conn.execute(
                sql.SQL("SELECT DISTINCT jsonb_object_keys(item) FROM {}").format(
                    sql.Identifier(table)
                )
            ).fetchall()
        return {r[0] for r in rows}

    def _upsert(self, table: str, item: Item) -> None:
        self._conn.execute(
            sql.SQL(
                "INSERT INTO {} (id, item) VALUES (%s, %s) "
                "ON CONFLICT (id) DO UPDATE SET item = EXCLUDED.item"
            ).format(sql.Identifier(table)),
            (_item_id(item), Jsonb(item_to_wire(item))),
        )
