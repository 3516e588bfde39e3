from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, TypeVar

from app.column_types import from_storage, to_storage
from app.config_registry import SchemaDescriptor
from app.db.postgres import PostgresTxRunner
from app.read_filters import ReadQuery, compile_order_by, compile_where, row_matches
from app.repositories.settings import StoreSettings

T = TypeVar("T")

INSERTED = "inserted"
UPDATED = "updated"

_SQLITE_AFFINITY = {
    "string": "TEXT",
    "text": "TEXT",
    "integer": "INTEGER",
    "number": "REAL",
    "boolean": "INTEGER",
    "date": "TEXT",
    "datetime": "TEXT",
    "uuid": "TEXT",
    "json": "TEXT",
}


def _key_of(descriptor: SchemaDescriptor, row: Mapping[str, Any]) -> tuple[Any, ...]:
    return tuple(row[k] for k in descriptor.key_columns)


class RowWriter:
    """Write handle bound to one open transaction."""

    def upsert_row(self, row: Mapping[str, Any]) -> str:
        raise NotImplementedError


class RowStore:
    backend_name = "base"

    def run_in_transaction(
        self,
        *,
        descriptor: SchemaDescriptor,
        org_id: str,
        subject: str,
        fn: Callable[[RowWriter], T],
    ) -> T:
        raise NotImplementedError

    def select(self, *, descriptor: SchemaDescriptor, query: ReadQuery, org_id: str, subject: str) -> Iterator[dict[str, Any]]:
        raise NotImplementedError

    def apply_rows(
        self,
        *,
        descriptor: SchemaDescriptor,
        rows: list[Mapping[str, Any]],
        org_id: str,
        subject: str,
    ) -> list[str]:
        return self.run_in_transaction(
            descriptor=descriptor,
            org_id=org_id,
            subject=subject,
            fn=lambda writer: [writer.upsert_row(row) for row in rows],
        )

    def reset(self) -> None:
        return None


class _InMemoryWriter(RowWriter):
    def __init__(self, descriptor: SchemaDescriptor, table: dict[tuple[Any, ...], dict[str, Any]]) -> None:
        self._descriptor = descriptor
        self._table = table

    def upsert_row(self, row: Mapping[str, Any]) -> str:
        key = _key_of(self._descriptor, row)
        existing = self._table.get(key)
        if existing is None:
            self._table[key] = dict(row)
            return INSERTED
        merged = dict(existing)
        merged.update(row)
        self._table[key] = merged
        return UPDATED


class InMemoryRowStore(RowStore):
    """Tables held in process memory.

    Writers are serialized by a lock and mutate a private copy of the target
    table that replaces the live one only on commit; readers iterate whatever
    table object was live when their read started.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tables: dict[str, dict[tuple[Any, ...], dict[str, Any]]] = {}

    def run_in_transaction(
        self,
        *,
        descriptor: SchemaDescriptor,
        org_id: str,
        subject: str,
        fn: Callable[[RowWriter], T],
    ) -> T:
        with self._lock:
            working = dict(self._tables.get(descriptor.target, {}))
            result = fn(_InMemoryWriter(descriptor, working))
            self._tables[descriptor.target] = working
            return result

    def select(self, *, descriptor: SchemaDescriptor, query: ReadQuery, org_id: str, subject: str) -> Iterator[dict[str, Any]]:
        table = self._tables.get(descriptor.target, {})
        rows: Iterator[dict[str, Any]] | list[dict[str, Any]] = (
            r for r in table.values() if row_matches(r, query.filters)
        )
        if query.order_by:
            ordered = list(rows)
            for column, direction in reversed(query.order_by):
                present = [r for r in ordered if r.get(column) is not None]
                missing = [r for r in ordered if r.get(column) is None]
                present.sort(key=lambda r: r[column], reverse=direction == "DESC")
                ordered = present + missing
            rows = ordered
        end = None if query.limit is None else query.offset + query.limit
        for index, row in enumerate(rows):
            if index < query.offset:
                continue
            if end is not None and index >= end:
                break
            yield {name: row.get(name) for name in descriptor.column_names}

    def reset(self) -> None:
        with self._lock:
            self._tables = {}


class _SqliteWriter(RowWriter):
    def __init__(self, descriptor: SchemaDescriptor, conn: sqlite3.Connection) -> None:
        self._descriptor = descriptor
        self._conn = conn

    def upsert_row(self, row: Mapping[str, Any]) -> str:
        d = self._descriptor
        key_sql = " AND ".join(f'"{k}" = ?' for k in d.key_columns)
        key_params = [to_storage(d.column(k).type, row[k]) for k in d.key_columns]  # type: ignore[union-attr]
        exists = self._conn.execute(f'SELECT 1 FROM "{d.target}" WHERE {key_sql} LIMIT 1', key_params).fetchone()
        present = [name for name in d.column_names if name in row]
        if exists is None:
            cols = ", ".join(f'"{c}"' for c in present)
            marks = ", ".join("?" for _ in present)
            values = [to_storage(d.column(c).type, row[c]) for c in present]  # type: ignore[union-attr]
            self._conn.execute(f'INSERT INTO "{d.target}" ({cols}) VALUES ({marks})', values)
            return INSERTED
        updates = [c for c in present if c not in d.key_columns]
        if updates:
            set_sql = ", ".join(f'"{c}" = ?' for c in updates)
            values = [to_storage(d.column(c).type, row[c]) for c in updates]  # type: ignore[union-attr]
            self._conn.execute(f'UPDATE "{d.target}" SET {set_sql} WHERE {key_sql}', values + key_params)
        return UPDATED


class SqliteRowStore(RowStore):
    """SQLite-backed tables, created on first use from the descriptor.

    Write transactions start with ``BEGIN IMMEDIATE`` so two upserts on the
    same key are serialized by the database write lock.
    """

    backend_name = "sqlite"

    def __init__(self, db_path: str, *, timeout_s: float = 5.0) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout_s = timeout_s
        self._ensured: dict[str, tuple[str, ...]] = {}
        self._ensure_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=self._timeout_s, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table(self, descriptor: SchemaDescriptor) -> None:
        if self._ensured.get(descriptor.target) == descriptor.column_names:
            return
        with self._ensure_lock:
            conn = self._connect()
            try:
                col_sql = ", ".join(
                    f'"{c.name}" {_SQLITE_AFFINITY[c.type]}' for c in descriptor.columns
                )
                pk_sql = ", ".join(f'"{k}"' for k in descriptor.key_columns)
                conn.execute(f'CREATE TABLE IF NOT EXISTS "{descriptor.target}" ({col_sql}, PRIMARY KEY ({pk_sql}))')
                existing = {r["name"] for r in conn.execute(f'PRAGMA table_info("{descriptor.target}")')}
                for col in descriptor.columns:
                    if col.name not in existing:
                        conn.execute(
                            f'ALTER TABLE "{descriptor.target}" ADD COLUMN "{col.name}" {_SQLITE_AFFINITY[col.type]}'
                        )
            finally:
                conn.close()
            self._ensured[descriptor.target] = descriptor.column_names

    def run_in_transaction(
        self,
        *,
        descriptor: SchemaDescriptor,
        org_id: str,
        subject: str,
        fn: Callable[[RowWriter], T],
    ) -> T:
        self._ensure_table(descriptor)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = fn(_SqliteWriter(descriptor, conn))
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result
        finally:
            conn.close()

    def select(self, *, descriptor: SchemaDescriptor, query: ReadQuery, org_id: str, subject: str) -> Iterator[dict[str, Any]]:
        self._ensure_table(descriptor)
        cols = ", ".join(f'"{c}"' for c in descriptor.column_names)
        where_sql, params = compile_where(descriptor, query.filters, placeholder="?")
        order_sql = compile_order_by(query.order_by, natural="rowid")
        sql = f'SELECT {cols} FROM "{descriptor.target}"{where_sql}{order_sql}'
        if query.limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([query.limit, query.offset])
        elif query.offset:
            sql += " LIMIT -1 OFFSET ?"
            params.append(query.offset)
        conn = self._connect()
        try:
            for record in conn.execute(sql, params):
                yield {c.name: from_storage(c.type, record[c.name]) for c in descriptor.columns}
        finally:
            conn.close()

    def reset(self) -> None:
        conn = self._connect()
        try:
            for target in list(self._ensured):
                conn.execute(f'DROP TABLE IF EXISTS "{target}"')
        finally:
            conn.close()
        self._ensured = {}


class _PostgresWriter(RowWriter):
    def __init__(self, descriptor: SchemaDescriptor, conn: Any) -> None:
        self._descriptor = descriptor
        self._conn = conn

    def upsert_row(self, row: Mapping[str, Any]) -> str:
        d = self._descriptor
        present = [name for name in d.column_names if name in row]
        cols = ", ".join(f'"{c}"' for c in present)
        marks = ", ".join("%s::jsonb" if d.column(c).type == "json" else "%s" for c in present)  # type: ignore[union-attr]
        conflict = ", ".join(f'"{k}"' for k in d.key_columns)
        updates = [c for c in present if c not in d.key_columns]
        if updates:
            action = "DO UPDATE SET " + ", ".join(f'"{c}" = EXCLUDED."{c}"' for c in updates)
        else:
            # A no-op assignment still locks the row and reports it via RETURNING.
            first_key = d.key_columns[0]
            action = f'DO UPDATE SET "{first_key}" = EXCLUDED."{first_key}"'
        sql = (
            f'INSERT INTO "{d.target}" ({cols}) VALUES ({marks}) '
            f"ON CONFLICT ({conflict}) {action} RETURNING (xmax = 0) AS inserted"
        )
        values = [
            json.dumps(row[c], ensure_ascii=True, sort_keys=True) if d.column(c).type == "json" and row[c] is not None else row[c]  # type: ignore[union-attr]
            for c in present
        ]
        with self._conn.cursor() as cur:
            cur.execute(sql, values)
            result = cur.fetchone()
        return INSERTED if result and result[0] else UPDATED


class PostgresRowStore(RowStore):
    """PostgreSQL tables provisioned out of band, written under SERIALIZABLE isolation."""

    backend_name = "postgres"

    def __init__(self, *, tx_runner: PostgresTxRunner) -> None:
        self._tx_runner = tx_runner

    def run_in_transaction(
        self,
        *,
        descriptor: SchemaDescriptor,
        org_id: str,
        subject: str,
        fn: Callable[[RowWriter], T],
    ) -> T:
        return self._tx_runner.run_in_tx(
            org_id=org_id,
            subject=subject,
            isolation="serializable",
            fn=lambda conn: fn(_PostgresWriter(descriptor, conn)),
        )

    def select(self, *, descriptor: SchemaDescriptor, query: ReadQuery, org_id: str, subject: str) -> Iterator[dict[str, Any]]:
        cols = ", ".join(f'"{c}"' for c in descriptor.column_names)
        where_sql, params = compile_where(
            descriptor,
            query.filters,
            placeholder="%s",
            encode_values=False,
            like_operator="ILIKE",
        )
        order_sql = compile_order_by(query.order_by, natural="")
        sql = f'SELECT {cols} FROM "{descriptor.target}"{where_sql}{order_sql}'
        if query.limit is not None:
            sql += " LIMIT %s"
            params.append(query.limit)
        if query.offset:
            sql += " OFFSET %s"
            params.append(query.offset)

        def _op(conn: Any) -> list[tuple[Any, ...]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.fetchall() or []

        records = self._tx_runner.run_in_tx(org_id=org_id, subject=subject, fn=_op)
        for record in records:
            yield {c.name: record[i] for i, c in enumerate(descriptor.columns)}


def create_row_store_from_env(environ: Mapping[str, str] | None = None) -> RowStore:
    settings = StoreSettings.from_env(environ)
    if settings.backend == "sqlite":
        return SqliteRowStore(settings.sqlite_path, timeout_s=settings.timeout_s)
    if settings.backend == "postgres":
        return PostgresRowStore(tx_runner=settings.tx_runner())
    return InMemoryRowStore()
