from __future__ import annotations

import json
import re
import sqlite3
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from app.db.postgres import PostgresTxRunner
from app.repositories.settings import StoreSettings

TABLE_NAME = "encrypted_files"


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


_FIELDS = (
    "file_id",
    "org_id",
    "owner_id",
    "document_type",
    "filename",
    "content_type",
    "size_bytes",
    "storage_uri",
    "encryption",
    "created_at",
)


def _matches_scope(record: Mapping[str, Any], *, org_id: str, owner_id: str | None) -> bool:
    if record.get("org_id") != org_id:
        return False
    return owner_id is None or record.get("owner_id") == owner_id


class InMemoryEncryptedFilesRepository:
    """File metadata only; ciphertext lives in object storage."""

    def __init__(self, records: dict[str, dict[str, Any]] | None = None) -> None:
        self._records = {} if records is None else records
        self._lock = threading.Lock()

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = {k: record.get(k) for k in _FIELDS}
        with self._lock:
            self._records[str(item["file_id"])] = item
        return dict(item)

    def list_for_scope(self, *, org_id: str, document_type: str, owner_id: str | None) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._records.values())
        return [
            dict(x)
            for x in items
            if x.get("document_type") == document_type and _matches_scope(x, org_id=org_id, owner_id=owner_id)
        ]

    def delete(self, *, file_id: str, org_id: str) -> bool:
        with self._lock:
            item = self._records.get(file_id)
            if item is None or item.get("org_id") != org_id:
                return False
            del self._records[file_id]
            return True

    def reset(self) -> None:
        with self._lock:
            self._records.clear()


class SqliteEncryptedFilesRepository:
    def __init__(self, db_path: str, *, table_name: str = TABLE_NAME, timeout_s: float = 5.0) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table = _validate_identifier(table_name)
        self._timeout_s = timeout_s
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                  file_id TEXT PRIMARY KEY,
                  org_id TEXT NOT NULL,
                  owner_id TEXT NOT NULL,
                  document_type TEXT NOT NULL,
                  filename TEXT NOT NULL,
                  content_type TEXT NOT NULL,
                  size_bytes INTEGER NOT NULL,
                  storage_uri TEXT NOT NULL,
                  encryption TEXT NOT NULL,
                  created_at TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path), timeout=self._timeout_s)

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = {k: record.get(k) for k in _FIELDS}
        values = [json.dumps(item[k], sort_keys=True) if k == "encryption" else item[k] for k in _FIELDS]
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO {self._table} ({', '.join(_FIELDS)}) VALUES ({', '.join('?' for _ in _FIELDS)})",
                values,
            )
            conn.commit()
        return item

    def list_for_scope(self, *, org_id: str, document_type: str, owner_id: str | None) -> list[dict[str, Any]]:
        sql = f"SELECT {', '.join(_FIELDS)} FROM {self._table} WHERE org_id = ? AND document_type = ?"
        params: list[Any] = [org_id, document_type]
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        sql += " ORDER BY created_at ASC, rowid ASC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        out: list[dict[str, Any]] = []
        for row in rows:
            item = dict(zip(_FIELDS, row))
            item["encryption"] = json.loads(item["encryption"])
            out.append(item)
        return out

    def delete(self, *, file_id: str, org_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(f"DELETE FROM {self._table} WHERE file_id = ? AND org_id = ?", [file_id, org_id])
            conn.commit()
        return cur.rowcount > 0

    def reset(self) -> None:
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {self._table}")
            conn.commit()


class PostgresEncryptedFilesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = TABLE_NAME) -> None:
        self._tx_runner = tx_runner
        self._table = _validate_identifier(table_name)

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        item = {k: record.get(k) for k in _FIELDS}
        sql = f"""
            INSERT INTO {self._table} ({', '.join(_FIELDS)})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s)
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    [json.dumps(item[k], sort_keys=True) if k == "encryption" else item[k] for k in _FIELDS],
                )
            return item

        return self._tx_runner.run_in_tx(org_id=str(item["org_id"]), subject=str(item["owner_id"]), fn=_op)

    def list_for_scope(self, *, org_id: str, document_type: str, owner_id: str | None) -> list[dict[str, Any]]:
        sql = f"SELECT {', '.join(_FIELDS)} FROM {self._table} WHERE org_id = %s AND document_type = %s"
        params: list[Any] = [org_id, document_type]
        if owner_id is not None:
            sql += " AND owner_id = %s"
            params.append(owner_id)
        sql += " ORDER BY created_at ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            out: list[dict[str, Any]] = []
            for row in rows:
                item = dict(zip(_FIELDS, row))
                if isinstance(item["encryption"], str):
                    item["encryption"] = json.loads(item["encryption"])
                out.append(item)
            return out

        return self._tx_runner.run_in_tx(org_id=org_id, subject=owner_id or "", fn=_op)

    def delete(self, *, file_id: str, org_id: str) -> bool:
        sql = f"DELETE FROM {self._table} WHERE file_id = %s AND org_id = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, [file_id, org_id])
                return bool(cur.rowcount)

        return self._tx_runner.run_in_tx(org_id=org_id, fn=_op)


def create_encrypted_files_repository_from_env(environ: Mapping[str, str] | None = None) -> Any:
    settings = StoreSettings.from_env(environ)
    if settings.backend == "sqlite":
        return SqliteEncryptedFilesRepository(settings.sqlite_path, timeout_s=settings.timeout_s)
    if settings.backend == "postgres":
        return PostgresEncryptedFilesRepository(tx_runner=settings.tx_runner())
    return InMemoryEncryptedFilesRepository()
