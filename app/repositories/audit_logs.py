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

TABLE_NAME = "audit_logs"


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class InMemoryAuditLogsRepository:
    def __init__(self, audit_logs: list[dict[str, Any]] | None = None) -> None:
        self._audit_logs = [] if audit_logs is None else audit_logs
        self._lock = threading.Lock()

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        with self._lock:
            self._audit_logs.append(item)
        return item

    def list_for_org(self, *, org_id: str, action: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._audit_logs)
        return [
            dict(x)
            for x in items
            if x.get("org_id") == org_id and (action is None or x.get("action") == action)
        ]

    def reset(self) -> None:
        with self._lock:
            self._audit_logs.clear()


class SqliteAuditLogsRepository:
    """Append-only audit trail in a local SQLite file, next to the row tables."""

    def __init__(self, db_path: str, *, table_name: str = TABLE_NAME, timeout_s: float = 5.0) -> None:
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table = _validate_identifier(table_name)
        self._timeout_s = timeout_s
        with self._connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                  audit_id TEXT PRIMARY KEY,
                  org_id TEXT NOT NULL,
                  action TEXT,
                  subject TEXT,
                  occurred_at TEXT,
                  payload TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self._db_path), timeout=self._timeout_s)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        with self._connect() as conn:
            conn.execute(
                f"INSERT OR IGNORE INTO {self._table} (audit_id, org_id, action, subject, occurred_at, payload) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                [
                    item["audit_id"],
                    str(item.get("org_id") or "org_unknown"),
                    item.get("action"),
                    item.get("subject"),
                    item.get("occurred_at"),
                    json.dumps(item, ensure_ascii=True, sort_keys=True),
                ],
            )
            conn.commit()
        return item

    def list_for_org(self, *, org_id: str, action: str | None = None) -> list[dict[str, Any]]:
        sql = f"SELECT payload FROM {self._table} WHERE org_id = ?"
        params: list[Any] = [org_id]
        if action is not None:
            sql += " AND action = ?"
            params.append(action)
        sql += " ORDER BY occurred_at ASC, rowid ASC"
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [json.loads(row[0]) for row in rows]

    def reset(self) -> None:
        with self._connect() as conn:
            conn.execute(f"DELETE FROM {self._table}")
            conn.commit()


class PostgresAuditLogsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = TABLE_NAME) -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def append(self, *, log: dict[str, Any]) -> dict[str, Any]:
        item = dict(log)
        org_id = str(item.get("org_id") or "org_unknown")
        sql = f"""
            INSERT INTO {self._table_name} (
                audit_id, org_id, action, subject, occurred_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(audit_id) DO NOTHING
        """

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        item["audit_id"],
                        org_id,
                        item.get("action"),
                        item.get("subject"),
                        item.get("occurred_at"),
                        json.dumps(item, ensure_ascii=True, sort_keys=True),
                    ),
                )
            return item

        return self._tx_runner.run_in_tx(org_id=org_id, subject=str(item.get("subject") or ""), fn=_op)

    def list_for_org(self, *, org_id: str, action: str | None = None) -> list[dict[str, Any]]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE org_id = %s
        """
        params: list[Any] = [org_id]
        if action is not None:
            sql += " AND action = %s"
            params.append(action)
        sql += " ORDER BY occurred_at ASC"

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            out: list[dict[str, Any]] = []
            for row in rows:
                payload = row[0]
                if isinstance(payload, dict):
                    out.append(payload)
            return out

        return self._tx_runner.run_in_tx(org_id=org_id, fn=_op)


def create_audit_logs_repository_from_env(environ: Mapping[str, str] | None = None) -> Any:
    settings = StoreSettings.from_env(environ)
    if settings.backend == "sqlite":
        return SqliteAuditLogsRepository(settings.sqlite_path, timeout_s=settings.timeout_s)
    if settings.backend == "postgres":
        return PostgresAuditLogsRepository(tx_runner=settings.tx_runner())
    return InMemoryAuditLogsRepository()
