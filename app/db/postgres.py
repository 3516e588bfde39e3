from __future__ import annotations

from collections.abc import Callable
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


_ISOLATION_LEVELS = {
    "read_committed": "READ COMMITTED",
    "repeatable_read": "REPEATABLE READ",
    "serializable": "SERIALIZABLE",
}


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with caller session injection.

    The caller's organization and subject are published as transaction-local
    settings so row level security policies can scope every statement.
    """

    def __init__(self, dsn: str, *, statement_timeout_ms: int = 0) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._statement_timeout_ms = max(0, int(statement_timeout_ms))

    def run_in_tx(
        self,
        *,
        org_id: str,
        fn: Callable[[Any], Any],
        subject: str = "",
        isolation: str = "read_committed",
    ) -> Any:
        if not org_id.strip():
            raise ValueError("org_id must not be empty")
        level = _ISOLATION_LEVELS.get(isolation)
        if level is None:
            raise ValueError(f"unsupported isolation level: {isolation}")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"SET TRANSACTION ISOLATION LEVEL {level}")
                cur.execute("SELECT set_config('app.current_org', %s, true)", (org_id,))
                cur.execute("SELECT set_config('app.current_subject', %s, true)", (subject,))
                if self._statement_timeout_ms:
                    cur.execute("SELECT set_config('statement_timeout', %s, true)", (str(self._statement_timeout_ms),))
            result = fn(conn)
            conn.commit()
            return result
