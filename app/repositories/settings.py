from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from app.db.postgres import PostgresTxRunner

STORE_BACKENDS = ("memory", "sqlite", "postgres")


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class StoreSettings:
    """Backend selection shared by every repository factory.

    Row tables, encrypted file records and the audit trail always land on the
    same backend, so one environment read decides all three.
    """

    backend: str
    sqlite_path: str
    postgres_dsn: str
    timeout_s: float
    apply_rls: bool

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "StoreSettings":
        env = os.environ if environ is None else environ
        backend = env.get("CRUD_STORE_BACKEND", "memory").strip().lower() or "memory"
        if backend not in STORE_BACKENDS:
            raise ValueError(f"unsupported CRUD_STORE_BACKEND: {backend}")
        try:
            timeout_s = float(env.get("STORE_TIMEOUT_S", "5") or "5")
        except ValueError as exc:
            raise ValueError("STORE_TIMEOUT_S must be a number of seconds") from exc
        if timeout_s <= 0:
            raise ValueError("STORE_TIMEOUT_S must be positive")
        return cls(
            backend=backend,
            sqlite_path=env.get("CRUD_STORE_SQLITE_PATH", ".local/crud-rows.sqlite3").strip() or ".local/crud-rows.sqlite3",
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
            timeout_s=timeout_s,
            apply_rls=_as_bool(env.get("POSTGRES_APPLY_RLS", "false")),
        )

    @property
    def statement_timeout_ms(self) -> int:
        return int(self.timeout_s * 1000)

    def tx_runner(self) -> PostgresTxRunner:
        if not self.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when CRUD_STORE_BACKEND=postgres")
        return PostgresTxRunner(self.postgres_dsn, statement_timeout_ms=self.statement_timeout_ms)
