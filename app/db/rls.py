"""Organization isolation for the service-owned PostgreSQL tables.

Encrypted file records and the audit trail carry an ``org_id`` column and are
shared by every tenant, so row level security pins each statement to the org
that ``PostgresTxRunner`` publishes as ``app.current_org``. Catalog row tables
are provisioned per deployment and are not covered here.
"""

from __future__ import annotations

import logging
import re

from app.db.postgres import _import_psycopg
from app.repositories import audit_logs, encrypted_files
from app.repositories.settings import StoreSettings

logger = logging.getLogger(__name__)

ORG_SCOPED_TABLES: tuple[str, ...] = (encrypted_files.TABLE_NAME, audit_logs.TABLE_NAME)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def policy_name(table: str) -> str:
    return f"{table}_org_isolation"


def org_policy_statements(table: str) -> list[str]:
    table = _validate_identifier(table)
    policy = policy_name(table)
    predicate = f"{table}.org_id = current_setting('app.current_org', true)"
    return [
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
        # Without FORCE the table owner, usually the service role, bypasses the policy.
        f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {policy} ON {table}",
        f"CREATE POLICY {policy} ON {table} USING ({predicate}) WITH CHECK ({predicate})",
    ]


_PROTECTED_SQL = """
    SELECT c.relname
    FROM pg_class c
    JOIN pg_policies p ON p.tablename = c.relname AND p.policyname = c.relname || '_org_isolation'
    WHERE c.relname = ANY(%s) AND c.relrowsecurity AND c.relforcerowsecurity
"""


class PostgresRlsManager:
    def __init__(self, dsn: str, *, tables: list[str] | tuple[str, ...] | None = None) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        target_tables = list(ORG_SCOPED_TABLES if tables is None else tables)
        if not target_tables:
            raise ValueError("tables must not be empty")
        self._tables = [_validate_identifier(name) for name in target_tables]

    @property
    def tables(self) -> list[str]:
        return list(self._tables)

    def apply(self) -> list[str]:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for table in self._tables:
                    for statement in org_policy_statements(table):
                        cur.execute(statement)
            conn.commit()
        logger.info("org isolation policies applied tables=%s", ",".join(self._tables))
        return list(self._tables)

    def unprotected_tables(self) -> list[str]:
        """Tables that lack forced RLS or the org isolation policy."""
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(_PROTECTED_SQL, (list(self._tables),))
                protected = {row[0] for row in cur.fetchall() or []}
        return [t for t in self._tables if t not in protected]


def ensure_org_isolation(settings: StoreSettings, *, true_stack: bool) -> list[str]:
    """Apply or verify RLS for a PostgreSQL store at startup.

    ``POSTGRES_APPLY_RLS`` installs the policies. Otherwise the production
    profile refuses to start while any org-scoped table is unprotected.
    Returns the tables the policies were applied to.
    """
    if settings.backend != "postgres":
        return []
    manager = PostgresRlsManager(settings.postgres_dsn)
    if settings.apply_rls:
        return manager.apply()
    if true_stack:
        missing = manager.unprotected_tables()
        if missing:
            raise RuntimeError(
                "org isolation policies missing on " + ",".join(missing) + "; run scripts/apply_postgres_rls.py"
            )
    return []
