#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.db.rls import ORG_SCOPED_TABLES, PostgresRlsManager


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Install or verify org isolation policies on the file and audit tables")
    parser.add_argument("--dsn", default=os.getenv("POSTGRES_DSN", ""), help="PostgreSQL DSN")
    parser.add_argument(
        "--tables",
        default="",
        help=f"comma-separated table names; default: {','.join(ORG_SCOPED_TABLES)}",
    )
    parser.add_argument("--check", action="store_true", help="only report tables without the policy; exit 1 if any")
    args = parser.parse_args(argv)

    dsn = str(args.dsn or "").strip()
    if not dsn:
        raise SystemExit("POSTGRES_DSN is required (pass --dsn or set env)")

    tables: list[str] | None = None
    if args.tables.strip():
        tables = [x.strip() for x in args.tables.split(",") if x.strip()]

    manager = PostgresRlsManager(dsn, tables=tables)
    if args.check:
        missing = manager.unprotected_tables()
        print(json.dumps({"unprotected_tables": missing, "count": len(missing)}, ensure_ascii=True, sort_keys=True, indent=2))
        return 1 if missing else 0
    applied = manager.apply()
    print(json.dumps({"applied_tables": applied, "count": len(applied)}, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
