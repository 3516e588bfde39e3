from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _setting(env: Mapping[str, str], name: str, default: str = "") -> str:
    return env.get(name, default).strip().lower() or default


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    """Production profile: no in-memory or ephemeral fallbacks allowed."""
    env = os.environ if environ is None else environ
    return _as_bool(env.get("CRUD_REQUIRE_TRUESTACK", "false"))


@dataclass(frozen=True)
class RuntimeProfile:
    """Deployment strictness switch, read once at startup.

    Under the production profile every store the service depends on must be
    shared and durable: row tables, file records and the audit trail live in
    PostgreSQL, ciphertext in S3, jobs go to an external worker, and neither
    the encryption keys nor the JWT secret may fall back to a default.
    """

    true_stack: bool

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RuntimeProfile":
        return cls(true_stack=true_stack_required(environ))

    def violations(self, environ: Mapping[str, str] | None = None) -> list[str]:
        if not self.true_stack:
            return []
        env = os.environ if environ is None else environ
        problems: list[str] = []
        if _setting(env, "CRUD_STORE_BACKEND", "memory") != "postgres":
            problems.append("CRUD_STORE_BACKEND must be postgres")
        if _setting(env, "OBJECT_STORAGE_BACKEND", "local") != "s3":
            problems.append("OBJECT_STORAGE_BACKEND must be s3")
        if not env.get("FILE_ENCRYPTION_KEYS", "").strip():
            problems.append("FILE_ENCRYPTION_KEYS must be set")
        if not env.get("JWT_SHARED_SECRET", "").strip():
            problems.append("JWT_SHARED_SECRET must be set")
        # The queue transport keeps jobs in process memory.
        if _setting(env, "JOB_DISPATCH_TRANSPORT", "queue") != "http":
            problems.append("JOB_DISPATCH_TRANSPORT must be http")
        return problems

    def ensure(self, environ: Mapping[str, str] | None = None) -> None:
        problems = self.violations(environ)
        if problems:
            raise RuntimeError("CRUD_REQUIRE_TRUESTACK=true but " + "; ".join(problems))
        if self.true_stack:
            logger.info("production runtime profile verified")
