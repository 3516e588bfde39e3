"""Bulk upsert against a resolved schema descriptor.

Validation is always batch-atomic: one bad row rejects the batch before any
write. Persistence atomicity depends on the requested mode:

- ``atomic``: every chunk runs inside one transaction; all rows or none.
- ``chunked``: each chunk commits on its own and reports its own outcome.
- ``per_row``: each row commits on its own and failures are listed per row.

Updates only touch the non-key columns present in the row, so columns the
caller left out keep their stored values.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from app.access import authorize_write, require_operation
from app.column_types import check_value
from app.config_registry import ConfigResolver, SchemaDescriptor
from app.errors import ApiError, MalformedRequest, ValidationFailed, store_error_from_exception
from app.idempotency import IdempotencyStore
from app.repositories.rows import INSERTED, RowStore
from app.security import CredentialContext

logger = logging.getLogger(__name__)

UPSERT_MODES: frozenset[str] = frozenset({"atomic", "chunked", "per_row"})


@dataclass(frozen=True)
class EngineConfig:
    default_chunk_size: int = 500
    max_batch_rows: int = 10_000
    read_max_limit: int = 1_000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineConfig":
        env = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            raw = env.get(name, "").strip()
            if not raw:
                return default
            try:
                return max(1, int(raw))
            except ValueError:
                return default

        return cls(
            default_chunk_size=_int("UPSERT_DEFAULT_CHUNK_SIZE", 500),
            max_batch_rows=_int("UPSERT_MAX_BATCH_ROWS", 10_000),
            read_max_limit=_int("READ_MAX_LIMIT", 1_000),
        )


@dataclass
class UpsertResult:
    config_id: str
    mode: str
    inserted: int = 0
    updated: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    chunks: list[dict[str, Any]] = field(default_factory=list)
    replayed: bool = False

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "config_id": self.config_id,
            "mode": self.mode,
            "inserted": self.inserted,
            "updated": self.updated,
            "errors": list(self.errors),
            "chunks": list(self.chunks),
        }


def _violation(row_index: int, column: str | None, code: str, message: str) -> dict[str, Any]:
    return {"row_index": row_index, "column": column, "code": code, "message": message}


def validate_rows(descriptor: SchemaDescriptor, rows: list[Any]) -> list[dict[str, Any]]:
    """Collect every violation in the batch instead of stopping at the first."""
    violations: list[dict[str, Any]] = []
    known = set(descriptor.column_names)
    for index, row in enumerate(rows):
        if not isinstance(row, Mapping):
            violations.append(_violation(index, None, "ROW_NOT_OBJECT", "row must be an object"))
            continue
        for column in row:
            if column not in known:
                violations.append(_violation(index, str(column), "UNKNOWN_COLUMN", "column is not part of the schema"))
        for key in descriptor.key_columns:
            if key not in row:
                violations.append(_violation(index, key, "MISSING_KEY", "key column is required"))
            elif row[key] is None:
                violations.append(_violation(index, key, "NULL_KEY", "key column must not be null"))
        for column, value in row.items():
            col = descriptor.column(str(column))
            if col is None or (value is None and column in descriptor.key_columns):
                continue
            if value is None:
                if not col.nullable:
                    violations.append(_violation(index, col.name, "NULL_NOT_ALLOWED", "column is not nullable"))
                continue
            if not check_value(col.type, value):
                violations.append(_violation(index, col.name, "TYPE_MISMATCH", f"expected {col.type}"))
                continue
            if descriptor.document_types and col.name == "document_type" and value not in descriptor.document_types:
                violations.append(
                    _violation(index, col.name, "DOCUMENT_TYPE_NOT_ALLOWED", "document type not permitted here")
                )
    return violations


def _chunked(rows: list[dict[str, Any]], size: int) -> list[list[dict[str, Any]]]:
    return [rows[i : i + size] for i in range(0, len(rows), size)]


def _cancelled_error() -> ApiError:
    return ApiError(
        code="REQ_CANCELLED",
        message="request cancelled before persistence completed",
        error_class="transient",
        retryable=True,
        http_status=499,
    )


def _error_entry(exc: ApiError, **where: Any) -> dict[str, Any]:
    return {**where, "code": exc.code, "message": exc.message, "retryable": exc.retryable}


class BulkUpsertEngine:
    def __init__(
        self,
        *,
        resolver: ConfigResolver,
        row_store: RowStore,
        config: EngineConfig | None = None,
        idempotency: IdempotencyStore | None = None,
    ) -> None:
        self._resolver = resolver
        self._row_store = row_store
        self._config = config or EngineConfig()
        self._idempotency = idempotency or IdempotencyStore()

    def upsert(
        self,
        config_id: str,
        rows: list[Any],
        credential: CredentialContext,
        *,
        mode: str = "atomic",
        idempotency_key: str | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> UpsertResult:
        descriptor = self._resolver.resolve(config_id)
        authorize_write(descriptor, credential)
        require_operation(descriptor, "upsert")
        if mode not in UPSERT_MODES:
            raise MalformedRequest(f"unsupported upsert mode: {mode}", code="UPSERT_MODE_INVALID")
        if not isinstance(rows, list) or not rows:
            raise MalformedRequest("input_rows must be a non-empty list", code="UPSERT_ROWS_MISSING")
        max_rows = descriptor.max_batch_rows or self._config.max_batch_rows
        if len(rows) > max_rows:
            raise MalformedRequest(
                f"batch of {len(rows)} rows exceeds the limit of {max_rows}",
                code="UPSERT_BATCH_TOO_LARGE",
            )

        violations = validate_rows(descriptor, rows)
        if violations:
            logger.info("upsert rejected config_id=%s violations=%d", config_id, len(violations))
            raise ValidationFailed(violations)

        clean_rows = [dict(r) for r in rows]
        check = should_continue or (lambda: True)

        def _execute() -> dict[str, Any]:
            return self._apply(descriptor, clean_rows, credential, mode=mode, should_continue=check).to_dict()

        if idempotency_key:
            data, replayed = self._idempotency.run(
                scope=f"{credential.org_id}:{config_id}",
                idempotency_key=idempotency_key,
                payload={"mode": mode, "rows": clean_rows},
                execute=_execute,
                should_record=lambda result: bool(result.get("success")),
            )
        else:
            data, replayed = _execute(), False

        result = UpsertResult(
            config_id=config_id,
            mode=data["mode"],
            inserted=data["inserted"],
            updated=data["updated"],
            errors=list(data["errors"]),
            chunks=list(data["chunks"]),
            replayed=replayed,
        )
        logger.info(
            "upsert finished config_id=%s mode=%s inserted=%d updated=%d errors=%d replayed=%s",
            config_id,
            result.mode,
            result.inserted,
            result.updated,
            len(result.errors),
            replayed,
        )
        return result

    def _apply(
        self,
        descriptor: SchemaDescriptor,
        rows: list[dict[str, Any]],
        credential: CredentialContext,
        *,
        mode: str,
        should_continue: Callable[[], bool],
    ) -> UpsertResult:
        chunk_size = descriptor.chunk_size or self._config.default_chunk_size
        chunks = _chunked(rows, chunk_size)
        result = UpsertResult(config_id=descriptor.config_id, mode=mode)
        if mode == "atomic":
            self._apply_atomic(descriptor, chunks, credential, result, should_continue)
        elif mode == "chunked":
            self._apply_chunked(descriptor, chunks, chunk_size, credential, result, should_continue)
        else:
            self._apply_per_row(descriptor, rows, credential, result, should_continue)
        return result

    def _apply_atomic(
        self,
        descriptor: SchemaDescriptor,
        chunks: list[list[dict[str, Any]]],
        credential: CredentialContext,
        result: UpsertResult,
        should_continue: Callable[[], bool],
    ) -> None:
        def _op(writer: Any) -> list[list[str]]:
            outcomes: list[list[str]] = []
            for chunk in chunks:
                if not should_continue():
                    raise _cancelled_error()
                outcomes.append([writer.upsert_row(row) for row in chunk])
            return outcomes

        try:
            outcomes = self._row_store.run_in_transaction(
                descriptor=descriptor,
                org_id=credential.org_id,
                subject=credential.subject,
                fn=_op,
            )
        except ApiError as exc:
            logger.warning("atomic upsert rolled back config_id=%s code=%s", descriptor.config_id, exc.code)
            raise
        except Exception as exc:
            error = store_error_from_exception(exc, operation="bulk upsert")
            logger.warning("atomic upsert rolled back config_id=%s code=%s", descriptor.config_id, error.code)
            raise error from exc
        offset = 0
        for index, outcome in enumerate(outcomes):
            inserted = sum(1 for x in outcome if x == INSERTED)
            result.inserted += inserted
            result.updated += len(outcome) - inserted
            result.chunks.append(
                {
                    "chunk_index": index,
                    "first_row": offset,
                    "rows": len(outcome),
                    "status": "committed",
                    "inserted": inserted,
                    "updated": len(outcome) - inserted,
                }
            )
            offset += len(outcome)

    def _apply_chunked(
        self,
        descriptor: SchemaDescriptor,
        chunks: list[list[dict[str, Any]]],
        chunk_size: int,
        credential: CredentialContext,
        result: UpsertResult,
        should_continue: Callable[[], bool],
    ) -> None:
        abandoned = False
        for index, chunk in enumerate(chunks):
            first_row = index * chunk_size
            entry: dict[str, Any] = {"chunk_index": index, "first_row": first_row, "rows": len(chunk)}
            if abandoned or not should_continue():
                abandoned = True
                entry["status"] = "abandoned"
                result.chunks.append(entry)
                result.errors.append(_error_entry(_cancelled_error(), chunk_index=index, first_row=first_row))
                continue
            try:
                outcome = self._row_store.apply_rows(
                    descriptor=descriptor,
                    rows=chunk,
                    org_id=credential.org_id,
                    subject=credential.subject,
                )
            except Exception as exc:
                error = store_error_from_exception(exc, operation="chunk upsert")
                logger.warning(
                    "upsert chunk failed config_id=%s chunk=%d code=%s", descriptor.config_id, index, error.code
                )
                entry["status"] = "failed"
                result.chunks.append(entry)
                result.errors.append(_error_entry(error, chunk_index=index, first_row=first_row))
                continue
            inserted = sum(1 for x in outcome if x == INSERTED)
            result.inserted += inserted
            result.updated += len(outcome) - inserted
            entry.update(status="committed", inserted=inserted, updated=len(outcome) - inserted)
            result.chunks.append(entry)

    def _apply_per_row(
        self,
        descriptor: SchemaDescriptor,
        rows: list[dict[str, Any]],
        credential: CredentialContext,
        result: UpsertResult,
        should_continue: Callable[[], bool],
    ) -> None:
        for index, row in enumerate(rows):
            if not should_continue():
                result.errors.append(_error_entry(_cancelled_error(), row_index=index))
                continue
            try:
                outcome = self._row_store.apply_rows(
                    descriptor=descriptor,
                    rows=[row],
                    org_id=credential.org_id,
                    subject=credential.subject,
                )
            except Exception as exc:
                error = store_error_from_exception(exc, operation="row upsert")
                result.errors.append(_error_entry(error, row_index=index))
                continue
            if outcome[0] == INSERTED:
                result.inserted += 1
            else:
                result.updated += 1
