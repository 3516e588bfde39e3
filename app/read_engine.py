from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Any

from app.access import authorize_read, permitted_document_types, require_operation
from app.config_registry import ConfigResolver, DocumentTypeRegistry, SchemaDescriptor
from app.errors import ApiError, QueryFailed, Timeout, store_error_from_exception
from app.read_filters import ReadQuery, parse_read_params, row_matches
from app.repositories.rows import RowStore
from app.security import CredentialContext

logger = logging.getLogger(__name__)


class ReadEngine:
    def __init__(
        self,
        *,
        resolver: ConfigResolver,
        row_store: RowStore,
        document_types: DocumentTypeRegistry,
        max_limit: int = 1000,
    ) -> None:
        self._resolver = resolver
        self._row_store = row_store
        self._document_types = document_types
        self._max_limit = max_limit

    def read(
        self,
        config_id: str,
        params: Mapping[str, Any] | None,
        credential: CredentialContext,
    ) -> Iterator[dict[str, Any]]:
        """Resolve, authorize and validate eagerly; fetch rows lazily.

        Store failures raised while iterating surface as ``QueryFailed`` (or
        ``Timeout``), never as a silently shortened result.
        """
        descriptor = self._resolver.resolve(config_id)
        authorize_read(descriptor, credential)
        require_operation(descriptor, "read")
        query = parse_read_params(descriptor, params, max_limit=self._max_limit)
        if descriptor.kind == "document_types":
            return self._document_type_rows(descriptor, query, credential)
        return self._table_rows(descriptor, query, credential)

    def _table_rows(
        self,
        descriptor: SchemaDescriptor,
        query: ReadQuery,
        credential: CredentialContext,
    ) -> Iterator[dict[str, Any]]:
        try:
            yield from self._row_store.select(
                descriptor=descriptor,
                query=query,
                org_id=credential.org_id,
                subject=credential.subject,
            )
        except Exception as exc:
            error = store_error_from_exception(exc, operation="read")
            logger.warning("read failed config_id=%s code=%s", descriptor.config_id, error.code)
            if isinstance(exc, ApiError):
                raise
            if isinstance(error, Timeout):
                raise error from exc
            raise QueryFailed(f"read failed: {type(exc).__name__}") from exc

    def _document_type_rows(
        self,
        descriptor: SchemaDescriptor,
        query: ReadQuery,
        credential: CredentialContext,
    ) -> Iterator[dict[str, Any]]:
        allowed = permitted_document_types(credential, self._document_types)
        if descriptor.document_types:
            allowed &= set(descriptor.document_types)
        rows = []
        for rule in self._document_types.all():
            if rule.document_type not in allowed:
                continue
            row = {
                "document_type": rule.document_type,
                "label": rule.label,
                "visibility": rule.visibility,
                "max_size_bytes": rule.max_size_bytes,
            }
            row = {name: row.get(name) for name in descriptor.column_names}
            if row_matches(row, query.filters):
                rows.append(row)
        for column, direction in reversed(query.order_by):
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column) or ""), reverse=direction == "DESC")
        end = None if query.limit is None else query.offset + query.limit
        yield from rows[query.offset : end]
