"""Whitelisted read filters.

Only columns declared by the resolved descriptor may appear in filters or
sort clauses; values are always bound as parameters, never concatenated.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from app.column_types import check_value, to_storage
from app.config_registry import SchemaDescriptor
from app.errors import MalformedRequest

OPERATORS: frozenset[str] = frozenset({"eq", "ne", "gt", "gte", "lt", "lte", "in", "is_null", "like"})

_ORDERED_OPERATORS = {"gt", "gte", "lt", "lte"}

_SQL_OPERATORS = {
    "eq": "=",
    "ne": "<>",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}


@dataclass(frozen=True)
class FilterClause:
    column: str
    op: str
    value: Any


@dataclass(frozen=True)
class ReadQuery:
    filters: tuple[FilterClause, ...] = ()
    order_by: tuple[tuple[str, str], ...] = ()
    limit: int | None = None
    offset: int = 0


def _invalid(message: str) -> MalformedRequest:
    return MalformedRequest(message, code="READ_FILTER_INVALID")


def _validate_clause(descriptor: SchemaDescriptor, column: str, op: str, value: Any) -> FilterClause:
    col = descriptor.column(column)
    if col is None:
        raise _invalid(f"filter column is not readable: {column}")
    if op not in OPERATORS:
        raise _invalid(f"unsupported filter operator: {op}")
    if col.type == "json" and op != "is_null":
        raise _invalid(f"json column only supports is_null: {column}")
    if op == "is_null":
        if not isinstance(value, bool):
            raise _invalid(f"is_null expects a boolean: {column}")
        return FilterClause(column=column, op=op, value=value)
    if op == "in":
        if not isinstance(value, list):
            raise _invalid(f"in expects a list: {column}")
        for item in value:
            if item is None or not check_value(col.type, item):
                raise _invalid(f"value does not match column type {col.type}: {column}")
        return FilterClause(column=column, op=op, value=tuple(value))
    if op == "like":
        if col.type not in {"string", "text"} or not isinstance(value, str):
            raise _invalid(f"like requires a string column and pattern: {column}")
        return FilterClause(column=column, op=op, value=value)
    if op in _ORDERED_OPERATORS and col.type in {"boolean", "uuid"}:
        raise _invalid(f"ordered comparison not supported on {col.type}: {column}")
    if value is None or not check_value(col.type, value):
        raise _invalid(f"value does not match column type {col.type}: {column}")
    return FilterClause(column=column, op=op, value=value)


def parse_read_params(
    descriptor: SchemaDescriptor,
    params: Mapping[str, Any] | None,
    *,
    max_limit: int,
) -> ReadQuery:
    """Build a ``ReadQuery`` from request params.

    ``filters`` maps a column to either a plain value (equality) or an
    ``{operator: value}`` object; ``order_by`` is a list of ``[column, "ASC"|"DESC"]``.
    """
    params = dict(params or {})
    unknown = set(params) - {"filters", "order_by", "orderBy", "limit", "offset"}
    if unknown:
        raise _invalid(f"unsupported read params: {sorted(unknown)}")

    raw_filters = params.get("filters") or {}
    if not isinstance(raw_filters, Mapping):
        raise _invalid("filters must be an object")
    clauses: list[FilterClause] = []
    for column, spec in raw_filters.items():
        if isinstance(spec, Mapping):
            if not spec:
                raise _invalid(f"empty operator object for column: {column}")
            for op, value in spec.items():
                clauses.append(_validate_clause(descriptor, str(column), str(op), value))
        elif spec is None:
            clauses.append(_validate_clause(descriptor, str(column), "is_null", True))
        else:
            clauses.append(_validate_clause(descriptor, str(column), "eq", spec))

    raw_order = params.get("order_by", params.get("orderBy"))
    order_by: list[tuple[str, str]] = []
    if raw_order:
        if not isinstance(raw_order, list):
            raise _invalid("order_by must be a list of [column, direction] pairs")
        for item in raw_order:
            if isinstance(item, str):
                column, direction = item, "ASC"
            elif isinstance(item, list) and len(item) == 2:
                column, direction = str(item[0]), str(item[1]).upper()
            else:
                raise _invalid("order_by entries must be [column, direction]")
            if descriptor.column(column) is None:
                raise _invalid(f"order_by column is not readable: {column}")
            if direction not in {"ASC", "DESC"}:
                raise _invalid(f"order_by direction must be ASC or DESC: {direction}")
            order_by.append((column, direction))
    else:
        order_by = list(descriptor.default_order_by)

    limit = params.get("limit")
    if limit is not None:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise _invalid("limit must be a positive integer")
        limit = min(limit, max_limit)
    else:
        limit = max_limit
    offset = params.get("offset", 0)
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise _invalid("offset must be a non-negative integer")

    return ReadQuery(filters=tuple(clauses), order_by=tuple(order_by), limit=limit, offset=offset)


def row_matches(row: Mapping[str, Any], clauses: tuple[FilterClause, ...]) -> bool:
    for clause in clauses:
        actual = row.get(clause.column)
        if clause.op == "is_null":
            if (actual is None) != clause.value:
                return False
            continue
        if actual is None:
            return False
        if clause.op == "eq" and not actual == clause.value:
            return False
        if clause.op == "ne" and actual == clause.value:
            return False
        if clause.op == "in" and actual not in clause.value:
            return False
        if clause.op == "like" and not _like(str(actual), clause.value):
            return False
        if clause.op in _ORDERED_OPERATORS:
            try:
                if clause.op == "gt" and not actual > clause.value:
                    return False
                if clause.op == "gte" and not actual >= clause.value:
                    return False
                if clause.op == "lt" and not actual < clause.value:
                    return False
                if clause.op == "lte" and not actual <= clause.value:
                    return False
            except TypeError:
                return False
    return True


def _like(text: str, pattern: str) -> bool:
    """SQL LIKE with ``%`` and ``_``, case-insensitive like SQLite's default."""
    regex = "".join(".*" if ch == "%" else "." if ch == "_" else re.escape(ch) for ch in pattern)
    return re.fullmatch(regex, text, flags=re.IGNORECASE | re.DOTALL) is not None


def compile_where(
    descriptor: SchemaDescriptor,
    clauses: tuple[FilterClause, ...],
    *,
    placeholder: str,
    encode_values: bool = True,
    like_operator: str = "LIKE",
) -> tuple[str, list[Any]]:
    parts: list[str] = []
    params: list[Any] = []
    for clause in clauses:
        col_type = descriptor.column(clause.column).type  # type: ignore[union-attr]
        name = f'"{clause.column}"'

        def _encode(value: Any) -> Any:
            return to_storage(col_type, value) if encode_values else value

        if clause.op == "is_null":
            parts.append(f"{name} IS NULL" if clause.value else f"{name} IS NOT NULL")
        elif clause.op == "in":
            if not clause.value:
                parts.append("1 = 0")
            else:
                parts.append(f"{name} IN ({', '.join(placeholder for _ in clause.value)})")
                params.extend(_encode(v) for v in clause.value)
        elif clause.op == "like":
            parts.append(f"{name} {like_operator} {placeholder}")
            params.append(clause.value)
        else:
            parts.append(f"{name} {_SQL_OPERATORS[clause.op]} {placeholder}")
            params.append(_encode(clause.value))
    if not parts:
        return "", params
    return " WHERE " + " AND ".join(parts), params


def compile_order_by(order_by: tuple[tuple[str, str], ...], *, natural: str) -> str:
    if not order_by:
        return f" ORDER BY {natural}" if natural else ""
    return " ORDER BY " + ", ".join(f'"{col}" {direction}' for col, direction in order_by)
