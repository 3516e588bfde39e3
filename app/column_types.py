"""Semantic column types: value checks, CSV coercion and storage encoding."""

from __future__ import annotations

import json
import uuid
from datetime import date, datetime
from typing import Any

COLUMN_TYPES: frozenset[str] = frozenset(
    {
        "string",
        "text",
        "integer",
        "number",
        "boolean",
        "date",
        "datetime",
        "uuid",
        "json",
    }
)

_TRUE_WORDS = {"1", "true", "yes", "y", "on"}
_FALSE_WORDS = {"0", "false", "no", "n", "off"}


def _is_iso_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def _is_iso_datetime(value: str) -> bool:
    raw = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        datetime.fromisoformat(raw)
    except ValueError:
        return False
    return True


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def check_value(column_type: str, value: Any) -> bool:
    """Return True when ``value`` (not None) is acceptable for ``column_type``."""
    if column_type in {"string", "text"}:
        return isinstance(value, str)
    if column_type == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if column_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if column_type == "boolean":
        return isinstance(value, bool)
    if column_type == "date":
        return isinstance(value, str) and _is_iso_date(value)
    if column_type == "datetime":
        return isinstance(value, str) and _is_iso_datetime(value)
    if column_type == "uuid":
        return isinstance(value, str) and _is_uuid(value)
    if column_type == "json":
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            return False
        return True
    return False


def coerce_text(column_type: str, raw: str) -> Any:
    """Convert one CSV cell to the column's Python value. Empty cells become None."""
    text = raw.strip()
    if text == "":
        return None
    if column_type in {"string", "text", "date", "datetime", "uuid"}:
        return text
    if column_type == "integer":
        return int(text)
    if column_type == "number":
        number = float(text)
        return int(number) if number.is_integer() and "." not in text and "e" not in text.lower() else number
    if column_type == "boolean":
        lowered = text.lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if column_type == "json":
        return json.loads(text)
    raise ValueError(f"unsupported column type: {column_type}")


def to_storage(column_type: str, value: Any) -> Any:
    if value is None:
        return None
    if column_type == "json":
        return json.dumps(value, ensure_ascii=True, sort_keys=True)
    if column_type == "boolean":
        return 1 if value else 0
    return value


def from_storage(column_type: str, value: Any) -> Any:
    if value is None:
        return None
    if column_type == "json" and isinstance(value, str):
        return json.loads(value)
    if column_type == "boolean":
        return bool(value)
    return value
