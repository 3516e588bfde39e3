from __future__ import annotations

import csv
import io
import json
from typing import Any

from app.column_types import coerce_text
from app.config_registry import SchemaDescriptor
from app.errors import MalformedRequest, ValidationFailed


def rows_from_csv(descriptor: SchemaDescriptor, content: bytes) -> list[dict[str, Any]]:
    """Parse a CSV upload whose header row names the columns.

    Cells are coerced to each column's type; blank cells become null. Unknown
    headers are passed through untouched so row validation reports them.
    """
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise MalformedRequest("csv file must be UTF-8 encoded", code="CSV_INVALID") from exc
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise MalformedRequest("csv file has no header row", code="CSV_INVALID")

    rows: list[dict[str, Any]] = []
    violations: list[dict[str, Any]] = []
    try:
        for index, record in enumerate(reader):
            row: dict[str, Any] = {}
            for header, cell in record.items():
                if header is None:
                    violations.append(
                        {"row_index": index, "column": None, "code": "CSV_EXTRA_CELLS", "message": "more cells than headers"}
                    )
                    continue
                name = header.strip()
                col = descriptor.column(name)
                if col is None:
                    row[name] = cell
                    continue
                try:
                    row[name] = coerce_text(col.type, cell or "")
                except (ValueError, json.JSONDecodeError):
                    violations.append(
                        {"row_index": index, "column": name, "code": "TYPE_MISMATCH", "message": f"expected {col.type}"}
                    )
            rows.append(row)
    except csv.Error as exc:
        raise MalformedRequest(f"csv file could not be parsed: {exc}", code="CSV_INVALID") from exc
    if violations:
        raise ValidationFailed(violations)
    return rows
