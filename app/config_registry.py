"""Configuration catalog: config identifiers and document types.

The catalog is a closed, typed mapping loaded from one JSON document at
startup. Lookups never reflect over arbitrary structures; an identifier either
names a validated ``SchemaDescriptor`` or it does not exist.

Reloading builds a complete new snapshot off to the side and swaps it in with
a single reference assignment, so concurrent readers see either the old or
the new mapping and never a mix.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from jsonschema import ValidationError, validate

from app.column_types import COLUMN_TYPES
from app.errors import ConfigDisabled, UnknownConfig

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent / "catalog" / "default_catalog.json"

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

CATALOG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["configs"],
    "properties": {
        "version": {"type": "string"},
        "configs": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["config_id", "target", "columns", "key_columns"],
                "properties": {
                    "config_id": {"type": "string", "minLength": 1},
                    "kind": {"enum": ["table", "document_types"]},
                    "target": {"type": "string", "minLength": 1},
                    "enabled": {"type": "boolean"},
                    "operations": {
                        "type": "array",
                        "items": {"enum": ["read", "upsert", "function"]},
                    },
                    "columns": {
                        "type": "array",
                        "minItems": 1,
                        "items": {
                            "type": "object",
                            "required": ["name", "type"],
                            "properties": {
                                "name": {"type": "string"},
                                "type": {"enum": sorted(COLUMN_TYPES)},
                                "nullable": {"type": "boolean"},
                            },
                            "additionalProperties": False,
                        },
                    },
                    "key_columns": {"type": "array", "minItems": 1, "items": {"type": "string"}},
                    "document_types": {"type": "array", "items": {"type": "string"}},
                    "read_roles": {"type": "array", "items": {"type": "string"}},
                    "write_roles": {"type": "array", "items": {"type": "string"}},
                    "default_order_by": {
                        "type": "array",
                        "items": {
                            "type": "array",
                            "minItems": 2,
                            "maxItems": 2,
                            "items": {"type": "string"},
                        },
                    },
                    "max_batch_rows": {"type": "integer", "minimum": 1},
                    "chunk_size": {"type": "integer", "minimum": 1},
                    "function": {"type": "string"},
                    "function_options": {"type": "object"},
                },
                "additionalProperties": False,
            },
        },
        "document_types": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["document_type"],
                "properties": {
                    "document_type": {"type": "string", "minLength": 1},
                    "label": {"type": "string"},
                    "roles": {"type": "array", "items": {"type": "string"}},
                    "visibility": {"enum": ["owner", "organization"]},
                    "max_size_bytes": {"type": "integer", "minimum": 1},
                    "allowed_content_types": {"type": "array", "items": {"type": "string"}},
                    "config_ids": {"type": "array", "items": {"type": "string"}},
                },
                "additionalProperties": False,
            },
        },
    },
}


class CatalogError(ValueError):
    """Raised when a catalog document is structurally or semantically invalid."""


@dataclass(frozen=True)
class ColumnDef:
    name: str
    type: str
    nullable: bool = True


@dataclass(frozen=True)
class SchemaDescriptor:
    config_id: str
    target: str
    columns: tuple[ColumnDef, ...]
    key_columns: tuple[str, ...]
    kind: str = "table"
    enabled: bool = True
    operations: frozenset[str] = frozenset({"read", "upsert"})
    document_types: tuple[str, ...] = ()
    read_roles: frozenset[str] = frozenset()
    write_roles: frozenset[str] = frozenset()
    default_order_by: tuple[tuple[str, str], ...] = ()
    max_batch_rows: int | None = None
    chunk_size: int | None = None
    function: str | None = None
    function_options: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}), compare=False)

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def column(self, name: str) -> ColumnDef | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def value_columns(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns if c.name not in self.key_columns)


@dataclass(frozen=True)
class DocumentTypeRule:
    document_type: str
    label: str
    roles: frozenset[str] = frozenset()
    visibility: str = "owner"
    max_size_bytes: int = 10 * 1024 * 1024
    allowed_content_types: frozenset[str] = frozenset()
    config_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ConfigCatalog:
    descriptors: Mapping[str, SchemaDescriptor]
    document_types: Mapping[str, DocumentTypeRule]
    fingerprint: str
    version: str = ""


def _descriptor_from_dict(raw: dict[str, Any]) -> SchemaDescriptor:
    config_id = raw["config_id"]
    target = raw["target"]
    if not _IDENTIFIER_RE.fullmatch(target):
        raise CatalogError(f"{config_id}: invalid target identifier: {target}")
    columns = tuple(
        ColumnDef(name=c["name"], type=c["type"], nullable=bool(c.get("nullable", True))) for c in raw["columns"]
    )
    names = [c.name for c in columns]
    for name in names:
        if not _IDENTIFIER_RE.fullmatch(name):
            raise CatalogError(f"{config_id}: invalid column identifier: {name}")
    if len(set(names)) != len(names):
        raise CatalogError(f"{config_id}: duplicate column names")
    key_columns = tuple(raw["key_columns"])
    missing = [k for k in key_columns if k not in names]
    if missing:
        raise CatalogError(f"{config_id}: key columns not declared as columns: {missing}")
    order_by = tuple((str(col), str(direction).upper()) for col, direction in raw.get("default_order_by", []))
    for col, direction in order_by:
        if col not in names or direction not in {"ASC", "DESC"}:
            raise CatalogError(f"{config_id}: invalid default_order_by entry: {col} {direction}")
    operations = frozenset(raw.get("operations", ["read", "upsert"]))
    function = raw.get("function")
    if "function" in operations and not function:
        raise CatalogError(f"{config_id}: function operation requires a function name")
    return SchemaDescriptor(
        config_id=config_id,
        target=target,
        columns=columns,
        key_columns=key_columns,
        kind=raw.get("kind", "table"),
        enabled=bool(raw.get("enabled", True)),
        operations=operations,
        document_types=tuple(raw.get("document_types", [])),
        read_roles=frozenset(raw.get("read_roles", [])),
        write_roles=frozenset(raw.get("write_roles", [])),
        default_order_by=order_by,
        max_batch_rows=raw.get("max_batch_rows"),
        chunk_size=raw.get("chunk_size"),
        function=function,
        function_options=MappingProxyType(dict(raw.get("function_options", {}))),
    )


def _rule_from_dict(raw: dict[str, Any]) -> DocumentTypeRule:
    tag = raw["document_type"]
    return DocumentTypeRule(
        document_type=tag,
        label=raw.get("label") or tag.replace("_", " ").title(),
        roles=frozenset(raw.get("roles", [])),
        visibility=raw.get("visibility", "owner"),
        max_size_bytes=int(raw.get("max_size_bytes", 10 * 1024 * 1024)),
        allowed_content_types=frozenset(raw.get("allowed_content_types", [])),
        config_ids=frozenset(raw.get("config_ids", [])),
    )


def build_catalog(document: dict[str, Any]) -> ConfigCatalog:
    try:
        validate(instance=document, schema=CATALOG_SCHEMA)
    except ValidationError as exc:
        raise CatalogError(f"catalog schema violation: {exc.message}") from exc

    rules: dict[str, DocumentTypeRule] = {}
    for raw in document.get("document_types", []):
        rule = _rule_from_dict(raw)
        if rule.document_type in rules:
            raise CatalogError(f"duplicate document type: {rule.document_type}")
        rules[rule.document_type] = rule

    descriptors: dict[str, SchemaDescriptor] = {}
    for raw in document["configs"]:
        descriptor = _descriptor_from_dict(raw)
        if descriptor.config_id in descriptors:
            raise CatalogError(f"duplicate config_id: {descriptor.config_id}")
        for tag in descriptor.document_types:
            rule = rules.get(tag)
            if rule is None:
                raise CatalogError(f"{descriptor.config_id}: unregistered document type: {tag}")
            if rule.config_ids and descriptor.config_id not in rule.config_ids:
                raise CatalogError(f"{descriptor.config_id}: document type {tag} may not be referenced here")
        descriptors[descriptor.config_id] = descriptor

    blob = json.dumps(document, sort_keys=True, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    return ConfigCatalog(
        descriptors=MappingProxyType(descriptors),
        document_types=MappingProxyType(rules),
        fingerprint=hashlib.sha256(blob).hexdigest()[:16],
        version=str(document.get("version", "")),
    )


class FileCatalogSource:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> ConfigCatalog:
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise CatalogError(f"catalog file not found: {self._path}") from exc
        except json.JSONDecodeError as exc:
            raise CatalogError(f"catalog file is not valid JSON: {self._path}") from exc
        if not isinstance(document, dict):
            raise CatalogError("catalog root must be an object")
        catalog = build_catalog(document)
        logger.info(
            "config catalog loaded path=%s configs=%d document_types=%d fingerprint=%s",
            self._path,
            len(catalog.descriptors),
            len(catalog.document_types),
            catalog.fingerprint,
        )
        return catalog

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "FileCatalogSource":
        env = os.environ if environ is None else environ
        path = env.get("CONFIG_CATALOG_PATH", "").strip() or str(DEFAULT_CATALOG_PATH)
        return cls(path)


@dataclass
class _CacheEntry:
    descriptor: SchemaDescriptor
    expires_at: float


class ConfigResolver:
    """Resolve config identifiers against the active catalog snapshot.

    Hits are cached for ``ttl_s`` seconds. The cache is discarded whenever the
    snapshot is swapped, so a cached descriptor always equals what a fresh
    lookup against the active snapshot would return.
    """

    def __init__(
        self,
        catalog: ConfigCatalog,
        *,
        ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._catalog = catalog
        self._ttl_s = max(0.0, float(ttl_s))
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._swap_lock = threading.Lock()

    @property
    def catalog(self) -> ConfigCatalog:
        return self._catalog

    def resolve(self, config_id: str) -> SchemaDescriptor:
        now = self._clock()
        cache = self._cache
        entry = cache.get(config_id)
        if entry is not None and entry.expires_at > now:
            return entry.descriptor

        catalog = self._catalog
        descriptor = catalog.descriptors.get(config_id)
        if descriptor is None:
            raise UnknownConfig(config_id)
        if not descriptor.enabled:
            raise ConfigDisabled(config_id)
        if self._ttl_s > 0:
            with self._swap_lock:
                if self._catalog is catalog:
                    updated = dict(self._cache)
                    updated[config_id] = _CacheEntry(descriptor=descriptor, expires_at=now + self._ttl_s)
                    self._cache = updated
        return descriptor

    def swap(self, catalog: ConfigCatalog) -> None:
        with self._swap_lock:
            self._catalog = catalog
            self._cache = {}

    def list_config_ids(self) -> list[str]:
        return sorted(self._catalog.descriptors)


class DocumentTypeRegistry:
    """Document type rules taken from a catalog snapshot.

    A registry built with :meth:`following` reads the resolver's active
    snapshot on every call, so a single ``resolver.swap`` moves configs and
    document types together.
    """

    def __init__(self, catalog: ConfigCatalog) -> None:
        self._snapshot: Callable[[], ConfigCatalog] = lambda: catalog

    @classmethod
    def following(cls, resolver: ConfigResolver) -> "DocumentTypeRegistry":
        registry = cls(resolver.catalog)
        registry._snapshot = lambda: resolver.catalog
        return registry

    def get(self, document_type: str) -> DocumentTypeRule | None:
        return self._snapshot().document_types.get(document_type)

    def all(self) -> list[DocumentTypeRule]:
        rules = self._snapshot().document_types
        return [rules[k] for k in sorted(rules)]

    def permitted_for(self, roles: frozenset[str]) -> set[str]:
        """Registered types whose role list admits the caller (empty list admits nobody implicitly)."""
        rules = self._snapshot().document_types
        return {tag for tag, rule in rules.items() if rule.roles and rule.roles & roles}
