from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from app.config_registry import ConfigResolver, DocumentTypeRegistry, FileCatalogSource
from app.db.rls import ensure_org_isolation
from app.file_crypto import KeyRing
from app.function_gateway import FunctionCallPolicy, FunctionGateway
from app.idempotency import IdempotencyStore
from app.job_dispatch import JobDispatchGateway, create_job_gateway_from_env
from app.object_storage import create_object_storage_from_env
from app.read_engine import ReadEngine
from app.repositories.audit_logs import create_audit_logs_repository_from_env
from app.repositories.encrypted_files import create_encrypted_files_repository_from_env
from app.repositories.rows import RowStore, create_row_store_from_env
from app.repositories.settings import StoreSettings
from app.runtime_profile import RuntimeProfile
from app.secure_files import SecureFileService
from app.security import JwtSecurityConfig
from app.upsert_engine import BulkUpsertEngine, EngineConfig

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, built once per application."""

    security_cfg: JwtSecurityConfig
    catalog_source: FileCatalogSource
    resolver: ConfigResolver
    document_types: DocumentTypeRegistry
    row_store: RowStore
    upsert_engine: BulkUpsertEngine
    read_engine: ReadEngine
    secure_files: SecureFileService
    job_gateway: JobDispatchGateway
    function_gateway: FunctionGateway
    audit_logs: Any
    idempotency: IdempotencyStore

    def reload_catalog(self) -> dict[str, Any]:
        """Load the catalog again and swap it in; a broken file leaves the old snapshot active.

        The document type registry reads through the resolver, so this one swap
        is the only write.
        """
        catalog = self.catalog_source.load()
        self.resolver.swap(catalog)
        logger.info("config catalog reloaded fingerprint=%s", catalog.fingerprint)
        return {
            "fingerprint": catalog.fingerprint,
            "version": catalog.version,
            "configs": len(catalog.descriptors),
            "document_types": len(catalog.document_types),
        }


def build_services(environ: Mapping[str, str] | None = None) -> Services:
    env = os.environ if environ is None else environ
    profile = RuntimeProfile.from_env(env)
    profile.ensure(env)
    store_settings = StoreSettings.from_env(env)
    ensure_org_isolation(store_settings, true_stack=profile.true_stack)
    security_cfg = JwtSecurityConfig.from_env()
    engine_cfg = EngineConfig.from_env(env)
    catalog_source = FileCatalogSource.from_env(env)
    catalog = catalog_source.load()
    try:
        ttl_s = float(env.get("CONFIG_CACHE_TTL_S", "300") or "300")
    except ValueError:
        ttl_s = 300.0
    resolver = ConfigResolver(catalog, ttl_s=ttl_s)
    document_types = DocumentTypeRegistry.following(resolver)
    row_store = create_row_store_from_env(env)
    idempotency = IdempotencyStore()
    audit_logs = create_audit_logs_repository_from_env(env)
    upsert_engine = BulkUpsertEngine(
        resolver=resolver,
        row_store=row_store,
        config=engine_cfg,
        idempotency=idempotency,
    )
    read_engine = ReadEngine(
        resolver=resolver,
        row_store=row_store,
        document_types=document_types,
        max_limit=engine_cfg.read_max_limit,
    )
    secure_files = SecureFileService(
        key_ring=KeyRing.from_env(env),
        storage=create_object_storage_from_env(env),
        repository=create_encrypted_files_repository_from_env(env),
        document_types=document_types,
        audit_logs=audit_logs,
    )
    function_gateway = FunctionGateway(
        resolver=resolver,
        upsert_engine=upsert_engine,
        policy=FunctionCallPolicy.from_env(env),
    )
    return Services(
        security_cfg=security_cfg,
        catalog_source=catalog_source,
        resolver=resolver,
        document_types=document_types,
        row_store=row_store,
        upsert_engine=upsert_engine,
        read_engine=read_engine,
        secure_files=secure_files,
        job_gateway=create_job_gateway_from_env(env),
        function_gateway=function_gateway,
        audit_logs=audit_logs,
        idempotency=idempotency,
    )
