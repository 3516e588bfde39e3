from __future__ import annotations

import pytest

from app.repositories.audit_logs import (
    InMemoryAuditLogsRepository,
    PostgresAuditLogsRepository,
    SqliteAuditLogsRepository,
    create_audit_logs_repository_from_env,
)
from app.repositories.encrypted_files import PostgresEncryptedFilesRepository, create_encrypted_files_repository_from_env
from app.repositories.rows import PostgresRowStore, create_row_store_from_env
from app.repositories.settings import StoreSettings


class RecordingRunner:
    created: list[tuple[str, int]] = []

    def __init__(self, dsn: str, *, statement_timeout_ms: int = 0) -> None:
        RecordingRunner.created.append((dsn, statement_timeout_ms))


@pytest.fixture
def runners(monkeypatch):
    RecordingRunner.created = []
    monkeypatch.setattr("app.repositories.settings.PostgresTxRunner", RecordingRunner)
    return RecordingRunner.created


def test_settings_defaults_and_validation():
    settings = StoreSettings.from_env({})
    assert (settings.backend, settings.timeout_s, settings.apply_rls) == ("memory", 5.0, False)
    assert StoreSettings.from_env({"STORE_TIMEOUT_S": "0.25"}).statement_timeout_ms == 250
    with pytest.raises(ValueError, match="CRUD_STORE_BACKEND"):
        StoreSettings.from_env({"CRUD_STORE_BACKEND": "mongo"})
    with pytest.raises(ValueError, match="STORE_TIMEOUT_S"):
        StoreSettings.from_env({"STORE_TIMEOUT_S": "soon"})
    with pytest.raises(ValueError, match="STORE_TIMEOUT_S"):
        StoreSettings.from_env({"STORE_TIMEOUT_S": "-1"})


def test_every_postgres_repository_gets_the_store_timeout(runners):
    env = {"CRUD_STORE_BACKEND": "postgres", "POSTGRES_DSN": "postgresql://crud@db/crud", "STORE_TIMEOUT_S": "1.5"}

    assert isinstance(create_row_store_from_env(env), PostgresRowStore)
    assert isinstance(create_encrypted_files_repository_from_env(env), PostgresEncryptedFilesRepository)
    assert isinstance(create_audit_logs_repository_from_env(env), PostgresAuditLogsRepository)

    assert runners == [("postgresql://crud@db/crud", 1500)] * 3


def test_sqlite_repositories_share_file_and_busy_timeout(tmp_path):
    env = {"CRUD_STORE_BACKEND": "sqlite", "CRUD_STORE_SQLITE_PATH": str(tmp_path / "crud.sqlite3"), "STORE_TIMEOUT_S": "2"}

    files = create_encrypted_files_repository_from_env(env)
    audit = create_audit_logs_repository_from_env(env)

    assert files._timeout_s == 2.0
    assert isinstance(audit, SqliteAuditLogsRepository)
    assert audit._timeout_s == 2.0
    assert create_row_store_from_env(env)._timeout_s == 2.0


def test_audit_factory_selects_backend(tmp_path):
    assert isinstance(create_audit_logs_repository_from_env({}), InMemoryAuditLogsRepository)
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        create_audit_logs_repository_from_env({"CRUD_STORE_BACKEND": "postgres"})
