from app.repositories.audit_logs import (
    InMemoryAuditLogsRepository,
    PostgresAuditLogsRepository,
    SqliteAuditLogsRepository,
)
from app.repositories.encrypted_files import (
    InMemoryEncryptedFilesRepository,
    PostgresEncryptedFilesRepository,
    SqliteEncryptedFilesRepository,
)
from app.repositories.rows import InMemoryRowStore, PostgresRowStore, SqliteRowStore
from app.repositories.settings import StoreSettings

__all__ = [
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
    "SqliteAuditLogsRepository",
    "InMemoryEncryptedFilesRepository",
    "PostgresEncryptedFilesRepository",
    "SqliteEncryptedFilesRepository",
    "InMemoryRowStore",
    "PostgresRowStore",
    "SqliteRowStore",
    "StoreSettings",
]
