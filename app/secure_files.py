"""Encrypt uploads before they are persisted and decrypt them on listing.

Ciphertext goes to object storage, metadata to the encrypted-files
repository. Plaintext never reaches either, and is never logged.
"""

from __future__ import annotations

import base64
import binascii
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from app.access import permitted_document_types
from app.config_registry import DocumentTypeRegistry, DocumentTypeRule
from app.errors import (
    DecryptionFailed,
    MalformedRequest,
    UnknownDocumentType,
    Unauthorized,
    store_error_from_exception,
)
from app.file_crypto import EncryptionMetadata, KeyRing, associated_data
from app.object_storage import ObjectStorageBackend
from app.security import CredentialContext

logger = logging.getLogger(__name__)

OBJECT_TYPE = "secure_file"


@dataclass(frozen=True)
class UploadedFile:
    name: str
    content_type: str
    base64: str


def decode_payload(raw: str) -> bytes:
    """Decode a base64 payload, accepting a ``data:<type>;base64,`` prefix."""
    text = raw.strip()
    if text.startswith("data:"):
        header, sep, body = text.partition(",")
        if not sep or ";base64" not in header:
            raise MalformedRequest("data URL must be base64 encoded", code="FILE_PAYLOAD_INVALID")
        text = body
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedRequest("file payload is not valid base64", code="FILE_PAYLOAD_INVALID") from exc


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


class SecureFileService:
    def __init__(
        self,
        *,
        key_ring: KeyRing,
        storage: ObjectStorageBackend,
        repository: Any,
        document_types: DocumentTypeRegistry,
        audit_logs: Any = None,
    ) -> None:
        self._key_ring = key_ring
        self._storage = storage
        self._repository = repository
        self._document_types = document_types
        self._audit_logs = audit_logs

    def _authorize(self, document_type: str, credential: CredentialContext) -> DocumentTypeRule:
        # Permission is checked before registration so callers cannot probe for types.
        if document_type not in permitted_document_types(credential, self._document_types):
            logger.info("document type denied subject=%s document_type=%s", credential.subject, document_type)
            self._audit(
                credential,
                action="secure_file_access_denied",
                detail={"document_type": document_type},
            )
            raise Unauthorized()
        rule = self._document_types.get(document_type)
        if rule is None:
            raise UnknownDocumentType(document_type)
        return rule

    def encrypt_and_store(
        self,
        document_type: str,
        files: list[UploadedFile],
        credential: CredentialContext,
    ) -> list[dict[str, Any]]:
        rule = self._authorize(document_type, credential)
        if not files:
            raise MalformedRequest("at least one file is required", code="FILE_PAYLOAD_MISSING")

        # Decode and check every file before anything is written.
        prepared: list[tuple[UploadedFile, bytes]] = []
        for index, item in enumerate(files):
            if not item.name.strip():
                raise MalformedRequest(f"file {index} has no name", code="FILE_PAYLOAD_INVALID")
            content = decode_payload(item.base64)
            if not content:
                raise MalformedRequest(f"file {item.name} is empty", code="FILE_PAYLOAD_INVALID")
            if len(content) > rule.max_size_bytes:
                raise MalformedRequest(
                    f"file {item.name} exceeds {rule.max_size_bytes} bytes",
                    code="FILE_TOO_LARGE",
                )
            if rule.allowed_content_types and item.content_type not in rule.allowed_content_types:
                raise MalformedRequest(
                    f"content type {item.content_type} is not allowed for {document_type}",
                    code="FILE_CONTENT_TYPE_INVALID",
                )
            prepared.append((item, content))

        handles: list[dict[str, Any]] = []
        written: list[tuple[str, str, bool]] = []
        try:
            for item, content in prepared:
                file_id = f"file_{uuid.uuid4().hex}"
                aad = associated_data(file_id=file_id, owner_id=credential.subject, document_type=document_type)
                ciphertext, metadata = self._key_ring.encrypt(content, document_type=document_type, aad=aad)
                storage_uri = self._storage.put_object(
                    org_id=credential.org_id,
                    object_type=OBJECT_TYPE,
                    object_id=file_id,
                    content_bytes=ciphertext,
                    content_type="application/octet-stream",
                )
                written.append((file_id, storage_uri, False))
                record = self._repository.insert(
                    record={
                        "file_id": file_id,
                        "org_id": credential.org_id,
                        "owner_id": credential.subject,
                        "document_type": document_type,
                        "filename": item.name,
                        "content_type": item.content_type or "application/octet-stream",
                        "size_bytes": len(content),
                        "storage_uri": storage_uri,
                        "encryption": metadata.to_dict(),
                        "created_at": _now_iso(),
                    }
                )
                written[-1] = (file_id, storage_uri, True)
                handles.append(
                    {
                        "file_id": file_id,
                        "filename": record["filename"],
                        "document_type": document_type,
                        "content_type": record["content_type"],
                        "size_bytes": record["size_bytes"],
                        "created_at": record["created_at"],
                    }
                )
        except Exception as exc:
            self._discard(written, credential)
            error = store_error_from_exception(exc, operation="secure file upload")
            logger.warning(
                "file upload rolled back document_type=%s discarded=%d code=%s",
                document_type,
                len(written),
                error.code,
            )
            if error is exc:
                raise
            raise error from exc
        logger.info(
            "files stored document_type=%s count=%d key_version=%s",
            document_type,
            len(handles),
            self._key_ring.active_version,
        )
        return handles

    def list_and_decrypt(self, document_type: str, credential: CredentialContext) -> list[dict[str, Any]]:
        """Decrypt every visible file; a failing file yields an error entry, not an exception."""
        rule = self._authorize(document_type, credential)
        owner_id = None if rule.visibility == "organization" else credential.subject
        records = self._repository.list_for_scope(
            org_id=credential.org_id,
            document_type=document_type,
            owner_id=owner_id,
        )
        out: list[dict[str, Any]] = []
        for record in records:
            out.append(self._decrypt_record(record, credential))
        return out

    def _decrypt_record(self, record: Mapping[str, Any], credential: CredentialContext) -> dict[str, Any]:
        file_id = str(record["file_id"])
        entry: dict[str, Any] = {
            "file_id": file_id,
            "name": record["filename"],
            "content_type": record["content_type"],
        }
        metadata = EncryptionMetadata.from_dict(record.get("encryption") or {})
        try:
            ciphertext = self._storage.get_object(storage_uri=str(record["storage_uri"]))
        except FileNotFoundError:
            logger.warning("ciphertext missing file_id=%s", file_id)
            entry["error"] = {
                "code": "FILE_OBJECT_MISSING",
                "message": "stored ciphertext not found",
                "retryable": False,
            }
            return entry
        aad = associated_data(
            file_id=file_id,
            owner_id=str(record["owner_id"]),
            document_type=str(record["document_type"]),
        )
        try:
            plaintext = self._key_ring.decrypt(
                ciphertext,
                metadata,
                document_type=str(record["document_type"]),
                aad=aad,
                file_id=file_id,
            )
        except DecryptionFailed as exc:
            logger.warning(
                "decryption failed file_id=%s document_type=%s key_version=%s code=%s",
                file_id,
                record["document_type"],
                metadata.key_version,
                exc.code,
            )
            self._audit(
                credential,
                action="secure_file_decryption_failed",
                detail={
                    "file_id": file_id,
                    "document_type": record["document_type"],
                    "key_version": metadata.key_version,
                    "code": exc.code,
                },
            )
            entry["error"] = {"code": exc.code, "message": exc.message, "retryable": exc.retryable}
            return entry
        entry["base64"] = base64.b64encode(plaintext).decode("ascii")
        entry["size_bytes"] = len(plaintext)
        return entry

    def _discard(self, written: list[tuple[str, str, bool]], credential: CredentialContext) -> None:
        """Remove what a failed upload already wrote, so the batch leaves nothing behind."""
        for file_id, storage_uri, recorded in reversed(written):
            try:
                if recorded:
                    self._repository.delete(file_id=file_id, org_id=credential.org_id)
                self._storage.delete_object(storage_uri=storage_uri)
            except Exception:
                logger.exception("upload cleanup failed file_id=%s", file_id)

    def _audit(self, credential: CredentialContext, *, action: str, detail: dict[str, Any]) -> None:
        if self._audit_logs is None:
            return
        self._audit_logs.append(
            log={
                "audit_id": f"audit_{uuid.uuid4().hex[:12]}",
                "org_id": credential.org_id,
                "subject": credential.subject,
                "action": action,
                "occurred_at": _now_iso(),
                **detail,
            }
        )
