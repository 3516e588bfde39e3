"""Authenticated encryption for stored files.

AES-256-GCM with a fresh 96-bit nonce per file. Each master key version
derives one key per document type with HKDF-SHA256, so records only need to
remember the key version; rotating means adding a version and moving the
active pointer.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from app.errors import DecryptionFailed
from app.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
NONCE_BYTES = 12
KEY_BYTES = 32


@dataclass(frozen=True)
class EncryptionMetadata:
    algorithm: str
    key_version: str
    nonce: str

    def to_dict(self) -> dict[str, str]:
        return {"algorithm": self.algorithm, "key_version": self.key_version, "nonce": self.nonce}

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> "EncryptionMetadata":
        return cls(
            algorithm=str(raw.get("algorithm") or ""),
            key_version=str(raw.get("key_version") or ""),
            nonce=str(raw.get("nonce") or ""),
        )


def associated_data(*, file_id: str, owner_id: str, document_type: str) -> bytes:
    return f"{file_id}|{owner_id}|{document_type}".encode("utf-8")


def _parse_keys(raw: str) -> dict[str, bytes]:
    keys: dict[str, bytes] = {}
    for item in (x.strip() for x in raw.split(",")):
        if not item:
            continue
        version, sep, encoded = item.partition(":")
        if not sep or not version.strip():
            raise ValueError("FILE_ENCRYPTION_KEYS entries must look like version:base64key")
        try:
            key = base64.b64decode(encoded.strip(), validate=True)
        except binascii.Error as exc:
            raise ValueError(f"key {version.strip()} is not valid base64") from exc
        if len(key) != KEY_BYTES:
            raise ValueError(f"key {version.strip()} must be {KEY_BYTES} bytes")
        if version.strip() in keys:
            raise ValueError(f"key {version.strip()} is listed more than once")
        keys[version.strip()] = key
    return keys


class KeyRing:
    def __init__(self, keys: Mapping[str, bytes], *, active_version: str) -> None:
        if active_version not in keys:
            raise ValueError(f"active key version not present: {active_version}")
        self._keys = dict(keys)
        self._active_version = active_version

    @property
    def active_version(self) -> str:
        return self._active_version

    @property
    def versions(self) -> list[str]:
        return list(self._keys)

    def _derive(self, version: str, document_type: str) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=None,
            info=f"secure-file:{document_type}".encode("utf-8"),
        )
        return hkdf.derive(self._keys[version])

    def encrypt(self, plaintext: bytes, *, document_type: str, aad: bytes) -> tuple[bytes, EncryptionMetadata]:
        nonce = os.urandom(NONCE_BYTES)
        key = self._derive(self._active_version, document_type)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext, aad)
        metadata = EncryptionMetadata(
            algorithm=ALGORITHM,
            key_version=self._active_version,
            nonce=base64.b64encode(nonce).decode("ascii"),
        )
        return ciphertext, metadata

    def decrypt(
        self,
        ciphertext: bytes,
        metadata: EncryptionMetadata,
        *,
        document_type: str,
        aad: bytes,
        file_id: str,
    ) -> bytes:
        if metadata.algorithm != ALGORITHM:
            raise DecryptionFailed(
                file_id,
                code="FILE_ALGORITHM_UNSUPPORTED",
                message=f"unsupported algorithm: {metadata.algorithm}",
            )
        if metadata.key_version not in self._keys:
            raise DecryptionFailed(
                file_id,
                code="FILE_KEY_UNAVAILABLE",
                message=f"key version unavailable: {metadata.key_version}",
            )
        try:
            nonce = base64.b64decode(metadata.nonce, validate=True)
        except binascii.Error:
            raise DecryptionFailed(file_id) from None
        if len(nonce) != NONCE_BYTES:
            raise DecryptionFailed(file_id)
        key = self._derive(metadata.key_version, document_type)
        try:
            return AESGCM(key).decrypt(nonce, ciphertext, aad)
        except InvalidTag:
            raise DecryptionFailed(file_id) from None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "KeyRing":
        env = os.environ if environ is None else environ
        keys = _parse_keys(env.get("FILE_ENCRYPTION_KEYS", ""))
        if not keys:
            if true_stack_required(env):
                raise RuntimeError("FILE_ENCRYPTION_KEYS must be set when CRUD_REQUIRE_TRUESTACK=true")
            logger.warning("FILE_ENCRYPTION_KEYS not set; using an ephemeral key, stored files will not survive restart")
            return cls({"ephemeral": AESGCM.generate_key(bit_length=256)}, active_version="ephemeral")
        # Versions are opaque labels; without an explicit pointer the last one listed is active.
        active = env.get("FILE_ENCRYPTION_ACTIVE_KEY", "").strip() or list(keys)[-1]
        return cls(keys, active_version=active)
