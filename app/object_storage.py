"""Ciphertext blob storage.

Objects are written once under ``orgs/<org>/<kind>/<id>.bin`` and addressed by
``object://<backend>/<bucket>/<key>`` URIs that the file records keep. Nothing
here sees plaintext.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from hashlib import sha256
from pathlib import Path
from typing import Any

from app.errors import DownstreamFailure
from app.runtime_profile import true_stack_required

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "NotFound", "404"}


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _error_code(exc: BaseException) -> str:
    response = getattr(exc, "response", None)
    if not isinstance(response, Mapping):
        return ""
    return str(response.get("Error", {}).get("Code", ""))


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    worm_mode: bool
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ObjectStorageConfig":
        env = os.environ if environ is None else environ
        return cls(
            backend=env.get("OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local",
            bucket=env.get("OBJECT_STORAGE_BUCKET", "secure-files").strip() or "secure-files",
            root=env.get("OBJECT_STORAGE_ROOT", "/tmp/crud-object-storage").strip() or "/tmp/crud-object-storage",
            prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip().strip("/"),
            worm_mode=_flag(env, "OBJECT_STORAGE_WORM_MODE", True),
            endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
            region=env.get("OBJECT_STORAGE_REGION", "").strip(),
            access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
            secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
            force_path_style=_flag(env, "OBJECT_STORAGE_FORCE_PATH_STYLE", True),
        )


class ObjectStorageBackend:
    """Write-once store for ciphertext objects."""

    backend_name = "base"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        self._worm_mode = bool(config.worm_mode)

    def put_object(
        self,
        *,
        org_id: str,
        object_type: str,
        object_id: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        """Store ``content_bytes`` and return its URI.

        With WORM mode on, an existing object is never replaced and its URI is
        returned unchanged.
        """
        key = self.object_key(org_id=org_id, object_type=object_type, object_id=object_id)
        if self._worm_mode and self._exists(key):
            logger.info("object already stored backend=%s key=%s", self.backend_name, key)
            return self._uri_for_key(key)
        self._write(key, content_bytes, content_type or "application/octet-stream")
        return self._uri_for_key(key)

    def get_object(self, *, storage_uri: str) -> bytes:
        raise NotImplementedError

    def delete_object(self, *, storage_uri: str) -> bool:
        raise NotImplementedError

    def object_key(self, *, org_id: str, object_type: str, object_id: str) -> str:
        base = f"orgs/{_clean_segment(org_id)}/{_clean_segment(object_type)}/{_clean_segment(object_id)}.bin"
        return f"{self._prefix}/{base}" if self._prefix else base

    def _exists(self, key: str) -> bool:
        raise NotImplementedError

    def _write(self, key: str, content_bytes: bytes, content_type: str) -> None:
        raise NotImplementedError

    def _uri_for_key(self, key: str) -> str:
        return f"object://{self.backend_name}/{self._bucket}/{key}"

    def _parse_own_uri(self, storage_uri: str) -> dict[str, str]:
        parsed = _parse_storage_uri(storage_uri)
        if parsed["backend"] != self.backend_name:
            raise ValueError("storage backend mismatch")
        return parsed


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        self._root = Path(config.root)
        self._root.mkdir(parents=True, exist_ok=True)

    def get_object(self, *, storage_uri: str) -> bytes:
        path = self._path_for_uri(storage_uri)
        if not path.exists():
            raise FileNotFoundError(storage_uri)
        return path.read_bytes()

    def delete_object(self, *, storage_uri: str) -> bool:
        path = self._path_for_uri(storage_uri)
        if not path.exists():
            return False
        path.unlink()
        meta = self._meta_path(path)
        if meta.exists():
            meta.unlink()
        return True

    def reset(self) -> None:
        if not self._root.exists():
            return
        for path in sorted(self._root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()

    def _exists(self, key: str) -> bool:
        return self._path_for_key(self._bucket, key).exists()

    def _write(self, key: str, content_bytes: bytes, content_type: str) -> None:
        path = self._path_for_key(self._bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Readers must never observe a partially written ciphertext.
        tmp = path.with_name(f".{path.name}.tmp")
        tmp.write_bytes(content_bytes)
        os.replace(tmp, path)
        meta = {
            "content_type": content_type,
            "sha256": sha256(content_bytes).hexdigest(),
            "size_bytes": len(content_bytes),
            "created_at": datetime.now(tz=UTC).isoformat(),
        }
        self._meta_path(path).write_text(json.dumps(meta, ensure_ascii=True, sort_keys=True), encoding="utf-8")

    def _path_for_key(self, bucket: str, key: str) -> Path:
        if any(part in {"", ".", ".."} for part in key.split("/")):
            raise ValueError("invalid storage key")
        return self._root / bucket / key

    def _path_for_uri(self, storage_uri: str) -> Path:
        parsed = self._parse_own_uri(storage_uri)
        return self._path_for_key(parsed["bucket"], parsed["key"])

    def _meta_path(self, path: Path) -> Path:
        return Path(f"{path}.meta.json")


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig, client: Any = None) -> None:
        super().__init__(config=config)
        if client is not None:
            self._client = client
            return
        try:
            import boto3  # type: ignore
            from botocore.config import Config  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def get_object(self, *, storage_uri: str) -> bytes:
        parsed = self._parse_own_uri(storage_uri)
        try:
            response = self._client.get_object(Bucket=parsed["bucket"], Key=parsed["key"])
        except Exception as exc:
            if _error_code(exc) in _MISSING_CODES:
                raise FileNotFoundError(storage_uri) from exc
            raise DownstreamFailure(f"object storage read failed: {type(exc).__name__}") from exc
        return response["Body"].read()

    def delete_object(self, *, storage_uri: str) -> bool:
        parsed = self._parse_own_uri(storage_uri)
        try:
            self._client.delete_object(Bucket=parsed["bucket"], Key=parsed["key"])
        except Exception as exc:
            raise DownstreamFailure(f"object storage delete failed: {type(exc).__name__}") from exc
        return True

    def _exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
        except Exception as exc:
            if _error_code(exc) in _MISSING_CODES:
                return False
            raise DownstreamFailure(f"object storage lookup failed: {type(exc).__name__}") from exc
        return True

    def _write(self, key: str, content_bytes: bytes, content_type: str) -> None:
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=content_bytes,
                ContentType=content_type,
            )
        except Exception as exc:
            raise DownstreamFailure(f"object storage write failed: {type(exc).__name__}") from exc


def _parse_storage_uri(uri: str) -> dict[str, str]:
    if not uri.startswith("object://"):
        raise ValueError("invalid storage uri")
    parts = uri[len("object://") :].split("/", 2)
    if len(parts) != 3 or not all(parts):
        raise ValueError("invalid storage uri")
    return {"backend": parts[0], "bucket": parts[1], "key": parts[2]}


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    config = ObjectStorageConfig.from_env(env)
    if true_stack_required(env) and config.backend != "s3":
        raise RuntimeError("OBJECT_STORAGE_BACKEND must be s3 when CRUD_REQUIRE_TRUESTACK=true")
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend != "local":
        raise RuntimeError(f"unsupported OBJECT_STORAGE_BACKEND: {config.backend}")
    return LocalObjectStorage(config=config)
