from __future__ import annotations

import hashlib
import json
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.errors import ApiError


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


def fingerprint(payload: Any) -> str:
    blob = json.dumps(payload, sort_keys=True, ensure_ascii=True, separators=(",", ":"), default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class IdempotencyStore:
    """Replay cache for caller-supplied idempotency keys.

    Concurrent calls with the same key wait for the first one; only results
    that should be replayed (see ``run``) are recorded.
    """

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], IdempotencyRecord] = {}
        self._lock = threading.Lock()
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}

    def _key_lock(self, key: tuple[str, str]) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def run(
        self,
        *,
        scope: str,
        idempotency_key: str,
        payload: Any,
        execute: Callable[[], dict[str, Any]],
        should_record: Callable[[dict[str, Any]], bool] = lambda _data: True,
    ) -> tuple[dict[str, Any], bool]:
        """Return ``(data, replayed)``."""
        key = (scope, idempotency_key)
        current = fingerprint(payload)
        with self._key_lock(key):
            record = self._records.get(key)
            if record is not None:
                if record.fingerprint != current:
                    raise ApiError(
                        code="IDEMPOTENCY_CONFLICT",
                        message="same key with different payload",
                        error_class="validation",
                        retryable=False,
                        http_status=409,
                    )
                return record.data, True
            data = execute()
            if should_record(data):
                self._records[key] = IdempotencyRecord(fingerprint=current, data=data)
            return data, False

    def reset(self) -> None:
        with self._lock:
            self._records = {}
            self._key_locks = {}
