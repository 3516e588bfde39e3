from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from app.errors import DownstreamFailure

DEFAULT_MAX_PENDING = 1000


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    org_id: str
    queue_name: str
    payload: dict[str, Any]
    enqueued_at: str


class InMemoryQueueBackend:
    """Bounded process-local job queue for tests and single-process deployments.

    Each org/queue pair holds at most ``max_pending`` messages; a full queue
    refuses new work with a retryable ``JOB_QUEUE_FULL`` instead of growing.
    Whatever runs the jobs in-process pulls them with :meth:`drain`.
    """

    def __init__(self, *, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self._max_pending = max_pending
        self._lock = threading.Lock()
        self._queues: dict[str, deque[QueueMessage]] = {}

    @property
    def max_pending(self) -> int:
        return self._max_pending

    @staticmethod
    def queue_key(*, org_id: str, queue_name: str) -> str:
        return f"crud:{org_id}:queue:{queue_name}"

    def enqueue(self, *, org_id: str, queue_name: str, payload: dict[str, Any]) -> QueueMessage:
        msg = QueueMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            org_id=org_id,
            queue_name=queue_name,
            payload=payload,
            enqueued_at=datetime.now(UTC).isoformat(),
        )
        with self._lock:
            queue = self._queues.setdefault(self.queue_key(org_id=org_id, queue_name=queue_name), deque())
            if len(queue) >= self._max_pending:
                raise DownstreamFailure(
                    f"job queue {queue_name} is full ({self._max_pending} pending)",
                    code="JOB_QUEUE_FULL",
                )
            queue.append(msg)
        return msg

    def drain(self, *, org_id: str, queue_name: str, limit: int | None = None) -> list[QueueMessage]:
        """Remove and return up to ``limit`` messages in arrival order."""
        with self._lock:
            queue = self._queues.get(self.queue_key(org_id=org_id, queue_name=queue_name))
            if not queue:
                return []
            count = len(queue) if limit is None else min(max(0, limit), len(queue))
            return [queue.popleft() for _ in range(count)]

    def pending_count(self, *, org_id: str, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(self.queue_key(org_id=org_id, queue_name=queue_name), ()))

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
