from __future__ import annotations

import pytest

from app.errors import DownstreamFailure
from app.queue_backend import InMemoryQueueBackend


def test_queue_backend_keeps_org_isolation():
    q = InMemoryQueueBackend()
    q.enqueue(org_id="org_a", queue_name="jobs", payload={"job_id": "job_a"})
    q.enqueue(org_id="org_b", queue_name="jobs", payload={"job_id": "job_b"})

    assert [m.payload["job_id"] for m in q.drain(org_id="org_a", queue_name="jobs")] == ["job_a"]
    assert q.drain(org_id="org_a", queue_name="jobs") == []
    assert q.pending_count(org_id="org_b", queue_name="jobs") == 1


def test_drain_returns_messages_in_arrival_order_up_to_limit():
    q = InMemoryQueueBackend()
    for n in range(3):
        q.enqueue(org_id="org_a", queue_name="jobs", payload={"job_id": f"job_{n}"})

    first = q.drain(org_id="org_a", queue_name="jobs", limit=2)
    assert [m.payload["job_id"] for m in first] == ["job_0", "job_1"]
    assert q.pending_count(org_id="org_a", queue_name="jobs") == 1
    assert [m.payload["job_id"] for m in q.drain(org_id="org_a", queue_name="jobs")] == ["job_2"]


def test_full_queue_refuses_new_jobs_until_drained():
    q = InMemoryQueueBackend(max_pending=2)
    q.enqueue(org_id="org_a", queue_name="jobs", payload={"job_id": "job_1"})
    q.enqueue(org_id="org_a", queue_name="jobs", payload={"job_id": "job_2"})

    with pytest.raises(DownstreamFailure) as exc_info:
        q.enqueue(org_id="org_a", queue_name="jobs", payload={"job_id": "job_3"})
    assert exc_info.value.code == "JOB_QUEUE_FULL"
    assert exc_info.value.retryable is True
    assert q.pending_count(org_id="org_a", queue_name="jobs") == 2

    # The bound is per org, so another tenant is unaffected.
    q.enqueue(org_id="org_b", queue_name="jobs", payload={"job_id": "job_b"})

    q.drain(org_id="org_a", queue_name="jobs", limit=1)
    q.enqueue(org_id="org_a", queue_name="jobs", payload={"job_id": "job_3"})
    assert q.pending_count(org_id="org_a", queue_name="jobs") == 2


def test_queue_rejects_non_positive_bound():
    with pytest.raises(ValueError, match="max_pending"):
        InMemoryQueueBackend(max_pending=0)
