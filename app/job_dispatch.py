"""Hand jobs to the asynchronous worker.

The gateway validates the job descriptor and forwards it, with the caller's
bearer token, to the configured transport. It does not run jobs itself.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib import request
from urllib.error import HTTPError, URLError

from app.errors import ApiError, DownstreamFailure, MalformedRequest, Timeout
from app.queue_backend import DEFAULT_MAX_PENDING, InMemoryQueueBackend
from app.security import CredentialContext

logger = logging.getLogger(__name__)

JOB_QUEUE_NAME = "jobs"


@dataclass(frozen=True)
class JobDispatchConfig:
    transport: str = "queue"
    worker_url: str = ""
    timeout_s: float = 10.0
    queue_max_pending: int = DEFAULT_MAX_PENDING

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JobDispatchConfig":
        env = os.environ if environ is None else environ
        try:
            timeout_s = float(env.get("JOB_WORKER_TIMEOUT_S", "10") or "10")
        except ValueError:
            timeout_s = 10.0
        try:
            max_pending = int(env.get("JOB_QUEUE_MAX_PENDING", str(DEFAULT_MAX_PENDING)) or DEFAULT_MAX_PENDING)
        except ValueError:
            max_pending = DEFAULT_MAX_PENDING
        return cls(
            transport=env.get("JOB_DISPATCH_TRANSPORT", "queue").strip().lower() or "queue",
            worker_url=env.get("JOB_WORKER_URL", "").strip(),
            timeout_s=max(0.1, timeout_s),
            queue_max_pending=max(1, max_pending),
        )


def _rejection(status: int, raw: str) -> ApiError:
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        body = {}
    err = body.get("error") if isinstance(body, dict) else None
    message = ""
    if isinstance(err, dict):
        message = str(err.get("message") or "")
    elif isinstance(body, dict):
        message = str(body.get("message") or "")
    message = message or raw[:200] or f"worker returned HTTP {status}"
    if status >= 500:
        return DownstreamFailure(f"job worker error: {message}", code="JOB_WORKER_FAILED", http_status=status)
    return ApiError(
        code="JOB_REJECTED",
        message=f"job worker rejected the job: {message}",
        error_class="business_rule",
        retryable=False,
        http_status=status,
    )


class HttpJobTransport:
    name = "http"

    def __init__(self, *, worker_url: str, timeout_s: float = 10.0) -> None:
        if not worker_url:
            raise ValueError("JOB_WORKER_URL must be set when JOB_DISPATCH_TRANSPORT=http")
        self._worker_url = worker_url
        self._timeout_s = timeout_s

    def send(self, job: dict[str, Any], credential: CredentialContext) -> dict[str, Any]:
        req = request.Request(
            self._worker_url,
            data=json.dumps({"job": job}).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {credential.token}",
            },
        )
        try:
            with request.urlopen(req, timeout=self._timeout_s) as resp:
                raw = resp.read().decode("utf-8")
        except HTTPError as e:
            raise _rejection(e.code, e.read().decode("utf-8", errors="replace")) from e
        except TimeoutError as e:
            raise Timeout("job worker timed out") from e
        except URLError as e:
            if isinstance(e.reason, TimeoutError):
                raise Timeout("job worker timed out") from e
            raise DownstreamFailure(f"job worker unavailable: {e.reason}") from e
        except OSError as e:
            raise DownstreamFailure(f"job worker unavailable: {e}") from e
        try:
            body = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            raise DownstreamFailure("job worker returned a non-JSON response") from e
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        if not isinstance(body, dict):
            raise DownstreamFailure("job worker returned an unexpected response")
        return body


class QueueJobTransport:
    name = "queue"

    def __init__(self, queue: InMemoryQueueBackend | None = None) -> None:
        self._queue = queue or InMemoryQueueBackend()

    @property
    def queue(self) -> InMemoryQueueBackend:
        return self._queue

    def send(self, job: dict[str, Any], credential: CredentialContext) -> dict[str, Any]:
        job_id = f"job_{uuid.uuid4().hex[:12]}"
        self._queue.enqueue(
            org_id=credential.org_id,
            queue_name=JOB_QUEUE_NAME,
            payload={"job_id": job_id, "submitted_by": credential.subject, **job},
        )
        return {"accepted": True, "queued": True, "job_id": job_id}


class JobDispatchGateway:
    def __init__(self, *, transport: Any) -> None:
        self._transport = transport

    @property
    def transport(self) -> Any:
        return self._transport

    def dispatch(self, job: Any, credential: CredentialContext) -> dict[str, Any]:
        if not isinstance(job, Mapping):
            raise MalformedRequest("job must be an object", code="JOB_INVALID")
        job_type = job.get("job_type")
        if not isinstance(job_type, str) or not job_type.strip():
            raise MalformedRequest("job.job_type is required", code="JOB_INVALID")
        payload = job.get("payload", {})
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise MalformedRequest("job.payload must be an object", code="JOB_INVALID")

        descriptor = {"job_type": job_type.strip(), "payload": dict(payload)}
        try:
            ack = self._transport.send(descriptor, credential)
        except ApiError as exc:
            logger.warning(
                "job dispatch failed job_type=%s transport=%s code=%s",
                descriptor["job_type"],
                getattr(self._transport, "name", "custom"),
                exc.code,
            )
            raise
        result = {
            "accepted": bool(ack.get("accepted", True)),
            "queued": bool(ack.get("queued", False)),
            "job_id": ack.get("job_id"),
        }
        logger.info(
            "job dispatched job_type=%s transport=%s job_id=%s queued=%s",
            descriptor["job_type"],
            getattr(self._transport, "name", "custom"),
            result["job_id"],
            result["queued"],
        )
        return result


def create_job_gateway_from_env(environ: Mapping[str, str] | None = None) -> JobDispatchGateway:
    cfg = JobDispatchConfig.from_env(environ)
    if cfg.transport == "http":
        return JobDispatchGateway(transport=HttpJobTransport(worker_url=cfg.worker_url, timeout_s=cfg.timeout_s))
    if cfg.transport == "queue":
        return JobDispatchGateway(transport=QueueJobTransport(InMemoryQueueBackend(max_pending=cfg.queue_max_pending)))
    raise RuntimeError(f"unsupported job dispatch transport: {cfg.transport}")
