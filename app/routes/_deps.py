from __future__ import annotations

import asyncio
import hmac
import logging
import threading
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import Request
from fastapi.responses import JSONResponse

from app.errors import ApiError
from app.schemas import error_envelope
from app.security import CredentialContext, parse_bearer_credential, redact_sensitive
from app.services import Services

logger = logging.getLogger(__name__)


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def services_from_request(request: Request) -> Services:
    return request.app.state.services


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def require_credential(request: Request, fallback_token: str | None = None) -> CredentialContext:
    """Verify the Authorization header, or the access token carried in the body or query."""
    services = services_from_request(request)
    credential = parse_bearer_credential(
        authorization=request.headers.get("Authorization"),
        cfg=services.security_cfg,
        fallback_token=fallback_token,
    )
    request.state.auth_subject = credential.subject
    request.state.org_id = credential.org_id
    return credential


def append_security_audit_log(
    *,
    request: Request,
    action: str,
    code: str,
    detail: str,
) -> None:
    services = services_from_request(request)
    headers_obj = dict(request.headers.items())
    if services.security_cfg.log_redaction_enabled:
        headers_payload = redact_sensitive(headers_obj)
    else:
        headers_payload = headers_obj
    try:
        services.audit_logs.append(
            log={
                "audit_id": f"audit_{uuid.uuid4().hex[:12]}",
                "org_id": getattr(request.state, "org_id", None) or "org_unknown",
                "subject": getattr(request.state, "auth_subject", "anonymous"),
                "action": action,
                "error_code": code,
                "detail": detail,
                "trace_id": trace_id_from_request(request),
                "path": request.url.path,
                "headers": headers_payload,
                "occurred_at": datetime.now(UTC).isoformat(),
            }
        )
    except Exception:
        # Audit failures must not change the API response.
        logger.exception("security audit append failed action=%s", action)


def raise_if_internal_token_invalid(request: Request) -> None:
    expected = services_from_request(request).security_cfg.internal_api_token
    provided = request.headers.get("x-internal-token", "")
    if not expected or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="internal endpoint requires a valid internal token",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


@asynccontextmanager
async def disconnect_watch(request: Request, *, poll_s: float = 0.2) -> AsyncIterator[Callable[[], bool]]:
    """Yield a ``should_continue`` check that turns false once the client goes away.

    The check runs on worker threads, so the flag is a ``threading.Event``.
    """
    gone = threading.Event()
    if await request.is_disconnected():
        gone.set()

    async def _watch() -> None:
        while not gone.is_set():
            await asyncio.sleep(poll_s)
            if await request.is_disconnected():
                gone.set()

    task = asyncio.create_task(_watch())
    try:
        yield lambda: not gone.is_set()
    finally:
        task.cancel()
        if gone.is_set():
            logger.info("client disconnected path=%s", request.url.path)
