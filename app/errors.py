from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class MalformedRequest(ApiError):
    def __init__(self, message: str, *, code: str = "REQ_MALFORMED", details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
            details=details,
        )


class UnknownConfig(ApiError):
    def __init__(self, config_id: str) -> None:
        super().__init__(
            code="CONFIG_NOT_FOUND",
            message=f"unknown config: {config_id}",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
        self.config_id = config_id


class ConfigDisabled(ApiError):
    def __init__(self, config_id: str) -> None:
        super().__init__(
            code="CONFIG_DISABLED",
            message=f"config is disabled: {config_id}",
            error_class="business_rule",
            retryable=False,
            http_status=404,
        )
        self.config_id = config_id


class UnknownDocumentType(ApiError):
    def __init__(self, document_type: str) -> None:
        super().__init__(
            code="DOC_TYPE_NOT_FOUND",
            message=f"unknown document type: {document_type}",
            error_class="validation",
            retryable=False,
            http_status=404,
        )
        self.document_type = document_type


class Unauthorized(ApiError):
    """Access denied. Messages stay generic so existence is not revealed."""

    def __init__(self, message: str = "operation not permitted", *, code: str = "AUTH_FORBIDDEN") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=401 if code == "AUTH_UNAUTHORIZED" else 403,
        )


class ValidationFailed(ApiError):
    def __init__(self, violations: list[dict[str, Any]]) -> None:
        super().__init__(
            code="UPSERT_VALIDATION_FAILED",
            message=f"{len(violations)} validation error(s); nothing was persisted",
            error_class="validation",
            retryable=False,
            http_status=422,
            details={"violations": violations},
        )
        self.violations = violations


class ConflictPersistenceFailure(ApiError):
    def __init__(self, message: str = "concurrent write conflict", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="UPSERT_CONFLICT",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=409,
            details=details,
        )


class DecryptionFailed(ApiError):
    def __init__(self, file_id: str, *, code: str = "FILE_DECRYPTION_FAILED", message: str | None = None) -> None:
        super().__init__(
            code=code,
            message=message or f"ciphertext failed authentication: {file_id}",
            error_class="integrity",
            retryable=False,
            http_status=500,
        )
        self.file_id = file_id


class Timeout(ApiError):
    def __init__(self, message: str = "downstream call timed out") -> None:
        super().__init__(
            code="DOWNSTREAM_TIMEOUT",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=504,
        )


class DownstreamFailure(ApiError):
    def __init__(
        self,
        message: str = "downstream service unavailable",
        *,
        code: str = "DOWNSTREAM_UNAVAILABLE",
        http_status: int = 503,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="transient",
            retryable=True,
            http_status=http_status,
            details=details,
        )


class QueryFailed(ApiError):
    def __init__(self, message: str = "read query failed") -> None:
        super().__init__(
            code="READ_QUERY_FAILED",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=500,
        )


def store_error_from_exception(exc: BaseException, *, operation: str) -> ApiError:
    """Map a lower-level driver error onto the retryable taxonomy."""
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, TimeoutError):
        return Timeout(f"{operation} timed out")
    text = str(exc).lower()
    if "timeout" in text or "canceling statement" in text:
        return Timeout(f"{operation} timed out")
    if any(marker in text for marker in ("database is locked", "could not serialize", "deadlock")):
        return ConflictPersistenceFailure(f"{operation} hit concurrent write contention")
    return DownstreamFailure(f"{operation} failed: {type(exc).__name__}")
