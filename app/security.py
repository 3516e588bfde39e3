from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.errors import MalformedRequest, Unauthorized


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        if value.strip().isdigit():
            return int(value.strip())
    return None


def _as_str_set(value: Any) -> frozenset[str]:
    if isinstance(value, str):
        return frozenset(_split_csv(value))
    if isinstance(value, (list, tuple, set)):
        return frozenset(str(x).strip() for x in value if str(x).strip())
    return frozenset()


def redact_sensitive(value: object) -> object:
    sensitive_keys = {
        "authorization",
        "token",
        "secret",
        "password",
        "api_key",
        "apikey",
        "access_token",
        "accesstoken",
        "x-internal-token",
        "base64",
    }
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if key_lower in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("sk-", "bearer ", "token")):
            return "***REDACTED***"
    return value


@dataclass(frozen=True)
class CredentialContext:
    """The caller's verified bearer token, passed explicitly to every operation."""

    token: str = field(repr=False)
    subject: str
    org_id: str
    roles: frozenset[str]
    document_types: frozenset[str]
    claims: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def has_any_role(self, required: frozenset[str] | set[str] | tuple[str, ...]) -> bool:
        if not required:
            return True
        return bool(self.roles & set(required))


@dataclass
class JwtSecurityConfig:
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    org_claim: str
    roles_claim: str
    document_types_claim: str
    log_redaction_enabled: bool
    internal_api_token: str

    @classmethod
    def from_env(cls) -> "JwtSecurityConfig":
        return cls(
            issuer=os.environ.get("JWT_ISSUER", "").strip(),
            audience=os.environ.get("JWT_AUDIENCE", "").strip(),
            shared_secret=os.environ.get("JWT_SHARED_SECRET", "").strip(),
            required_claims=_split_csv(os.environ.get("JWT_REQUIRED_CLAIMS", "sub,exp")),
            org_claim=os.environ.get("JWT_ORG_CLAIM", "org_id").strip() or "org_id",
            roles_claim=os.environ.get("JWT_ROLES_CLAIM", "roles").strip() or "roles",
            document_types_claim=os.environ.get("JWT_DOCUMENT_TYPES_CLAIM", "document_types").strip()
            or "document_types",
            log_redaction_enabled=_env_bool("SECURITY_LOG_REDACTION_ENABLED", True),
            internal_api_token=os.environ.get("INTERNAL_API_TOKEN", "").strip(),
        )


def _parse_token_parts(token: str) -> tuple[dict[str, Any], dict[str, Any], str, str]:
    parts = token.split(".")
    if len(parts) != 3:
        raise Unauthorized("invalid token format", code="AUTH_UNAUTHORIZED")
    header_raw, payload_raw, signature_raw = parts
    try:
        header_obj = json.loads(_b64url_decode(header_raw))
        payload_obj = json.loads(_b64url_decode(payload_raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise Unauthorized("invalid token payload", code="AUTH_UNAUTHORIZED") from None
    if not isinstance(header_obj, dict) or not isinstance(payload_obj, dict):
        raise Unauthorized("invalid token payload", code="AUTH_UNAUTHORIZED")
    return header_obj, payload_obj, f"{header_raw}.{payload_raw}", signature_raw


def extract_bearer_token(*, authorization: str | None, fallback_token: str | None = None) -> str:
    """Pick the token from the Authorization header, else from a body/query field.

    A request without any credential is malformed, never anonymous.
    """
    if authorization:
        prefix = "Bearer "
        if not authorization.startswith(prefix):
            raise Unauthorized("invalid Authorization header", code="AUTH_UNAUTHORIZED")
        token = authorization[len(prefix) :].strip()
        if not token:
            raise Unauthorized("empty bearer token", code="AUTH_UNAUTHORIZED")
        return token
    if fallback_token and fallback_token.strip():
        return fallback_token.strip()
    raise MalformedRequest("missing bearer token", code="AUTH_CREDENTIAL_MISSING")


def verify_bearer_token(*, token: str, cfg: JwtSecurityConfig) -> CredentialContext:
    header_obj, payload_obj, signing_input, signature_raw = _parse_token_parts(token)
    if str(header_obj.get("alg", "")).upper() != "HS256":
        raise Unauthorized("unsupported jwt algorithm", code="AUTH_UNAUTHORIZED")
    if not cfg.shared_secret:
        raise Unauthorized("jwt shared secret not configured", code="AUTH_UNAUTHORIZED")
    expected = _b64url_encode(
        hmac.new(
            cfg.shared_secret.encode("utf-8"),
            signing_input.encode("ascii"),
            hashlib.sha256,
        ).digest()
    )
    if not hmac.compare_digest(expected, signature_raw):
        raise Unauthorized("invalid token signature", code="AUTH_UNAUTHORIZED")

    now_ts = int(datetime.now(UTC).timestamp())
    exp = _as_int(payload_obj.get("exp"))
    if exp is None or exp <= now_ts:
        raise Unauthorized("token expired", code="AUTH_UNAUTHORIZED")
    nbf = _as_int(payload_obj.get("nbf"))
    if nbf is not None and nbf > now_ts:
        raise Unauthorized("token not yet valid", code="AUTH_UNAUTHORIZED")

    if cfg.issuer and str(payload_obj.get("iss", "")) != cfg.issuer:
        raise Unauthorized("jwt issuer mismatch", code="AUTH_UNAUTHORIZED")
    if cfg.audience:
        aud = payload_obj.get("aud")
        if isinstance(aud, list):
            aud_ok = cfg.audience in {str(x) for x in aud}
        else:
            aud_ok = str(aud or "") == cfg.audience
        if not aud_ok:
            raise Unauthorized("jwt audience mismatch", code="AUTH_UNAUTHORIZED")

    for claim in cfg.required_claims:
        if claim not in payload_obj:
            raise Unauthorized(f"missing required claim: {claim}", code="AUTH_UNAUTHORIZED")

    subject = str(payload_obj.get("sub") or "").strip()
    if not subject:
        raise Unauthorized("missing subject claim", code="AUTH_UNAUTHORIZED")
    # Callers without an organization claim are scoped to themselves.
    org_id = str(payload_obj.get(cfg.org_claim) or "").strip() or f"user:{subject}"
    return CredentialContext(
        token=token,
        subject=subject,
        org_id=org_id,
        roles=_as_str_set(payload_obj.get(cfg.roles_claim)),
        document_types=_as_str_set(payload_obj.get(cfg.document_types_claim)),
        claims=payload_obj,
    )


def parse_bearer_credential(
    *,
    authorization: str | None,
    cfg: JwtSecurityConfig,
    fallback_token: str | None = None,
) -> CredentialContext:
    token = extract_bearer_token(authorization=authorization, fallback_token=fallback_token)
    return verify_bearer_token(token=token, cfg=cfg)
