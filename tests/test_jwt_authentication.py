from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from datetime import UTC, datetime, timedelta

_READ = {"config_id": "emp-config-1"}


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _build_token(*, secret: str, claims: dict[str, object], alg: str = "HS256") -> str:
    header = {"alg": alg, "typ": "JWT"}
    header_raw = _b64url(json.dumps(header, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    payload_raw = _b64url(json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    signing_input = f"{header_raw}.{payload_raw}".encode("ascii")
    signature = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    return f"{header_raw}.{payload_raw}.{_b64url(signature)}"


def _claims(**overrides) -> dict[str, object]:
    now = datetime.now(UTC)
    claims: dict[str, object] = {
        "iss": "test-issuer",
        "aud": "test-audience",
        "sub": "user_a",
        "org_id": "org_a",
        "roles": ["hr_admin"],
        "exp": int((now + timedelta(minutes=10)).timestamp()),
    }
    claims.update(overrides)
    return claims


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_missing_credential_is_malformed_request(raw_client):
    resp = raw_client.post("/api/v1/crud/read", json=_READ)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "AUTH_CREDENTIAL_MISSING"


def test_expired_token_is_rejected(raw_client, token_for):
    resp = raw_client.post("/api/v1/crud/read", json=_READ, headers=_bearer(token_for(expires_in_s=-60)))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert resp.json()["error"]["class"] == "security_sensitive"


def test_token_signed_with_other_secret_is_rejected(raw_client, token_for):
    resp = raw_client.post("/api/v1/crud/read", json=_READ, headers=_bearer(token_for(secret="other_secret")))
    assert resp.status_code == 401


def test_non_hs256_algorithm_is_rejected(raw_client):
    token = _build_token(secret=os.environ["JWT_SHARED_SECRET"], claims=_claims(), alg="none")
    resp = raw_client.post("/api/v1/crud/read", json=_READ, headers=_bearer(token))
    assert resp.status_code == 401


def test_issuer_and_audience_must_match(raw_client):
    for claims in (_claims(iss="someone-else"), _claims(aud=["other-audience"])):
        token = _build_token(secret=os.environ["JWT_SHARED_SECRET"], claims=claims)
        resp = raw_client.post("/api/v1/crud/read", json=_READ, headers=_bearer(token))
        assert resp.status_code == 401


def test_non_bearer_authorization_header_is_rejected(raw_client):
    resp = raw_client.post("/api/v1/crud/read", json=_READ, headers={"Authorization": "Basic dXNlcjpwdw=="})
    assert resp.status_code == 401


def test_access_token_in_body_is_accepted(raw_client, token_for):
    resp = raw_client.post("/api/v1/crud/read", json={**_READ, "accessToken": token_for()})
    assert resp.status_code == 200
    assert resp.json()["data"] == []


def test_access_token_in_query_is_accepted(raw_client, token_for):
    resp = raw_client.get(
        "/api/v1/secure-files/list-decrypted-files",
        params={"document_type": "passport", "access_token": token_for()},
    )
    assert resp.status_code == 200
    assert resp.json()["data"] == []


def test_token_without_org_claim_is_scoped_to_subject(raw_client, token_for):
    owner = token_for(subject="user_solo", org_id=None)
    stored = raw_client.post(
        "/api/v1/crud/bulk-upsert",
        json={"config_id": "emp-config-1", "input_rows": [{"id": "S1", "name": "Solo"}]},
        headers=_bearer(owner),
    )
    assert stored.status_code == 200

    audit = raw_client.app.state.services.audit_logs
    employee = token_for(subject="user_solo", org_id=None, roles=["employee"])
    raw_client.post("/api/v1/crud/read", json={"config_id": "user-roles"}, headers=_bearer(employee))
    denied = audit.list_for_org(org_id="user:user_solo", action="security_blocked")
    assert denied and denied[-1]["subject"] == "user_solo"


def test_rejections_are_audited_with_redacted_headers(raw_client, token_for):
    token = token_for(expires_in_s=-60)
    raw_client.post("/api/v1/crud/read", json=_READ, headers=_bearer(token))
    logs = raw_client.app.state.services.audit_logs.list_for_org(org_id="org_unknown", action="security_blocked")
    assert logs[-1]["error_code"] == "AUTH_UNAUTHORIZED"
    assert token not in json.dumps(logs[-1])
