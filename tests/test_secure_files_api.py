import base64
import os


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _upload(client, document_type: str, files: list[dict]):
    return client.post(
        "/api/v1/secure-files/encrypt-upload",
        json={"document_type": document_type, "files": files},
    )


def test_encrypt_upload_then_list_decrypted(client):
    content = os.urandom(1024)
    stored = _upload(client, "passport", [{"name": "passport.pdf", "mimeType": "application/pdf", "base64": _b64(content)}])
    assert stored.status_code == 200
    handle = stored.json()["data"][0]
    assert handle["filename"] == "passport.pdf"
    assert handle["size_bytes"] == 1024
    assert stored.json()["message"] == "1 file(s) stored"

    listed = client.get("/api/v1/secure-files/list-decrypted-files", params={"document_type": "passport"})
    assert listed.status_code == 200
    entries = listed.json()["data"]
    assert [e["file_id"] for e in entries] == [handle["file_id"]]
    assert base64.b64decode(entries[0]["base64"]) == content
    assert entries[0]["content_type"] == "application/pdf"


def test_list_is_per_owner(client, client_as):
    _upload(client, "passport", [{"name": "a.pdf", "mimeType": "application/pdf", "base64": _b64(b"mine")}])
    other = client_as(subject="user_bob")
    assert other.get("/api/v1/secure-files/list-decrypted-files", params={"document_type": "passport"}).json()["data"] == []


def test_tampered_file_is_reported_inside_success_envelope(client, app):
    _upload(
        client,
        "pan_card",
        [
            {"name": "a.pdf", "mimeType": "application/pdf", "base64": _b64(b"alpha")},
            {"name": "b.pdf", "mimeType": "application/pdf", "base64": _b64(b"beta")},
        ],
    )
    services = app.state.services
    records = services.secure_files._repository.list_for_scope(
        org_id="org_acme", document_type="pan_card", owner_id="user_alice"
    )
    victim = records[0]
    services.secure_files._repository.insert(
        record={**victim, "encryption": {**victim["encryption"], "key_version": "v9"}}
    )

    listed = client.get("/api/v1/secure-files/list-decrypted-files", params={"document_type": "pan_card"})
    assert listed.status_code == 200
    body = listed.json()
    assert body["message"] == "1 file(s) could not be decrypted"
    by_id = {e["file_id"]: e for e in body["data"]}
    assert by_id[victim["file_id"]]["error"]["code"] == "FILE_KEY_UNAVAILABLE"
    assert base64.b64decode(by_id[records[1]["file_id"]]["base64"]) == b"beta"


def test_unpermitted_document_type_is_forbidden(client_as):
    employee = client_as(roles=["employee"])
    resp = employee.get("/api/v1/secure-files/list-decrypted-files", params={"document_type": "offer_letter"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"


def test_unknown_document_type_returns_404(client_as):
    scoped = client_as(document_types=["driving_licence"])
    resp = _upload(scoped, "driving_licence", [{"name": "d.pdf", "base64": _b64(b"x")}])
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "DOC_TYPE_NOT_FOUND"


def test_invalid_payload_is_rejected(client):
    resp = _upload(client, "passport", [{"name": "a.pdf", "mimeType": "application/pdf", "base64": "%%%"}])
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "FILE_PAYLOAD_INVALID"

    empty = client.post("/api/v1/secure-files/encrypt-upload", json={"document_type": "passport", "files": []})
    assert empty.status_code == 400
    assert empty.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


def test_base64_payload_is_not_echoed_in_errors(client):
    secret_blob = _b64(b"confidential" * 10)
    resp = _upload(client, "passport", [{"name": "a.exe", "mimeType": "application/x-msdownload", "base64": secret_blob}])
    assert resp.status_code == 400
    assert secret_blob not in resp.text
