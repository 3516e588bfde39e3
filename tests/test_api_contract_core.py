from fastapi.testclient import TestClient
from starlette.requests import Request

from app.main import create_app


def _upsert(client, rows, **extra):
    return client.post("/api/v1/crud/bulk-upsert", json={"config_id": "emp-config-1", "input_rows": rows, **extra})


def test_unknown_config_returns_not_found_envelope(client):
    resp = client.post("/api/v1/crud/read", json={"config_id": "unknown-cfg"}, headers={"x-trace-id": "trace_cfg_404"})
    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == {
        "code": "CONFIG_NOT_FOUND",
        "message": "unknown config: unknown-cfg",
        "retryable": False,
        "class": "validation",
    }
    assert body["meta"]["trace_id"] == "trace_cfg_404"
    assert resp.headers["x-trace-id"] == "trace_cfg_404"
    assert resp.headers["x-request-id"].startswith("req_")


def test_disabled_config_is_not_found(client):
    resp = client.post("/api/v1/crud/read", json={"config_id": "legacy-payroll"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "CONFIG_DISABLED"


def test_request_id_is_echoed(client):
    resp = client.post("/api/v1/crud/read", json={"config_id": "emp-config-1"}, headers={"x-request-id": "req_fixed"})
    assert resp.headers["x-request-id"] == "req_fixed"


def test_upsert_then_read_round_trip(client):
    created = _upsert(client, [{"id": "E1", "name": "Alice", "salary": 1200, "active": True}])
    assert created.status_code == 200
    body = created.json()
    assert body["success"] is True
    assert body["message"] == "upsert completed"
    assert body["data"]["inserted"] == 1
    assert body["data"]["mode"] == "atomic"

    updated = _upsert(client, [{"id": "E1", "name": "Alice B."}])
    assert updated.json()["data"]["updated"] == 1

    read = client.post(
        "/api/v1/crud/read",
        json={"config_id": "emp-config-1", "params": {"filters": {"id": "E1"}}},
    )
    assert read.status_code == 200
    assert read.json()["message"] == "1 row(s)"
    row = read.json()["data"][0]
    assert row["name"] == "Alice B."
    assert row["salary"] == 1200
    assert row["active"] is True


def test_row_violations_return_422_with_details(client):
    resp = _upsert(client, [{"id": "E1", "name": "ok"}, {"name": "missing key", "salary": "high"}])
    assert resp.status_code == 422
    error = resp.json()["error"]
    assert error["code"] == "UPSERT_VALIDATION_FAILED"
    assert {(v["row_index"], v["code"]) for v in error["details"]["violations"]} == {
        (1, "MISSING_KEY"),
        (1, "TYPE_MISMATCH"),
    }
    assert client.post("/api/v1/crud/read", json={"config_id": "emp-config-1"}).json()["data"] == []


def test_malformed_body_returns_400_with_fields(client):
    resp = client.post("/api/v1/crud/bulk-upsert", json={"config_id": "emp-config-1", "mode": "sometimes"})
    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "REQ_VALIDATION_FAILED"
    assert "body.input_rows" in error["details"]["fields"]
    assert "body.mode" in error["details"]["fields"]


def test_bad_read_params_return_400(client):
    resp = client.post(
        "/api/v1/crud/read",
        json={"config_id": "emp-config-1", "params": {"filters": {"password": "x"}}},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "READ_FILTER_INVALID"


def test_write_without_role_is_forbidden(client_as):
    employee = client_as(roles=["employee"])
    resp = _upsert(employee, [{"id": "E1", "name": "Alice"}])
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert resp.json()["error"]["class"] == "security_sensitive"


def test_chunked_mode_reports_chunks(client):
    resp = _upsert(client, [{"id": f"E{i}", "name": "n"} for i in range(3)], mode="chunked")
    data = resp.json()["data"]
    assert data["success"] is True
    assert all(c["status"] == "committed" for c in data["chunks"])


def test_document_types_enumeration_over_api(client_as):
    employee = client_as(roles=["employee"])
    resp = employee.post("/api/v1/crud/read", json={"config_id": "document-types"})
    assert resp.status_code == 200
    assert "offer_letter" not in [r["document_type"] for r in resp.json()["data"]]


def test_csv_upload_upserts_rows(client):
    resp = client.post(
        "/api/v1/crud/bulk-upsert/csv",
        data={"config_id": "emp-config-1"},
        files={"file": ("employees.csv", b"id,name,salary\nE1,Alice,10\nE2,Bob,\n", "text/csv")},
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["inserted"] == 2

    read = client.post("/api/v1/crud/read", json={"config_id": "emp-config-1", "params": {"filters": {"id": "E2"}}})
    assert read.json()["data"][0]["salary"] is None


def test_csv_upload_reports_cell_errors(client):
    resp = client.post(
        "/api/v1/crud/bulk-upsert/csv",
        data={"config_id": "emp-config-1"},
        files={"file": ("employees.csv", b"id,name,salary\nE1,Alice,lots\n", "text/csv")},
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["details"]["violations"][0]["column"] == "salary"


def test_function_endpoint_returns_template(client):
    resp = client.post("/api/v1/crud/function", json={"config_id": "user-roles-template-download"})
    assert resp.status_code == 200
    assert resp.json()["data"]["headers"] == ["user_id", "role", "granted_at", "attributes"]


def test_function_endpoint_runs_named_upsert(client):
    resp = client.post(
        "/api/v1/crud/function",
        json={"config_id": "ums_insert_employee_invites", "params": {"rows": [{"email": "new@example.com"}]}},
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["inserted"] == 1

    invalid = client.post("/api/v1/crud/function", json={"config_id": "ums_insert_employee_invites", "params": {}})
    assert invalid.status_code == 400
    assert invalid.json()["error"]["code"] == "FUNCTION_PARAMS_INVALID"


def test_job_dispatch_returns_202_and_queues(client, app):
    resp = client.post(
        "/api/v1/jobs/dispatch",
        json={"job": {"job_type": "reindex", "payload": {"config_id": "emp-config-1"}}},
    )
    assert resp.status_code == 202
    data = resp.json()["data"]
    assert data["accepted"] is True
    assert data["queued"] is True

    queue = app.state.services.job_gateway.transport.queue
    (msg,) = queue.drain(org_id="org_acme", queue_name="jobs")
    assert msg.payload["job_id"] == data["job_id"]
    assert msg.payload["submitted_by"] == "user_alice"


def test_job_dispatch_to_full_queue_is_retryable_503(monkeypatch, token_for):
    monkeypatch.setenv("JOB_QUEUE_MAX_PENDING", "1")
    api = TestClient(create_app())
    headers = {"Authorization": f"Bearer {token_for()}"}
    job = {"job": {"job_type": "reindex", "payload": {}}}

    assert api.post("/api/v1/jobs/dispatch", json=job, headers=headers).status_code == 202
    resp = api.post("/api/v1/jobs/dispatch", json=job, headers=headers)

    assert resp.status_code == 503
    error = resp.json()["error"]
    assert (error["code"], error["retryable"], error["class"]) == ("JOB_QUEUE_FULL", True, "transient")


def test_job_dispatch_requires_job_type(client):
    resp = client.post("/api/v1/jobs/dispatch", json={"job": {"payload": {}}})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


def test_unknown_route_returns_envelope(client):
    resp = client.get("/api/v1/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "REQ_NOT_FOUND"


def test_csv_upload_without_write_role_is_forbidden_before_parsing(client_as, app):
    employee = client_as(roles=["employee"])
    resp = employee.post(
        "/api/v1/crud/bulk-upsert/csv",
        data={"config_id": "emp-config-1"},
        files={"file": ("employees.csv", b"id,name,salary\nE1,Alice,lots\n", "text/csv")},
    )
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "AUTH_FORBIDDEN"
    assert "details" not in error
    assert "salary" not in resp.text
    denied = app.state.services.audit_logs.list_for_org(org_id="org_acme", action="security_blocked")
    assert [x["error_code"] for x in denied] == ["AUTH_FORBIDDEN"]


def test_csv_upload_to_function_config_is_rejected(client):
    resp = client.post(
        "/api/v1/crud/bulk-upsert/csv",
        data={"config_id": "ums_insert_employee_invites"},
        files={"file": ("invites.csv", b"email\nnew@example.com\n", "text/csv")},
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "CONFIG_OPERATION_UNSUPPORTED"


def test_disconnected_client_abandons_unstarted_chunks(client, monkeypatch):
    async def _gone(self):
        return True

    monkeypatch.setattr(Request, "is_disconnected", _gone)
    resp = client.post(
        "/api/v1/crud/bulk-upsert",
        json={
            "config_id": "user-roles",
            "mode": "chunked",
            "input_rows": [{"user_id": f"u{i}", "role": "viewer"} for i in range(250)],
        },
    )
    monkeypatch.undo()

    data = resp.json()["data"]
    assert data["inserted"] == 0
    assert [c["status"] for c in data["chunks"]] == ["abandoned", "abandoned"]
    assert {e["code"] for e in data["errors"]} == {"REQ_CANCELLED"}
    assert client.post("/api/v1/crud/read", json={"config_id": "user-roles"}).json()["data"] == []


def test_disconnected_client_rolls_back_atomic_csv_upload(client, monkeypatch):
    async def _gone(self):
        return True

    monkeypatch.setattr(Request, "is_disconnected", _gone)
    resp = client.post(
        "/api/v1/crud/bulk-upsert/csv",
        data={"config_id": "emp-config-1"},
        files={"file": ("employees.csv", b"id,name\nE1,Alice\n", "text/csv")},
    )
    monkeypatch.undo()

    assert resp.status_code == 499
    assert resp.json()["error"]["code"] == "REQ_CANCELLED"
    assert client.post("/api/v1/crud/read", json={"config_id": "emp-config-1"}).json()["data"] == []
