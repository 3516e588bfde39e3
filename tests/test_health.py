def test_health_endpoint(raw_client):
    resp = raw_client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}
    assert resp.headers["x-trace-id"] == body["meta"]["trace_id"]


def test_api_health_endpoint_alias(raw_client):
    resp = raw_client.get("/api/v1/health", headers={"x-trace-id": "trace_health_1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["trace_id"] == "trace_health_1"
