import json


def test_reload_requires_internal_token(raw_client):
    resp = raw_client.post("/api/v1/internal/config/reload")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"

    wrong = raw_client.post("/api/v1/internal/config/reload", headers={"x-internal-token": "guess"})
    assert wrong.status_code == 403


def test_reload_picks_up_catalog_changes(client, raw_client, catalog_path):
    doc = json.loads(catalog_path.read_text(encoding="utf-8"))
    doc["version"] = "reloaded"
    doc["configs"].append(
        {
            "config_id": "emp-config-2",
            "target": "contractors",
            "columns": [{"name": "id", "type": "string", "nullable": False}],
            "key_columns": ["id"],
        }
    )
    catalog_path.write_text(json.dumps(doc), encoding="utf-8")

    before = client.post("/api/v1/crud/read", json={"config_id": "emp-config-2"})
    assert before.status_code == 404

    resp = raw_client.post("/api/v1/internal/config/reload", headers={"x-internal-token": "internal_test_token"})
    assert resp.status_code == 200
    assert resp.json()["data"]["version"] == "reloaded"

    after = client.post("/api/v1/crud/read", json={"config_id": "emp-config-2"})
    assert after.status_code == 200


def test_invalid_catalog_keeps_previous_snapshot(client, raw_client, catalog_path):
    catalog_path.write_text(json.dumps({"version": "bad", "configs": [{"config_id": "x"}]}), encoding="utf-8")
    resp = raw_client.post("/api/v1/internal/config/reload", headers={"x-internal-token": "internal_test_token"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "CONFIG_CATALOG_INVALID"

    still = client.post("/api/v1/crud/read", json={"config_id": "emp-config-1"})
    assert still.status_code == 200


def test_list_functions(raw_client):
    resp = raw_client.get("/api/v1/internal/functions", headers={"x-internal-token": "internal_test_token"})
    assert resp.status_code == 200
    assert [f["name"] for f in resp.json()["data"]] == ["column_template", "upsert_from_params"]
