from __future__ import annotations

import json

from fastapi.testclient import TestClient

from app.main import create_app
from app.repositories.audit_logs import SqliteAuditLogsRepository, create_audit_logs_repository_from_env


def test_security_audit_outlives_the_app_on_sqlite(monkeypatch, tmp_path, token_for):
    monkeypatch.setenv("CRUD_STORE_BACKEND", "sqlite")
    monkeypatch.setenv("CRUD_STORE_SQLITE_PATH", str(tmp_path / "crud.sqlite3"))
    app = create_app()
    assert isinstance(app.state.services.audit_logs, SqliteAuditLogsRepository)

    resp = TestClient(app).post(
        "/api/v1/crud/read",
        json={"config_id": "user-roles"},
        headers={"Authorization": f"Bearer {token_for(roles=['employee'])}"},
    )
    assert resp.status_code == 403

    blocked = create_audit_logs_repository_from_env().list_for_org(org_id="org_acme", action="security_blocked")
    assert [entry["error_code"] for entry in blocked] == ["AUTH_FORBIDDEN"]


def test_reload_moves_configs_and_document_types_together(app, catalog_path):
    services = app.state.services
    assert services.document_types.get("visa") is None

    doc = json.loads(catalog_path.read_text(encoding="utf-8"))
    doc["version"] = "with-visa"
    doc["document_types"].append({"document_type": "visa", "roles": ["employee"]})
    catalog_path.write_text(json.dumps(doc), encoding="utf-8")

    summary = services.reload_catalog()

    assert summary["version"] == "with-visa"
    assert services.resolver.catalog.document_types["visa"] is services.document_types.get("visa")
    assert "visa" in services.document_types.permitted_for(frozenset({"employee"}))
