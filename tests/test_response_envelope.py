import pytest

from app.errors import (
    ConflictPersistenceFailure,
    DecryptionFailed,
    DownstreamFailure,
    QueryFailed,
    Timeout,
    UnknownDocumentType,
    ValidationFailed,
)
from app.schemas import error_envelope, success_envelope


def test_success_envelope_shape():
    body = success_envelope({"n": 1}, "trace_1", message="1 row(s)")
    assert body == {"success": True, "data": {"n": 1}, "message": "1 row(s)", "meta": {"trace_id": "trace_1"}}


def test_error_envelope_omits_empty_details():
    body = error_envelope(
        code="CONFIG_NOT_FOUND",
        message="unknown config",
        error_class="validation",
        retryable=False,
        trace_id="trace_2",
    )
    assert body["success"] is False
    assert body["message"] == body["error"]["message"]
    assert "details" not in body["error"]
    assert body["meta"] == {"trace_id": "trace_2"}


@pytest.mark.parametrize(
    "exc, status, error_class, retryable",
    [
        (ValidationFailed([{"row_index": 0, "code": "REQUIRED"}]), 422, "validation", False),
        (UnknownDocumentType("visa"), 404, "validation", False),
        (ConflictPersistenceFailure(), 409, "transient", True),
        (DecryptionFailed("file_1"), 500, "integrity", False),
        (Timeout(), 504, "transient", True),
        (QueryFailed(), 500, "transient", True),
    ],
)
def test_error_taxonomy_maps_to_status_and_class(exc, status, error_class, retryable):
    assert exc.http_status == status
    assert exc.error_class == error_class
    assert exc.retryable is retryable


def test_downstream_failure_is_retryable_by_default():
    exc = DownstreamFailure("worker unreachable")
    assert exc.retryable is True
    assert exc.http_status >= 500


def test_error_response_carries_trace_and_request_ids(raw_client):
    resp = raw_client.get("/route-not-exists", headers={"x-trace-id": "trace_env", "x-request-id": "req_env"})
    assert resp.status_code == 404
    assert resp.headers["x-trace-id"] == "trace_env"
    assert resp.headers["x-request-id"] == "req_env"
    body = resp.json()
    assert body["success"] is False
    assert set(body["error"].keys()) >= {"code", "message", "retryable", "class"}
    assert body["meta"]["trace_id"] == "trace_env"
