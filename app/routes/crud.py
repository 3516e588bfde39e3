from __future__ import annotations

from fastapi import APIRouter, File, Form, Header, Request, UploadFile
from fastapi.concurrency import run_in_threadpool

from app.access import authorize_write, require_operation
from app.csv_import import rows_from_csv
from app.routes._deps import disconnect_watch, require_credential, services_from_request, trace_id_from_request
from app.schemas import BulkUpsertRequest, FunctionCallRequest, ReadRequest, success_envelope
from app.upsert_engine import UpsertResult

router = APIRouter(prefix="/api/v1/crud", tags=["crud"])


def _upsert_envelope(result: UpsertResult, request: Request) -> dict:
    data = result.to_dict()
    data["replayed"] = result.replayed
    message = "upsert completed" if result.success else "upsert completed with errors"
    return success_envelope(data, trace_id_from_request(request), message=message)


@router.post("/read")
def read_rows(payload: ReadRequest, request: Request):
    credential = require_credential(request, payload.access_token)
    services = services_from_request(request)
    rows = list(services.read_engine.read(payload.config_id, payload.params, credential))
    return success_envelope(rows, trace_id_from_request(request), message=f"{len(rows)} row(s)")


@router.post("/bulk-upsert")
async def bulk_upsert(
    payload: BulkUpsertRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    credential = require_credential(request, payload.access_token)
    services = services_from_request(request)
    async with disconnect_watch(request) as should_continue:
        result = await run_in_threadpool(
            services.upsert_engine.upsert,
            payload.config_id,
            payload.input_rows,
            credential,
            mode=payload.mode,
            idempotency_key=idempotency_key,
            should_continue=should_continue,
        )
    return _upsert_envelope(result, request)


@router.post("/bulk-upsert/csv")
async def bulk_upsert_csv(
    request: Request,
    config_id: str = Form(...),
    mode: str = Form(default="atomic"),
    access_token: str | None = Form(default=None),
    file: UploadFile = File(...),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    credential = require_credential(request, access_token)
    services = services_from_request(request)
    content = await file.read()

    def _run(should_continue):
        descriptor = services.resolver.resolve(config_id)
        # Cell coercion reports column names and types, so access is settled first.
        authorize_write(descriptor, credential)
        require_operation(descriptor, "upsert")
        rows = rows_from_csv(descriptor, content)
        return services.upsert_engine.upsert(
            config_id,
            rows,
            credential,
            mode=mode,
            idempotency_key=idempotency_key,
            should_continue=should_continue,
        )

    async with disconnect_watch(request) as should_continue:
        result = await run_in_threadpool(_run, should_continue)
    return _upsert_envelope(result, request)


@router.post("/function")
def call_function(payload: FunctionCallRequest, request: Request):
    credential = require_credential(request, payload.access_token)
    services = services_from_request(request)
    data = services.function_gateway.call(payload.config_id, payload.params, credential)
    return success_envelope(data, trace_id_from_request(request))
