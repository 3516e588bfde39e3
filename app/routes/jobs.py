from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.routes._deps import require_credential, services_from_request, trace_id_from_request
from app.schemas import JobDispatchRequest, success_envelope

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


@router.post("/dispatch")
def dispatch_job(payload: JobDispatchRequest, request: Request):
    credential = require_credential(request, payload.access_token)
    services = services_from_request(request)
    ack = services.job_gateway.dispatch(payload.job.model_dump(mode="json"), credential)
    return JSONResponse(
        status_code=202,
        content=success_envelope(ack, trace_id_from_request(request), message="job accepted"),
    )
