from __future__ import annotations

from fastapi import APIRouter, Request

from app.config_registry import CatalogError
from app.errors import ApiError
from app.routes._deps import raise_if_internal_token_invalid, services_from_request, trace_id_from_request
from app.schemas import success_envelope

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/config/reload")
def reload_config(request: Request):
    raise_if_internal_token_invalid(request)
    services = services_from_request(request)
    try:
        summary = services.reload_catalog()
    except CatalogError as exc:
        raise ApiError(
            code="CONFIG_CATALOG_INVALID",
            message=str(exc),
            error_class="validation",
            retryable=False,
            http_status=400,
        ) from exc
    return success_envelope(summary, trace_id_from_request(request), message="catalog reloaded")


@router.get("/functions")
def list_functions(request: Request):
    raise_if_internal_token_invalid(request)
    services = services_from_request(request)
    return success_envelope(services.function_gateway.list_specs(), trace_id_from_request(request))
