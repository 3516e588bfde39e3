from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ReadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    config_id: str = Field(min_length=1)
    params: dict[str, Any] | None = None
    access_token: str | None = Field(default=None, alias="accessToken")


class BulkUpsertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    config_id: str = Field(min_length=1)
    input_rows: list[Any]
    mode: Literal["atomic", "chunked", "per_row"] = "atomic"
    access_token: str | None = Field(default=None, alias="accessToken")


class FunctionCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    config_id: str = Field(min_length=1)
    params: dict[str, Any] | None = None
    access_token: str | None = Field(default=None, alias="accessToken")


class UploadFilePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    content_type: str = Field(default="application/octet-stream", alias="mimeType")
    base64: str = Field(min_length=1)


class EncryptUploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_type: str = Field(min_length=1)
    files: list[UploadFilePayload] = Field(min_length=1)
    access_token: str | None = Field(default=None, alias="accessToken")


class JobDescriptor(BaseModel):
    job_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class JobDispatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job: JobDescriptor
    access_token: str | None = Field(default=None, alias="accessToken")


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "message": message,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
