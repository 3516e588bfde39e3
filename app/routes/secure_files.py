from __future__ import annotations

from fastapi import APIRouter, Query, Request

from app.routes._deps import require_credential, services_from_request, trace_id_from_request
from app.schemas import EncryptUploadRequest, success_envelope
from app.secure_files import UploadedFile

router = APIRouter(prefix="/api/v1/secure-files", tags=["secure-files"])


@router.post("/encrypt-upload")
def encrypt_upload(payload: EncryptUploadRequest, request: Request):
    credential = require_credential(request, payload.access_token)
    services = services_from_request(request)
    files = [UploadedFile(name=f.name, content_type=f.content_type, base64=f.base64) for f in payload.files]
    handles = services.secure_files.encrypt_and_store(payload.document_type, files, credential)
    return success_envelope(handles, trace_id_from_request(request), message=f"{len(handles)} file(s) stored")


@router.get("/list-decrypted-files")
def list_decrypted_files(
    request: Request,
    document_type: str = Query(min_length=1),
    access_token: str | None = Query(default=None),
):
    credential = require_credential(request, access_token)
    services = services_from_request(request)
    entries = services.secure_files.list_and_decrypt(document_type, credential)
    failed = sum(1 for e in entries if "error" in e)
    message = "ok" if not failed else f"{failed} file(s) could not be decrypted"
    return success_envelope(entries, trace_id_from_request(request), message=message)
