"""
Package upload and management endpoints.

Paths follow the layout builders already use:

    PUT    /{user}/packages/{package}/{version}/{type}/{key}            raw body, key known
    POST   /{user}/packages/{package}/{version}/{type}                  multipart "file" field
    POST   /{user}/packages/{package}/{version}/failure                 record a failed build
    POST   /{user}/packages/{package}/{version}/update                  $set / $unset on the src record
    GET    /{user}/packages/{package}[/{version}[/{type}[/{built}]]]     list records
    DELETE /{user}/packages/{package}[/{version}[/{type}[/{built}]]]     delete records and blobs
    GET    /blobs/{key}                                                 download an artifact

{built} is a prefix of the R version the binaries were built with, e.g. "4.3".

Builder metadata travels in request headers (PUT) or form fields (POST)
whose names start with the configured prefix.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from starlette.datastructures import UploadFile

from cranlike.core.dependencies import get_coordinator
from cranlike.domain.errors import ValidationError
from cranlike.domain.models import PackageRecord, RecordUpdate
from cranlike.services.ingestion import IngestionCoordinator


router = APIRouter()


def _record_json(record: PackageRecord) -> Dict[str, Any]:
    return record.model_dump(mode="json")


async def _read_upload(upload: UploadFile, chunk_size: int) -> AsyncIterator[bytes]:
    while True:
        chunk = await upload.read(chunk_size)
        if not chunk:
            break
        yield chunk


def _form_fields(form) -> Dict[str, str]:
    return {name: value for name, value in form.multi_items() if isinstance(value, str)}


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


@router.put("/{user}/packages/{package}/{version}/{type}/{key}")
async def put_package(
    user: str,
    package: str,
    version: str,
    type: str,
    key: str,
    request: Request,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> dict:
    """
    Upload an artifact whose content key is already known.

    The request body is streamed straight into the blob store. If a blob with
    this key already exists the body is not read at all.
    """
    record = await coordinator.upload(
        user, package, version, type, key, request.stream(), request.headers
    )
    return _record_json(record)


@router.post("/{user}/packages/{package}/{version}/failure")
async def post_failure(
    user: str,
    package: str,
    version: str,
    request: Request,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> dict:
    form = await request.form()
    record = await coordinator.submit_failure(user, package, version, _form_fields(form))
    return _record_json(record)


@router.post("/{user}/packages/{package}/{version}/update")
async def post_update(
    user: str,
    package: str,
    version: str,
    update: RecordUpdate,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> dict:
    record = await coordinator.update_record(user, package, version, update)
    return _record_json(record)


@router.post("/{user}/packages/{package}/{version}/{type}")
async def post_package(
    user: str,
    package: str,
    version: str,
    type: str,
    request: Request,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> dict:
    """Upload an artifact as multipart form data; its MD5 becomes the content key."""
    form = await request.form()
    try:
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            raise ValidationError("Missing parameter 'file' in request")
        record = await coordinator.upload_file(
            user,
            package,
            version,
            type,
            _read_upload(upload, coordinator.config.upload_chunk_size),
            _form_fields(form),
        )
    finally:
        await form.close()
    return _record_json(record)


# ---------------------------------------------------------------------------
# Listing and deletion
# ---------------------------------------------------------------------------


@router.get("/{user}/packages/{package}")
@router.get("/{user}/packages/{package}/{version}")
@router.get("/{user}/packages/{package}/{version}/{type}")
@router.get("/{user}/packages/{package}/{version}/{type}/{built}")
async def list_packages(
    user: str,
    package: str,
    version: Optional[str] = None,
    type: Optional[str] = None,
    built: Optional[str] = None,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> List[dict]:
    records = await coordinator.list_records(user, package, version, type, built)
    return [_record_json(r) for r in records]


@router.delete("/{user}/packages/{package}")
@router.delete("/{user}/packages/{package}/{version}")
@router.delete("/{user}/packages/{package}/{version}/{type}")
@router.delete("/{user}/packages/{package}/{version}/{type}/{built}")
async def delete_packages(
    user: str,
    package: str,
    version: Optional[str] = None,
    type: Optional[str] = None,
    built: Optional[str] = None,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> dict:
    deleted = await coordinator.delete_records(user, package, version, type, built)
    return {
        "user": user,
        "package": package,
        "deleted": [
            {"version": r.version, "type": r.type.value, "file_id": r.file_id} for r in deleted
        ],
    }


# ---------------------------------------------------------------------------
# Downloads
# ---------------------------------------------------------------------------


@router.get("/blobs/{key}")
async def get_blob(
    key: str,
    coordinator: IngestionCoordinator = Depends(get_coordinator),
) -> StreamingResponse:
    blob, stream = await coordinator.open_blob(key)
    return StreamingResponse(
        stream,
        media_type="application/octet-stream",
        headers={
            "Content-Disposition": f'attachment; filename="{blob.filename}"',
            "Content-Length": str(blob.length),
        },
    )
