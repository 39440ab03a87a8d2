import logging
import uuid
from datetime import datetime
from typing import BinaryIO, Optional

from db import UPLOAD_REQUESTS
from models import MAX_ATTEMPTS, UploadStatus, can_retry, utcnow
from storage import DEFAULT_BUCKET, ObjectStorage, generate_object_key
from uploads import (
    UploadError,
    UploadStateError,
    acquire_for_processing,
    compute_checksum,
    mark_completed,
    mark_failed,
    record_file_metadata,
    set_metadata_status,
    validate_file,
)

logger = logging.getLogger("file_uploader.processing")

DEFAULT_CONTENT_TYPE = "application/octet-stream"


async def _acquire(db, request: dict, max_attempts: int, now: datetime) -> None:
    if await acquire_for_processing(db, request["_id"], max_attempts=max_attempts, now=now):
        return
    status = request["status"]
    if status == UploadStatus.FAILED.value and not can_retry(request, max_attempts):
        raise UploadStateError(f"Upload request {request['_id']} used all {max_attempts} attempts")
    raise UploadStateError(f"Upload request {request['_id']} cannot be processed from {status}")


async def process_upload(
    db,
    storage: ObjectStorage,
    request_id,
    stream: BinaryIO,
    size: int,
    metadata: Optional[dict] = None,
    bucket: str = DEFAULT_BUCKET,
    max_attempts: int = MAX_ATTEMPTS,
    now: Optional[datetime] = None,
) -> dict:
    """
    Store one file for an upload request.

    Acquires the request, validates and checksums the content, records its
    FileMetadata, hands the bytes to storage and completes the request. Any
    failure after acquisition marks the request FAILED and is re-raised as
    UploadError.
    """
    trace_id = uuid.uuid4().hex
    now = now or utcnow()

    request = await db[UPLOAD_REQUESTS].find_one({"_id": request_id})
    if request is None:
        raise UploadStateError(f"Upload request {request_id} not found")

    await _acquire(db, request, max_attempts, now)
    logger.info("[%s] Processing upload request %s", trace_id, request_id)

    try:
        validate_file(size)
        checksum = compute_checksum(stream)
        stream.seek(0)

        content_type = request.get("contentType") or DEFAULT_CONTENT_TYPE
        object_key = generate_object_key(request["clientId"], request["uploadId"], request.get("originalFilename"), now)
        meta = await record_file_metadata(db, request, object_key, checksum, metadata, now=now)

        try:
            storage_info = await storage.upload_stream(bucket, object_key, stream, size, content_type, metadata or {})
        except Exception as exc:
            await set_metadata_status(db, meta["_id"], UploadStatus.FAILED, now=now)
            raise UploadError(f"Storage upload failed: {exc}") from exc

        await set_metadata_status(db, meta["_id"], UploadStatus.COMPLETED, storage_info=storage_info, now=now)
        await mark_completed(db, request_id, meta["_id"], now=now)
    except Exception as exc:
        logger.exception("[%s] Upload processing failed for %s", trace_id, request_id)
        await mark_failed(db, request_id, str(exc), now=now)
        if isinstance(exc, UploadError):
            raise
        raise UploadError(f"Upload processing failed: {exc}") from exc

    logger.info("[%s] Upload request %s completed", trace_id, request_id)
    return {
        "status": UploadStatus.COMPLETED.value,
        "uploadRequestId": request_id,
        "fileMetadataId": meta["_id"],
        "fileUrl": storage_info.get("url"),
        "clientId": request["clientId"],
        "uploadId": request["uploadId"],
        "originalFilename": request.get("originalFilename"),
        "fileSize": size,
        "contentType": content_type,
        "checksum": checksum,
        "createdAt": request.get("createdAt"),
    }
