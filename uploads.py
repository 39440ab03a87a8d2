import hashlib
import logging
from datetime import datetime
from typing import BinaryIO, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from db import FILE_METADATA, UPLOAD_REQUESTS
from models import (
    CANCELLABLE,
    MAX_ATTEMPTS,
    UploadStatus,
    can_transition,
    new_file_metadata,
    new_upload_request,
    utcnow,
)

logger = logging.getLogger("file_uploader.uploads")

CHUNK_SIZE = 64 * 1024
MAX_FILE_SIZE = 100 * 1024 * 1024


class UploadError(Exception):
    pass


class UploadStateError(UploadError):
    pass


class UploadValidationError(UploadError):
    pass


def validate_file(size: int, max_size: int = MAX_FILE_SIZE) -> None:
    if not size:
        raise UploadValidationError("File is empty")
    if size > max_size:
        raise UploadValidationError(
            f"File size exceeds maximum allowed limit of {max_size / (1024 * 1024):.2f} MB"
        )


def compute_checksum(stream: BinaryIO) -> str:
    digest = hashlib.sha256()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        digest.update(chunk)
    return digest.hexdigest()


async def create_or_get_upload_request(
    db,
    client_id: str,
    upload_id: str,
    filename: str,
    content_type: str,
    size: int,
    checksum: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    existing = await db[UPLOAD_REQUESTS].find_one({"clientId": client_id, "uploadId": upload_id})
    if existing:
        logger.debug("Found existing upload request id=%s status=%s", existing["_id"], existing["status"])
        return existing

    doc = new_upload_request(client_id, upload_id, filename, content_type, size, checksum, now=now)
    try:
        res = await db[UPLOAD_REQUESTS].insert_one(doc)
    except DuplicateKeyError:
        # a concurrent request inserted the same (clientId, uploadId) first
        logger.warning("Race detected for clientId=%s uploadId=%s", client_id, upload_id)
        existing = await db[UPLOAD_REQUESTS].find_one({"clientId": client_id, "uploadId": upload_id})
        if not existing:
            raise UploadStateError("Failed to handle concurrent request creation")
        return existing

    doc["_id"] = res.inserted_id
    logger.info("Created upload request id=%s", res.inserted_id)
    return doc


async def acquire_for_processing(db, request_id, max_attempts: int = MAX_ATTEMPTS, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    res = await db[UPLOAD_REQUESTS].update_one(
        {
            "_id": request_id,
            "$or": [
                {"status": UploadStatus.PENDING.value},
                {"status": UploadStatus.FAILED.value, "attemptCount": {"$lt": max_attempts}},
            ],
        },
        {
            "$set": {"status": UploadStatus.PROCESSING.value, "updatedAt": now, "errorMessage": None},
            "$inc": {"attemptCount": 1},
        },
    )
    acquired = res.modified_count > 0
    if acquired:
        logger.debug("Acquired upload request %s for processing", request_id)
    else:
        logger.debug("Could not acquire upload request %s", request_id)
    return acquired


async def mark_completed(db, request_id, file_metadata_id, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    res = await db[UPLOAD_REQUESTS].update_one(
        {"_id": request_id, "status": UploadStatus.PROCESSING.value},
        {
            "$set": {
                "status": UploadStatus.COMPLETED.value,
                "fileMetadataId": file_metadata_id,
                "completedAt": now,
                "updatedAt": now,
            }
        },
    )
    if res.modified_count == 0:
        current = await db[UPLOAD_REQUESTS].find_one({"_id": request_id})
        if current is None:
            raise UploadStateError(f"Upload request {request_id} not found")
        if not can_transition(current["status"], UploadStatus.COMPLETED):
            raise UploadStateError(
                f"Invalid state transition from {current['status']} to {UploadStatus.COMPLETED.value}"
            )
        raise UploadStateError(f"Upload request {request_id} changed concurrently")
    logger.info("Upload request %s completed, fileMetadataId=%s", request_id, file_metadata_id)


async def mark_failed(db, request_id, error_message: str, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    res = await db[UPLOAD_REQUESTS].update_one(
        {"_id": request_id, "status": UploadStatus.PROCESSING.value},
        {"$set": {"status": UploadStatus.FAILED.value, "errorMessage": error_message, "updatedAt": now}},
    )
    if res.modified_count == 0:
        logger.warning("Could not mark %s failed: not in PROCESSING state", request_id)
        return False
    logger.info("Upload request %s failed: %s", request_id, error_message)
    return True


async def cancel(db, request_id, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    res = await db[UPLOAD_REQUESTS].update_one(
        {"_id": request_id, "status": {"$in": [s.value for s in CANCELLABLE]}},
        {"$set": {"status": UploadStatus.CANCELLED.value, "updatedAt": now}},
    )
    cancelled = res.modified_count > 0
    if cancelled:
        logger.info("Upload request %s cancelled", request_id)
    else:
        logger.debug("Upload request %s not cancelled (already completed or cancelled)", request_id)
    return cancelled


async def record_file_metadata(
    db,
    request: dict,
    storage_filename: str,
    checksum: Optional[str] = None,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Write the FileMetadata for a request, replacing one left by an earlier
    failed attempt. Raises DuplicateKeyError if the request already has
    COMPLETED metadata.
    """
    doc = new_file_metadata(request, storage_filename, checksum or request.get("checksum"), metadata, now=now)
    stored = await db[FILE_METADATA].find_one_and_replace(
        {"uploadRequestId": request["_id"], "status": {"$ne": UploadStatus.COMPLETED.value}},
        doc,
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Recorded file metadata %s for upload request %s", stored["_id"], request["_id"])
    return stored


async def set_metadata_status(db, metadata_id, status, storage_info: Optional[dict] = None, now=None) -> None:
    update = {"status": UploadStatus(status).value, "updatedAt": now or utcnow()}
    if storage_info is not None:
        update["storageInfo"] = storage_info
    await db[FILE_METADATA].update_one({"_id": metadata_id}, {"$set": update})


async def find_duplicate_by_content(db, client_id: str, checksum: str) -> Optional[dict]:
    """Metadata of a completed upload of the same content by the same client."""
    async for meta in db[FILE_METADATA].find({"checksum": checksum, "clientId": client_id}):
        parent = await db[UPLOAD_REQUESTS].find_one(
            {"_id": meta["uploadRequestId"], "status": UploadStatus.COMPLETED.value}, {"_id": 1}
        )
        if parent:
            return meta
    return None


async def find_by_client(db, client_id: str) -> list:
    return await db[UPLOAD_REQUESTS].find({"clientId": client_id}).sort("createdAt", -1).to_list(None)


async def find_by_client_and_status(db, client_id: str, status) -> list:
    cursor = db[UPLOAD_REQUESTS].find({"clientId": client_id, "status": UploadStatus(status).value})
    return await cursor.sort("createdAt", -1).to_list(None)
