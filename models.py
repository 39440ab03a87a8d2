from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class UploadStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


_TRANSITIONS = {
    UploadStatus.PENDING: {UploadStatus.PROCESSING, UploadStatus.FAILED, UploadStatus.CANCELLED},
    UploadStatus.PROCESSING: {UploadStatus.COMPLETED, UploadStatus.FAILED, UploadStatus.CANCELLED},
    UploadStatus.COMPLETED: set(),
    UploadStatus.FAILED: set(),
    UploadStatus.CANCELLED: set(),
}

MAX_ATTEMPTS = 3

# statuses a cancel may still be applied to
CANCELLABLE = (UploadStatus.PENDING, UploadStatus.PROCESSING, UploadStatus.FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current, new) -> bool:
    return UploadStatus(new) in _TRANSITIONS[UploadStatus(current)]


def can_retry(doc: dict, max_attempts: int = MAX_ATTEMPTS) -> bool:
    """A failed request may be picked up again until it has used max_attempts."""
    return doc.get("status") == UploadStatus.FAILED.value and (doc.get("attemptCount") or 0) < max_attempts


def new_upload_request(
    client_id: str,
    upload_id: str,
    filename: str,
    content_type: str,
    size: int,
    checksum: Optional[str],
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    return {
        "clientId": client_id,
        "uploadId": upload_id,
        "status": UploadStatus.PENDING.value,
        "fileMetadataId": None,
        "originalFilename": filename,
        "contentType": content_type,
        "fileSize": size,
        "checksum": checksum,
        "attemptCount": 0,
        "errorMessage": None,
        "metadata": {},
        "createdAt": now,
        "updatedAt": now,
        "completedAt": None,
    }


def new_file_metadata(
    request: dict,
    storage_filename: str,
    checksum: str,
    metadata: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    return {
        "uploadRequestId": request["_id"],
        "clientId": request["clientId"],
        "uploadId": request["uploadId"],
        "originalFilename": request.get("originalFilename"),
        "storageFilename": storage_filename,
        "contentType": request.get("contentType"),
        "size": request.get("fileSize"),
        "checksum": checksum,
        "status": UploadStatus.PROCESSING.value,
        "storageInfo": None,
        "metadata": dict(metadata or {}),
        "uploadedAt": now,
        "updatedAt": now,
    }
