import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from db import FILE_METADATA, UPLOAD_REQUESTS
from models import UploadStatus, utcnow

logger = logging.getLogger("file_uploader.cleanup")


async def fail_stalled_uploads(db, threshold_seconds: int, now: Optional[datetime] = None) -> int:
    """Mark PROCESSING requests untouched for threshold_seconds as FAILED."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=threshold_seconds)
    stalled = db[UPLOAD_REQUESTS].find(
        {"status": UploadStatus.PROCESSING.value, "updatedAt": {"$lt": cutoff}}
    )
    cleaned = 0
    async for doc in stalled:
        logger.warning(
            "Found stalled upload id=%s clientId=%s lastUpdate=%s attemptCount=%s",
            doc["_id"], doc.get("clientId"), doc.get("updatedAt"), doc.get("attemptCount"),
        )
        try:
            res = await db[UPLOAD_REQUESTS].update_one(
                {"_id": doc["_id"], "status": UploadStatus.PROCESSING.value, "updatedAt": {"$lt": cutoff}},
                {
                    "$set": {
                        "status": UploadStatus.FAILED.value,
                        "errorMessage": f"Operation stalled - timeout after {threshold_seconds} seconds",
                        "updatedAt": now,
                    }
                },
            )
        except Exception:
            logger.exception("Failed to clean up stalled upload %s", doc["_id"])
            continue
        cleaned += res.modified_count
    if cleaned:
        logger.info("Cleaned up %d stalled uploads", cleaned)
    return cleaned


ORPHAN_PIPELINE = [
    {"$lookup": {"from": UPLOAD_REQUESTS, "localField": "uploadRequestId", "foreignField": "_id", "as": "parent"}},
    {"$match": {"parent": {"$size": 0}}},
    {"$project": {"_id": 1}},
]


async def purge_orphaned_metadata(db) -> int:
    """Delete file metadata whose upload request was removed (normally by the TTL index)."""
    orphans = await db[FILE_METADATA].aggregate(ORPHAN_PIPELINE).to_list(None)
    if not orphans:
        return 0
    res = await db[FILE_METADATA].delete_many({"_id": {"$in": [doc["_id"] for doc in orphans]}})
    logger.info("Deleted %d orphaned file metadata records", res.deleted_count)
    return res.deleted_count


async def sweeper(db, interval: int, stalled_threshold: int):
    while True:
        try:
            await fail_stalled_uploads(db, stalled_threshold)
            await purge_orphaned_metadata(db)
        except Exception:
            logger.exception("Error in sweeper loop")
        await asyncio.sleep(interval)
