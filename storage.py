import re
from datetime import datetime
from typing import BinaryIO, Optional, Protocol

DEFAULT_BUCKET = "uploads"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class ObjectStorage(Protocol):
    """Where uploaded bytes end up. Returns storage info with at least a "url"."""

    async def upload_stream(
        self,
        bucket: str,
        object_key: str,
        stream: BinaryIO,
        size: int,
        content_type: str,
        metadata: dict,
    ) -> dict:
        ...


def generate_object_key(client_id: str, upload_id: str, filename: Optional[str], now: datetime) -> str:
    safe = _UNSAFE_CHARS.sub("_", filename) if filename else "unknown"
    millis = int(now.timestamp() * 1000)
    return f"{client_id}/{now:%Y/%m/%d}/{upload_id}/{millis}-{safe}"
