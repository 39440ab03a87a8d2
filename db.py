from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

UPLOAD_REQUESTS = "upload_requests"
FILE_METADATA = "file_metadata"


def get_client(uri: str) -> AsyncIOMotorClient:
    # tz_aware so createdAt/updatedAt come back comparable with datetime.now(timezone.utc)
    return AsyncIOMotorClient(uri, tz_aware=True)


def get_db(client: AsyncIOMotorClient, name: str) -> AsyncIOMotorDatabase:
    return client[name]
