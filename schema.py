"""
Schema bootstrap for the upload datastore.

Creates the application principal, the two collections and their indexes.
Every step tolerates work already done by a previous (or concurrent) run, so
the initializer can be executed on each deployment.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from pymongo import ASCENDING
from pymongo.errors import CollectionInvalid, OperationFailure, PyMongoError

from db import FILE_METADATA, UPLOAD_REQUESTS

logger = logging.getLogger("file_uploader.schema")

USER_ALREADY_EXISTS = 51003
NAMESPACE_EXISTS = 48

DEFAULT_TTL_SECONDS = 604800

COLLECTIONS = (UPLOAD_REQUESTS, FILE_METADATA)


class SchemaInitError(Exception):
    """Initialization step failed; the driver error is kept as __cause__."""

    def __init__(self, step: str, cause: Exception):
        super().__init__(f"schema initialization failed at {step}: {cause}")
        self.step = step
        self.cause = cause


@dataclass(frozen=True)
class IndexSpec:
    name: str
    collection: str
    fields: Tuple[str, ...]
    unique: bool = False
    expire_after_seconds: Optional[int] = None

    @property
    def keys(self):
        return [(field, ASCENDING) for field in self.fields]

    def options(self) -> dict:
        opts = {"name": self.name}
        if self.unique:
            opts["unique"] = True
        if self.expire_after_seconds is not None:
            opts["expireAfterSeconds"] = self.expire_after_seconds
        return opts

    def matches(self, info: dict) -> bool:
        """Compare against one entry of collection.index_information()."""
        key = [(field, int(direction)) for field, direction in info.get("key", [])]
        if key != self.keys:
            return False
        if bool(info.get("unique", False)) != self.unique:
            return False
        expire = info.get("expireAfterSeconds")
        if expire is not None:
            expire = int(expire)
        return expire == self.expire_after_seconds


def build_indexes(ttl_seconds: int = DEFAULT_TTL_SECONDS) -> Tuple[IndexSpec, ...]:
    return (
        IndexSpec("client_upload_unique", UPLOAD_REQUESTS, ("clientId", "uploadId"), unique=True),
        IndexSpec("status_updated_idx", UPLOAD_REQUESTS, ("status", "updatedAt")),
        IndexSpec("ttl_idx", UPLOAD_REQUESTS, ("createdAt",), expire_after_seconds=ttl_seconds),
        IndexSpec("upload_request_idx", FILE_METADATA, ("uploadRequestId",), unique=True),
        IndexSpec("checksum_client_idx", FILE_METADATA, ("checksum", "clientId")),
    )


INDEXES = build_indexes()


async def ensure_app_user(db, user: str, password: str) -> bool:
    """Create a readWrite principal scoped to db. Returns False if it already existed."""
    try:
        await db.command(
            "createUser",
            user,
            pwd=password,
            roles=[{"role": "readWrite", "db": db.name}],
        )
    except OperationFailure as exc:
        if exc.code == USER_ALREADY_EXISTS:
            logger.warning("User %s already exists on %s, skipping", user, db.name)
            return False
        raise SchemaInitError("createUser", exc) from exc
    logger.debug("Created user %s with readWrite on %s", user, db.name)
    return True


async def ensure_collections(db, names: Sequence[str] = COLLECTIONS) -> list:
    """Create missing collections, return the names actually created."""
    try:
        existing = set(await db.list_collection_names())
    except PyMongoError as exc:
        raise SchemaInitError("listCollections", exc) from exc

    created = []
    for name in names:
        if name in existing:
            continue
        try:
            await db.create_collection(name)
        except CollectionInvalid:
            # another initializer won the race
            logger.warning("Collection %s appeared concurrently", name)
            continue
        except OperationFailure as exc:
            if exc.code == NAMESPACE_EXISTS:
                logger.warning("Collection %s appeared concurrently", name)
                continue
            raise SchemaInitError(f"createCollection {name}", exc) from exc
        logger.debug("Created collection %s", name)
        created.append(name)
    return created


async def ensure_indexes(db, indexes: Sequence[IndexSpec] = INDEXES) -> None:
    for spec in indexes:
        try:
            await db[spec.collection].create_index(spec.keys, **spec.options())
        except PyMongoError as exc:
            # IndexOptionsConflict / IndexKeySpecsConflict land here
            raise SchemaInitError(f"createIndex {spec.name}", exc) from exc
        logger.debug("Ensured index %s on %s", spec.name, spec.collection)


async def verify_schema(db, indexes: Sequence[IndexSpec] = INDEXES) -> list:
    """Names of indexes that are missing or defined differently."""
    drift = []
    info_by_collection = {}
    for spec in indexes:
        if spec.collection not in info_by_collection:
            info_by_collection[spec.collection] = await db[spec.collection].index_information()
        info = info_by_collection[spec.collection].get(spec.name)
        if info is None or not spec.matches(info):
            drift.append(spec.name)
    return drift


async def initialize_schema(
    client,
    db_name: str,
    app_user: str,
    app_password: str,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
) -> None:
    db = client[db_name]
    await ensure_app_user(db, app_user, app_password)
    await ensure_collections(db)
    await ensure_indexes(db, build_indexes(ttl_seconds))
    logger.info("MongoDB initialized successfully")
