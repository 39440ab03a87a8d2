"""Schema initializer: objects created, idempotence, failure surfacing."""
import asyncio
import logging

import pytest
from pymongo.errors import CollectionInvalid, OperationFailure

from conftest import DB_NAME
from schema import (
    INDEXES,
    IndexSpec,
    SchemaInitError,
    build_indexes,
    ensure_collections,
    initialize_schema,
    verify_schema,
)


def test_creates_scoped_read_write_user(initialized_db):
    user = initialized_db.users["fileUploader"]
    assert user["pwd"] == "password"
    assert user["roles"] == [{"role": "readWrite", "db": "fileUploader"}]


def test_creates_both_collections(initialized_db):
    names = asyncio.run(initialized_db.list_collection_names())
    assert names == ["file_metadata", "upload_requests"]


def test_index_definitions(initialized_db):
    requests = asyncio.run(initialized_db["upload_requests"].index_information())
    metadata = asyncio.run(initialized_db["file_metadata"].index_information())

    assert requests["client_upload_unique"]["key"] == [("clientId", 1), ("uploadId", 1)]
    assert requests["client_upload_unique"]["unique"] is True
    assert requests["status_updated_idx"]["key"] == [("status", 1), ("updatedAt", 1)]
    assert "unique" not in requests["status_updated_idx"]
    assert requests["ttl_idx"]["key"] == [("createdAt", 1)]
    assert requests["ttl_idx"]["expireAfterSeconds"] == 604800
    assert metadata["upload_request_idx"]["key"] == [("uploadRequestId", 1)]
    assert metadata["upload_request_idx"]["unique"] is True
    assert metadata["checksum_client_idx"]["key"] == [("checksum", 1), ("clientId", 1)]

    assert asyncio.run(verify_schema(initialized_db)) == []


def test_second_run_is_a_no_op(client, initialized_db):
    before = {
        name: asyncio.run(initialized_db[name].index_information())
        for name in ("upload_requests", "file_metadata")
    }

    asyncio.run(initialize_schema(client, DB_NAME, "fileUploader", "password"))

    assert asyncio.run(initialized_db.list_collection_names()) == ["file_metadata", "upload_requests"]
    for name, info in before.items():
        assert asyncio.run(initialized_db[name].index_information()) == info
    assert list(initialized_db.users) == ["fileUploader"]


def test_logs_success_line(client, caplog):
    with caplog.at_level(logging.INFO, logger="file_uploader.schema"):
        asyncio.run(initialize_schema(client, DB_NAME, "fileUploader", "password"))
    assert caplog.records[-1].getMessage() == "MongoDB initialized successfully"


def test_existing_user_does_not_abort(client, db, caplog):
    db.users["fileUploader"] = {"pwd": "other", "roles": []}
    with caplog.at_level(logging.WARNING, logger="file_uploader.schema"):
        asyncio.run(initialize_schema(client, DB_NAME, "fileUploader", "password"))
    assert "already exists" in caplog.text
    assert asyncio.run(verify_schema(db)) == []


def test_rejected_user_creation_aborts(client, db, monkeypatch):
    async def unauthorized(*args, **kwargs):
        raise OperationFailure("not authorized on fileUploader to execute command", code=13)

    monkeypatch.setattr(db, "command", unauthorized)

    with pytest.raises(SchemaInitError) as exc_info:
        asyncio.run(initialize_schema(client, DB_NAME, "fileUploader", "password"))

    assert exc_info.value.step == "createUser"
    assert exc_info.value.__cause__.code == 13
    assert asyncio.run(db.list_collection_names()) == []


def test_conflicting_ttl_index_aborts(client, db):
    asyncio.run(db["upload_requests"].create_index([("createdAt", 1)], name="ttl_idx", expireAfterSeconds=60))

    with pytest.raises(SchemaInitError) as exc_info:
        asyncio.run(initialize_schema(client, DB_NAME, "fileUploader", "password"))

    assert exc_info.value.step == "createIndex ttl_idx"
    assert isinstance(exc_info.value.__cause__, OperationFailure)
    assert exc_info.value.__cause__.code == 85


def test_collection_created_concurrently(db, monkeypatch):
    async def lost_race(name):
        raise CollectionInvalid(f"collection {name} already exists")

    monkeypatch.setattr(db, "create_collection", lost_race)
    assert asyncio.run(ensure_collections(db)) == []


def test_custom_ttl_is_applied(client, db):
    asyncio.run(initialize_schema(client, DB_NAME, "fileUploader", "password", ttl_seconds=3600))
    info = asyncio.run(db["upload_requests"].index_information())
    assert info["ttl_idx"]["expireAfterSeconds"] == 3600
    assert asyncio.run(verify_schema(db, build_indexes(3600))) == []
    assert asyncio.run(verify_schema(db)) == ["ttl_idx"]


def test_verify_reports_missing_indexes(db):
    assert asyncio.run(verify_schema(db)) == [spec.name for spec in INDEXES]


def test_index_spec_options():
    spec = IndexSpec("ttl_idx", "upload_requests", ("createdAt",), expire_after_seconds=10)
    assert spec.keys == [("createdAt", 1)]
    assert spec.options() == {"name": "ttl_idx", "expireAfterSeconds": 10}
    assert spec.matches({"key": [("createdAt", 1)], "expireAfterSeconds": 10.0})
    assert not spec.matches({"key": [("createdAt", 1)]})


def test_single_info_line_on_fresh_database(client, caplog):
    with caplog.at_level(logging.INFO, logger="file_uploader.schema"):
        asyncio.run(initialize_schema(client, DB_NAME, "fileUploader", "password"))
    assert [r.getMessage() for r in caplog.records] == ["MongoDB initialized successfully"]
