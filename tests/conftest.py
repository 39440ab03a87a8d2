"""Pytest fixtures: in-memory motor double, initialized upload database."""
import asyncio

import pytest

from fakes import FakeClient
from schema import initialize_schema

DB_NAME = "fileUploader"


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def db(client):
    return client[DB_NAME]


@pytest.fixture
def initialized_db(client, db):
    """Database after one full initialization run."""
    asyncio.run(initialize_schema(client, DB_NAME, "fileUploader", "password"))
    return db
