"""
Shared pytest fixtures for copy engine tests.

Uses mongomock as the in-memory server and stub collections for failure injection.
"""

import mongomock
import pytest
from pymongo.errors import AutoReconnect

from mongocopy import CopyOptions, RetrySettings


# =============================================================================
# Clients and seeded data
# =============================================================================


@pytest.fixture
def client():
    """In-memory MongoDB client shared by source and target databases."""
    return mongomock.MongoClient()


@pytest.fixture(autouse=True)
def collection_listing(monkeypatch):
    """mongomock has no listCollections; answer it from the collection names."""

    def list_collections(database, filter=None, session=None, nameOnly=False):
        wanted = (filter or {}).get("name")
        return iter([{"name": name, "type": "collection", "options": {}}
                     for name in database.list_collection_names() if wanted in (None, name)])

    monkeypatch.setattr(mongomock.Database, "list_collections", list_collections)


@pytest.fixture
def source_db(client):
    return client["shop"]


@pytest.fixture
def target_db(client):
    return client["shop_backup"]


@pytest.fixture
def seeded_source(source_db):
    """Source database with two collections keyed by integer _id."""
    source_db["users"].insert_many([{"_id": i, "name": f"user-{i}"} for i in range(1, 11)])
    source_db["orders"].insert_many([{"_id": i, "total": i * 10} for i in range(1, 26)])
    return source_db


@pytest.fixture
def sleeps():
    """Records requested sleeps instead of sleeping."""
    calls = []
    return calls


@pytest.fixture
def fast_options():
    """Copy options with a small batch size and no indexes."""
    return CopyOptions(batch_size=3, copy_indexes=False, retry=RetrySettings(
        cursor_retry_delay_seconds=0, insert_retry_delay_seconds=0, index_poll_interval_seconds=0))


# =============================================================================
# Failure injection
# =============================================================================


class FlakyCollection:
    """
    Wraps a collection and makes cursor iteration fail after a number of documents.

    `failures` lists, per opened cursor, how many documents are returned before
    AutoReconnect is raised (None: no failure for that cursor).
    """

    def __init__(self, collection, failures):
        self.collection = collection
        self.failures = list(failures)
        self.queries = []
        self.full_name = collection.full_name

    def find(self, query=None, sort=None):
        self.queries.append(query)
        fail_after = self.failures.pop(0) if self.failures else None
        documents = list(self.collection.find(query, sort=sort))
        return self._iterate(documents, fail_after)

    @staticmethod
    def _iterate(documents, fail_after):
        for position, document in enumerate(documents):
            if fail_after is not None and position == fail_after:
                raise AutoReconnect("connection reset by peer")
            yield document
        if fail_after is not None and fail_after >= len(documents):
            raise AutoReconnect("cursor not found")


@pytest.fixture
def flaky_collection():
    return FlakyCollection
