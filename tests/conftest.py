"""Shared fixtures.

Hey future me - the storage contract tests run the SAME assertions against every adapter.
SQLite uses a real temp file, Redis uses fakeredis, Mongo uses the in-memory FakeMongoClient
below (it only understands the handful of query shapes the adapter sends). Real Postgres /
Mongo servers are picked up from TEST_POSTGRES_URL / TEST_MONGODB_URL when set.
"""

import copy
import os
from collections.abc import AsyncIterator
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from spotify_assistant.config import (
    PostgresSettings,
    Settings,
    SqliteSettings,
    StorageSettings,
)
from spotify_assistant.domain.entities import Playlist, Track, UserAccount
from spotify_assistant.domain.ports import IStorageBackend, StorageBackendKind


# =========================================================================
# In-memory MongoDB stand-in
# =========================================================================


def _matches(document: dict[str, Any], query: dict[str, Any]) -> bool:
    for key, condition in query.items():
        value = document.get(key)
        if isinstance(condition, dict):
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$gt" in condition and (value is None or not value > condition["$gt"]):
                return False
        elif isinstance(value, list):
            if condition not in value:
                return False
        elif value != condition:
            return False
    return True


def _project(document: dict[str, Any], projection: dict[str, Any] | None) -> dict[str, Any]:
    if not projection:
        return copy.deepcopy(document)
    keys = {"_id", *projection}
    return {key: copy.deepcopy(value) for key, value in document.items() if key in keys}


class FakeCursor:
    """Chainable cursor over a snapshot of matching documents."""

    def __init__(self, documents: list[dict[str, Any]]) -> None:
        self._documents = documents

    def sort(self, key: str, direction: int = 1) -> "FakeCursor":
        self._documents.sort(key=lambda document: document.get(key), reverse=direction < 0)
        return self

    def skip(self, count: int) -> "FakeCursor":
        self._documents = self._documents[count:]
        return self

    def limit(self, count: int) -> "FakeCursor":
        if count:
            self._documents = self._documents[:count]
        return self

    async def to_list(self, length: int | None = None) -> list[dict[str, Any]]:
        return self._documents if length is None else self._documents[:length]


class FakeCollection:
    """Dict-backed collection keyed by _id."""

    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}
        self.indexes: list[Any] = []

    async def find_one(
        self, query: dict[str, Any], projection: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        for document in self.documents.values():
            if _matches(document, query):
                return _project(document, projection)
        return None

    def find(
        self, query: dict[str, Any] | None = None, projection: dict[str, Any] | None = None
    ) -> FakeCursor:
        return FakeCursor(
            [
                _project(document, projection)
                for document in self.documents.values()
                if _matches(document, query or {})
            ]
        )

    async def insert_one(self, document: dict[str, Any]) -> SimpleNamespace:
        from pymongo.errors import DuplicateKeyError

        if document["_id"] in self.documents:
            raise DuplicateKeyError(f"E11000 duplicate key error: {document['_id']}")
        self.documents[document["_id"]] = copy.deepcopy(document)
        return SimpleNamespace(inserted_id=document["_id"])

    async def replace_one(
        self, query: dict[str, Any], replacement: dict[str, Any]
    ) -> SimpleNamespace:
        for key, document in self.documents.items():
            if _matches(document, query):
                self.documents[key] = {**copy.deepcopy(replacement), "_id": key}
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def delete_one(self, query: dict[str, Any]) -> SimpleNamespace:
        for key, document in list(self.documents.items()):
            if _matches(document, query):
                del self.documents[key]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def create_index(self, keys: Any, **kwargs: Any) -> str:
        self.indexes.append(keys)
        return "_".join(f"{name}_{direction}" for name, direction in keys)


class FakeDatabase:
    def __init__(self) -> None:
        self._collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self._collections.setdefault(name, FakeCollection())


class FakeAdmin:
    def __init__(self, client: "FakeMongoClient") -> None:
        self._client = client

    async def command(self, name: str) -> dict[str, Any]:
        if not self._client.reachable:
            from pymongo.errors import ServerSelectionTimeoutError

            raise ServerSelectionTimeoutError("No servers found yet")
        return {"ok": 1.0}


class FakeMongoClient:
    """Just enough of AsyncMongoClient for MongoStorageBackend."""

    def __init__(self) -> None:
        self._databases: dict[str, FakeDatabase] = {}
        self.admin = FakeAdmin(self)
        self.reachable = True
        self.closed = False

    def __getitem__(self, name: str) -> FakeDatabase:
        return self._databases.setdefault(name, FakeDatabase())

    async def close(self) -> None:
        self.closed = True


# =========================================================================
# Settings and entities
# =========================================================================


@pytest.fixture
def storage_settings() -> StorageSettings:
    """Storage settings with small batches so pagination is exercised."""
    return StorageSettings(operation_timeout=5.0, query_batch_size=2)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temp directory, no backend selected."""
    return Settings(
        data_dir=tmp_path,
        storage=StorageSettings(backend=None),
        sqlite=SqliteSettings(path=tmp_path / "test.db"),
    )


@pytest.fixture
def track() -> Track:
    return Track(
        id="track-a",
        title="Song A",
        artists=["Artist One"],
        duration_ms=215_000,
        album="Album A",
        isrc="USRC17607839",
        metadata={"preview_url": "https://p.scdn.co/mp3-preview/a"},
    )


@pytest.fixture
def user() -> UserAccount:
    return UserAccount(
        id="user-1",
        display_name="Test User",
        email="user@example.com",
        product="premium",
        country="DE",
        credential_ref="keyring:spotify-assistant/user-1",
    )


@pytest.fixture
def playlist() -> Playlist:
    return Playlist(id="playlist-1", name="Road Trip", owner_id="user-1")


# =========================================================================
# Storage backends
# =========================================================================


async def _sqlite_backend(tmp_path: Path, storage: StorageSettings) -> IStorageBackend:
    from spotify_assistant.infrastructure.persistence.database import Database
    from spotify_assistant.infrastructure.persistence.repositories import SqlStorageBackend

    database = Database.for_sqlite(str(tmp_path / "contract.db"), SqliteSettings())
    return SqlStorageBackend(database, storage, StorageBackendKind.SQLITE)


async def _postgres_backend(storage: StorageSettings) -> IStorageBackend:
    from spotify_assistant.infrastructure.persistence.database import Database
    from spotify_assistant.infrastructure.persistence.repositories import SqlStorageBackend

    database = Database.for_postgres(PostgresSettings(url=os.environ["TEST_POSTGRES_URL"]))
    await database.drop_tables()
    return SqlStorageBackend(database, storage, StorageBackendKind.POSTGRES)


async def _mongo_backend(storage: StorageSettings) -> IStorageBackend:
    from spotify_assistant.infrastructure.persistence.mongo import MongoStorageBackend

    url = os.environ.get("TEST_MONGODB_URL")
    if url:
        from pymongo import AsyncMongoClient

        client = AsyncMongoClient(url, tz_aware=True)
        await client.drop_database("spotify_assistant_test")
        await client.close()
        return MongoStorageBackend(
            storage, connection_string=url, database_name="spotify_assistant_test"
        )
    return MongoStorageBackend(storage, client=FakeMongoClient())


async def _redis_backend(storage: StorageSettings) -> IStorageBackend:
    import fakeredis

    from spotify_assistant.infrastructure.persistence.redis_cache import RedisStorageBackend

    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisStorageBackend(storage, client=client, key_prefix="test", ttl_seconds=3600)


_BACKEND_PARAMS = [
    pytest.param("sqlite", id="sqlite"),
    pytest.param("mongo", id="mongo"),
    pytest.param("redis", id="redis"),
    pytest.param(
        "postgres",
        id="postgres",
        marks=[
            pytest.mark.slow,
            pytest.mark.skipif(
                not os.environ.get("TEST_POSTGRES_URL"), reason="TEST_POSTGRES_URL not set"
            ),
        ],
    ),
]


async def build_backend(
    name: str, tmp_path: Path, storage: StorageSettings
) -> IStorageBackend:
    """Construct (but don't connect) one of the contract backends."""
    if name == "sqlite":
        return await _sqlite_backend(tmp_path, storage)
    if name == "postgres":
        return await _postgres_backend(storage)
    if name == "mongo":
        return await _mongo_backend(storage)
    if name == "redis":
        return await _redis_backend(storage)
    raise ValueError(f"Unknown backend {name}")


@pytest.fixture(params=_BACKEND_PARAMS)
async def backend(
    request: pytest.FixtureRequest, tmp_path: Path, storage_settings: StorageSettings
) -> AsyncIterator[IStorageBackend]:
    """A connected backend; parametrized over every adapter."""
    instance = await build_backend(request.param, tmp_path, storage_settings)
    await instance.connect()
    try:
        yield instance
    finally:
        await instance.close()


@pytest.fixture
async def sqlite_backend(
    tmp_path: Path, storage_settings: StorageSettings
) -> AsyncIterator[IStorageBackend]:
    """A connected SQLite backend for tests that don't need every adapter."""
    instance = await _sqlite_backend(tmp_path, storage_settings)
    await instance.connect()
    try:
        yield instance
    finally:
        await instance.close()


@pytest.fixture
def mongo_client() -> FakeMongoClient:
    """A fresh in-memory Mongo client."""
    return FakeMongoClient()
