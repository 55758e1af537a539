"""Document store backend on PyMongo's asyncio client.

One collection per entity type, ``_id`` is the entity id and every document
carries its ``version``. Writes are version-conditional replace_one calls.
"""

import logging
from typing import Any

from pymongo import ASCENDING, AsyncMongoClient
from pymongo.errors import ConnectionFailure, DuplicateKeyError

from spotify_assistant.config import StorageSettings, redact_url
from spotify_assistant.domain.entities import Artist, Entity, Playlist, Track, UserAccount
from spotify_assistant.domain.exceptions import BackendUnavailableError, ReferentialIntegrityError
from spotify_assistant.domain.ports import (
    IArtistRepository,
    IPlaylistRepository,
    IStorageBackend,
    ITrackRepository,
    IUserAccountRepository,
    StorageBackendKind,
    StorageCapability,
)
from spotify_assistant.domain.value_objects import QueryFilter
from spotify_assistant.infrastructure.persistence.base import BaseRepository, unavailable_guard
from spotify_assistant.infrastructure.persistence.codecs import from_document, to_document

logger = logging.getLogger(__name__)

# ServerSelectionTimeoutError, AutoReconnect and NetworkTimeout are all ConnectionFailures
MONGO_UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (ConnectionFailure, OSError)

COLLECTIONS: dict[type, str] = {
    Track: "tracks",
    Playlist: "playlists",
    UserAccount: "user_accounts",
    Artist: "artists",
}


def build_filter(query_filter: QueryFilter, after_id: str | None = None) -> dict[str, Any]:
    """Translate a QueryFilter (plus keyset cursor) into a Mongo filter document."""
    document: dict[str, Any] = dict(query_filter.criteria)
    id_clause: dict[str, Any] = {}
    if query_filter.ids is not None:
        id_clause["$in"] = list(query_filter.ids)
    if after_id is not None:
        id_clause["$gt"] = after_id
    if id_clause:
        document["_id"] = id_clause
    return document


class MongoRepository[T: Entity](BaseRepository[T]):
    """Generic repository over one collection."""

    unavailable_errors = MONGO_UNAVAILABLE_ERRORS

    def __init__(self, database: Any, entity_type: type[T], **options: Any) -> None:
        super().__init__(entity_type, **options)
        self._db = database
        self._collection = database[COLLECTIONS[entity_type]]

    async def _fetch(self, entity_id: str) -> T | None:
        document = await self._collection.find_one({"_id": entity_id})
        return from_document(self.entity_type, document) if document else None

    # Hey future me - Mongo has no multi-document transaction here (standalone servers don't
    # support them), so concurrency rides on the single-document atomicity of replace_one:
    # the filter includes the version we read, so a writer that lost the race matches nothing.
    # A fresh id goes through insert_one and a duplicate key means someone else inserted first.
    async def _write(self, entity: T, entity_id: str, expected: int | None) -> T:
        existing = await self._collection.find_one(
            {"_id": entity_id}, {"version": 1, "created_at": 1}
        )
        current = existing.get("version", 0) if existing else None
        version = self._next_version(entity_id, expected, current)
        stored = self._stamped(
            entity,
            entity_id,
            version,
            created_at=existing.get("created_at") if existing else None,
        )
        await self._check_references(stored)

        document = to_document(stored)
        if current is None:
            try:
                await self._collection.insert_one(document)
            except DuplicateKeyError as e:
                raise self._conflict(entity_id, expected) from e
        else:
            result = await self._collection.replace_one(
                {"_id": entity_id, "version": current}, document
            )
            if result.matched_count == 0:
                raise self._conflict(entity_id, expected)
        return stored

    async def _remove(self, entity_id: str) -> bool:
        await self._check_removable(entity_id)
        result = await self._collection.delete_one({"_id": entity_id})
        return result.deleted_count > 0

    async def _fetch_page(
        self,
        query_filter: QueryFilter,
        after_id: str | None,
        skip: int,
        limit: int,
    ) -> list[T]:
        cursor = (
            self._collection.find(build_filter(query_filter, after_id))
            .sort("_id", ASCENDING)
            .skip(skip)
            .limit(limit)
        )
        documents = await cursor.to_list(length=limit)
        return [from_document(self.entity_type, document) for document in documents]

    async def _check_references(self, entity: T) -> None:
        return None

    async def _check_removable(self, entity_id: str) -> None:
        return None

    async def ensure_indexes(self) -> None:
        """Create single-field indexes for every filterable field."""
        for name in sorted(self.entity_type.FILTERABLE_FIELDS):
            await self._collection.create_index([(name, ASCENDING)])


class MongoTrackRepository(MongoRepository[Track], ITrackRepository):
    """Track collection."""

    def __init__(self, database: Any, **options: Any) -> None:
        super().__init__(database, Track, **options)
        self._playlists = database[COLLECTIONS[Playlist]]

    async def referencing_playlists(self, track_id: str) -> list[str]:
        """Ids of playlists that reference a track."""
        async with self.guard("referencing_playlists", track_id):
            return await self._referencing(track_id)

    async def _referencing(self, track_id: str) -> list[str]:
        cursor = self._playlists.find({"track_ids": track_id}, {"_id": 1}).sort("_id", ASCENDING)
        return [document["_id"] for document in await cursor.to_list(length=None)]

    async def _check_removable(self, entity_id: str) -> None:
        playlist_ids = await self._referencing(entity_id)
        if playlist_ids:
            raise ReferentialIntegrityError(
                f"Track {entity_id} is still referenced by playlists {', '.join(playlist_ids)}",
                "Track",
                entity_id,
                references=playlist_ids,
            )


class MongoPlaylistRepository(MongoRepository[Playlist], IPlaylistRepository):
    """Playlist collection; track_ids is a multikey-indexed array."""

    def __init__(self, database: Any, **options: Any) -> None:
        super().__init__(database, Playlist, **options)
        self._tracks = database[COLLECTIONS[Track]]

    async def _check_references(self, entity: Playlist) -> None:
        wanted = sorted(set(entity.track_ids))
        if not wanted:
            return
        cursor = self._tracks.find({"_id": {"$in": wanted}}, {"_id": 1})
        found = {document["_id"] for document in await cursor.to_list(length=None)}
        missing = [track_id for track_id in wanted if track_id not in found]
        if missing:
            raise ReferentialIntegrityError(
                f"Playlist {entity.id} references unknown tracks: {', '.join(missing)}",
                "Playlist",
                entity.id,
                references=missing,
            )

    async def ensure_indexes(self) -> None:
        await super().ensure_indexes()
        await self._collection.create_index([("track_ids", ASCENDING)])


class MongoUserAccountRepository(MongoRepository[UserAccount], IUserAccountRepository):
    """UserAccount collection."""

    def __init__(self, database: Any, **options: Any) -> None:
        super().__init__(database, UserAccount, **options)


class MongoArtistRepository(MongoRepository[Artist], IArtistRepository):
    """Artist collection."""

    def __init__(self, database: Any, **options: Any) -> None:
        super().__init__(database, Artist, **options)


class MongoStorageBackend(IStorageBackend):
    """Document store backend.

    Pass ``client`` to reuse an existing client (tests hand in a fake); otherwise
    one is created from ``connection_string`` on connect().
    """

    kind = StorageBackendKind.MONGO

    def __init__(
        self,
        storage: StorageSettings,
        *,
        connection_string: str | None = None,
        database_name: str = "spotify",
        app_name: str | None = None,
        server_selection_timeout_ms: int = 5000,
        client: Any | None = None,
    ) -> None:
        if client is None and connection_string is None:
            raise ValueError("Either connection_string or client is required")
        self._storage = storage
        self._connection_string = connection_string
        self._database_name = database_name
        self._app_name = app_name
        self._selection_timeout_ms = server_selection_timeout_ms
        self._client = client
        self._owns_client = client is None
        self._repositories: dict[str, Any] | None = None

        capabilities = {StorageCapability.RANGE_QUERY, StorageCapability.DURABLE}
        if storage.optimistic_concurrency:
            capabilities.add(StorageCapability.OPTIMISTIC_CONCURRENCY)
        self._capabilities = frozenset(capabilities)

    @property
    def capabilities(self) -> frozenset[StorageCapability]:
        return self._capabilities

    def _repo(self, name: str) -> Any:
        if self._repositories is None:
            raise BackendUnavailableError(self.kind.value, "backend is not connected")
        return self._repositories[name]

    @property
    def tracks(self) -> MongoTrackRepository:
        return self._repo("tracks")

    @property
    def playlists(self) -> MongoPlaylistRepository:
        return self._repo("playlists")

    @property
    def users(self) -> MongoUserAccountRepository:
        return self._repo("users")

    @property
    def artists(self) -> MongoArtistRepository:
        return self._repo("artists")

    async def connect(self) -> None:
        """Create the client, ping the server and ensure indexes."""
        if self._client is None:
            self._client = AsyncMongoClient(
                self._connection_string,
                tz_aware=True,
                appname=self._app_name,
                serverSelectionTimeoutMS=self._selection_timeout_ms,
            )
        database = self._client[self._database_name]
        options: dict[str, Any] = {
            "backend_name": self.kind.value,
            "capabilities": self._capabilities,
            "operation_timeout": self._storage.operation_timeout,
            "batch_size": self._storage.query_batch_size,
            "optimistic_concurrency": self._storage.optimistic_concurrency,
        }
        repositories = {
            "tracks": MongoTrackRepository(database, **options),
            "playlists": MongoPlaylistRepository(database, **options),
            "users": MongoUserAccountRepository(database, **options),
            "artists": MongoArtistRepository(database, **options),
        }

        try:
            async with unavailable_guard(
                self.kind.value,
                "connect",
                self._storage.operation_timeout,
                MONGO_UNAVAILABLE_ERRORS,
            ):
                await self._client.admin.command("ping")
                for repository in repositories.values():
                    await repository.ensure_indexes()
        except BaseException:
            await self._release_client()
            raise

        self._repositories = repositories
        logger.info(
            "Connected to mongo storage",
            extra={
                "database": self._database_name,
                "url": redact_url(self._connection_string) if self._connection_string else None,
            },
        )

    async def close(self) -> None:
        self._repositories = None
        await self._release_client()
        logger.info("Closed mongo storage")

    # Yo, an injected client belongs to whoever passed it in. We only close (and forget) the
    # client connect() created, so a later connect() always starts from a live client.
    async def _release_client(self) -> None:
        if self._owns_client and self._client is not None:
            client, self._client = self._client, None
            await client.close()

    async def ping(self) -> bool:
        if self._client is None or self._repositories is None:
            return False
        try:
            async with unavailable_guard(
                self.kind.value, "ping", self._storage.operation_timeout, MONGO_UNAVAILABLE_ERRORS
            ):
                await self._client.admin.command("ping")
        except BackendUnavailableError as e:
            logger.warning("Ping to mongo storage failed: %s", e.message)
            return False
        return True
