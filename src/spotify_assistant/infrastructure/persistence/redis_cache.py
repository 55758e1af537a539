"""Key-value cache backend on redis.asyncio.

Layout (``prefix`` defaults to ``spotify-assistant``):

    {prefix}:{entity}:{id}          JSON document of one entity, optional TTL
    {prefix}:track-refs:{track_id}  SET of playlist ids referencing the track

The cache is never a source of truth: it is not durable and entries may
expire, so it has no RANGE_QUERY capability. query() only accepts id-only
filters; anything else raises CapabilityUnsupportedError rather than
returning a partial answer.
"""

import json
import logging
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from spotify_assistant.config import StorageSettings, redact_url
from spotify_assistant.domain.entities import Artist, Entity, Playlist, Track, UserAccount
from spotify_assistant.domain.exceptions import (
    BackendUnavailableError,
    CapabilityUnsupportedError,
    ReferentialIntegrityError,
)
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
from spotify_assistant.infrastructure.persistence.codecs import from_json, to_json

logger = logging.getLogger(__name__)

REDIS_UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (
    RedisConnectionError,
    RedisTimeoutError,
    OSError,
)


class RedisKeys:
    """Key naming for one prefix."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def entity(self, entity_type: type, entity_id: str) -> str:
        return f"{self.prefix}:{entity_type.ENTITY_NAME.lower()}:{entity_id}"

    def track_refs(self, track_id: str) -> str:
        return f"{self.prefix}:track-refs:{track_id}"


def _stored_version(raw: str | None) -> int | None:
    if raw is None:
        return None
    return int(json.loads(raw).get("version", 0))


def _stored_created_at(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    created_at = json.loads(raw).get("created_at")
    return datetime.fromisoformat(created_at) if created_at else None


class RedisRepository[T: Entity](BaseRepository[T]):
    """Generic repository storing one JSON string per entity."""

    unavailable_errors = REDIS_UNAVAILABLE_ERRORS

    def __init__(
        self,
        client: aioredis.Redis,
        entity_type: type[T],
        *,
        keys: RedisKeys,
        ttl_seconds: int | None = None,
        **options: Any,
    ) -> None:
        super().__init__(entity_type, **options)
        self._client = client
        self._keys = keys
        self._ttl = ttl_seconds or None

    def _key(self, entity_id: str) -> str:
        return self._keys.entity(self.entity_type, entity_id)

    def _check_query_supported(self, query_filter: QueryFilter) -> None:
        if not query_filter.is_id_only:
            raise CapabilityUnsupportedError(
                self.backend_name,
                StorageCapability.RANGE_QUERY.value,
                f"{self.entity_name} queries must be restricted to ids only",
            )

    async def _fetch(self, entity_id: str) -> T | None:
        raw = await self._client.get(self._key(entity_id))
        return from_json(self.entity_type, raw) if raw is not None else None

    # Hey future me - WATCH/MULTI is Redis' optimistic lock. We WATCH the entity key (plus
    # whatever _watch_keys adds), read the stored version, then queue the writes after
    # MULTI. If any watched key changed before EXEC, redis-py raises WatchError and nothing
    # was written -> ConflictError.
    async def _write(self, entity: T, entity_id: str, expected: int | None) -> T:
        key = self._key(entity_id)
        async with self._client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key, *self._watch_keys(entity))
                raw = await pipe.get(key)
                version = self._next_version(entity_id, expected, _stored_version(raw))
                stored = self._stamped(
                    entity, entity_id, version, created_at=_stored_created_at(raw)
                )
                await self._check_references(pipe, stored)

                pipe.multi()
                pipe.set(key, to_json(stored), ex=self._ttl)
                self._queue_side_effects(pipe, stored, raw)
                await pipe.execute()
            except WatchError as e:
                raise self._conflict(entity_id, expected) from e
        return stored

    async def _remove(self, entity_id: str) -> bool:
        key = self._key(entity_id)
        async with self._client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key, *self._watch_keys_for_delete(entity_id))
                raw = await pipe.get(key)
                if raw is None:
                    return False
                await self._check_removable(pipe, entity_id)

                pipe.multi()
                pipe.delete(key)
                self._queue_delete_side_effects(pipe, entity_id, raw)
                await pipe.execute()
            except WatchError as e:
                raise self._conflict(entity_id, None) from e
        return True

    async def _fetch_page(
        self,
        query_filter: QueryFilter,
        after_id: str | None,
        skip: int,
        limit: int,
    ) -> list[T]:
        candidates = sorted(query_filter.ids or ())
        if after_id is not None:
            candidates = [entity_id for entity_id in candidates if entity_id > after_id]

        found: list[T] = []
        # Missing (expired) ids are skipped, so keep reading until the page is full
        for start in range(0, len(candidates), self._batch_size):
            chunk = candidates[start : start + self._batch_size]
            values = await self._client.mget([self._key(entity_id) for entity_id in chunk])
            found.extend(from_json(self.entity_type, raw) for raw in values if raw is not None)
            if len(found) >= skip + limit:
                break
        return found[skip : skip + limit]

    # Hooks for entity-specific integrity rules

    def _watch_keys(self, entity: T) -> list[str]:
        return []

    def _watch_keys_for_delete(self, entity_id: str) -> list[str]:
        return []

    async def _check_references(self, pipe: Any, entity: T) -> None:
        return None

    async def _check_removable(self, pipe: Any, entity_id: str) -> None:
        return None

    def _queue_side_effects(self, pipe: Any, entity: T, previous_raw: str | None) -> None:
        return None

    def _queue_delete_side_effects(self, pipe: Any, entity_id: str, raw: str) -> None:
        return None


class RedisTrackRepository(RedisRepository[Track], ITrackRepository):
    """Track cache with reverse reference sets."""

    def __init__(self, client: aioredis.Redis, **options: Any) -> None:
        super().__init__(client, Track, **options)

    async def referencing_playlists(self, track_id: str) -> list[str]:
        """Ids of playlists that reference a track (stale members are pruned)."""
        async with self.guard("referencing_playlists", track_id):
            return await self._live_references(self._client, track_id)

    # Listen, a ref set can outlive its playlists (TTL expiry, playlist rewritten while the
    # set update raced). A member only counts if the playlist key still exists AND still
    # lists the track. Stale members are removed from the set, except during a delete:
    # the refs key is WATCHed there and gets dropped with the track anyway.
    async def _live_references(
        self, reader: Any, track_id: str, prune: bool = True
    ) -> list[str]:
        refs_key = self._keys.track_refs(track_id)
        members = sorted(await reader.smembers(refs_key))
        if not members:
            return []
        raws = await reader.mget([self._keys.entity(Playlist, pid) for pid in members])
        live: list[str] = []
        stale: list[str] = []
        for playlist_id, raw in zip(members, raws, strict=True):
            if raw is not None and track_id in json.loads(raw).get("track_ids", []):
                live.append(playlist_id)
            else:
                stale.append(playlist_id)
        if stale and prune:
            await self._client.srem(refs_key, *stale)
            logger.debug("Pruned %d stale references to track %s", len(stale), track_id)
        return live

    def _watch_keys_for_delete(self, entity_id: str) -> list[str]:
        return [self._keys.track_refs(entity_id)]

    async def _check_removable(self, pipe: Any, entity_id: str) -> None:
        playlist_ids = await self._live_references(pipe, entity_id, prune=False)
        if playlist_ids:
            raise ReferentialIntegrityError(
                f"Track {entity_id} is still referenced by playlists {', '.join(playlist_ids)}",
                "Track",
                entity_id,
                references=playlist_ids,
            )

    def _queue_delete_side_effects(self, pipe: Any, entity_id: str, raw: str) -> None:
        pipe.delete(self._keys.track_refs(entity_id))


class RedisPlaylistRepository(RedisRepository[Playlist], IPlaylistRepository):
    """Playlist cache; keeps the track-refs sets in sync on every write."""

    def __init__(self, client: aioredis.Redis, **options: Any) -> None:
        super().__init__(client, Playlist, **options)

    def _watch_keys(self, entity: Playlist) -> list[str]:
        return [self._keys.entity(Track, track_id) for track_id in dict.fromkeys(entity.track_ids)]

    async def _check_references(self, pipe: Any, entity: Playlist) -> None:
        wanted = list(dict.fromkeys(entity.track_ids))
        if not wanted:
            return
        raws = await pipe.mget([self._keys.entity(Track, track_id) for track_id in wanted])
        missing = sorted(track_id for track_id, raw in zip(wanted, raws, strict=True) if raw is None)
        if missing:
            raise ReferentialIntegrityError(
                f"Playlist {entity.id} references unknown tracks: {', '.join(missing)}",
                "Playlist",
                entity.id,
                references=missing,
            )

    def _queue_side_effects(self, pipe: Any, entity: Playlist, previous_raw: str | None) -> None:
        previous = set(json.loads(previous_raw).get("track_ids", [])) if previous_raw else set()
        current = set(entity.track_ids)
        for track_id in previous - current:
            pipe.srem(self._keys.track_refs(track_id), entity.id)
        for track_id in current:
            refs_key = self._keys.track_refs(track_id)
            pipe.sadd(refs_key, entity.id)
            # Refs live as long as the newest playlist pointing at the track
            if self._ttl:
                pipe.expire(refs_key, self._ttl)

    def _queue_delete_side_effects(self, pipe: Any, entity_id: str, raw: str) -> None:
        for track_id in set(json.loads(raw).get("track_ids", [])):
            pipe.srem(self._keys.track_refs(track_id), entity_id)


class RedisUserAccountRepository(RedisRepository[UserAccount], IUserAccountRepository):
    """UserAccount cache."""

    def __init__(self, client: aioredis.Redis, **options: Any) -> None:
        super().__init__(client, UserAccount, **options)


class RedisArtistRepository(RedisRepository[Artist], IArtistRepository):
    """Artist cache."""

    def __init__(self, client: aioredis.Redis, **options: Any) -> None:
        super().__init__(client, Artist, **options)


class RedisStorageBackend(IStorageBackend):
    """Key-value cache backend.

    Pass ``client`` to reuse an existing client (tests hand in fakeredis);
    otherwise one is created from ``url`` on connect().
    """

    kind = StorageBackendKind.REDIS

    def __init__(
        self,
        storage: StorageSettings,
        *,
        url: str | None = None,
        key_prefix: str = "spotify-assistant",
        ttl_seconds: int | None = None,
        client: aioredis.Redis | None = None,
    ) -> None:
        if client is None and url is None:
            raise ValueError("Either url or client is required")
        self._storage = storage
        self._url = url
        self._keys = RedisKeys(key_prefix)
        self._ttl = ttl_seconds or None
        self._client = client
        self._owns_client = client is None
        self._repositories: dict[str, Any] | None = None

        capabilities: set[StorageCapability] = set()
        if storage.optimistic_concurrency:
            capabilities.add(StorageCapability.OPTIMISTIC_CONCURRENCY)
        if self._ttl:
            capabilities.add(StorageCapability.EXPIRY)
        self._capabilities = frozenset(capabilities)

    @property
    def capabilities(self) -> frozenset[StorageCapability]:
        return self._capabilities

    def _repo(self, name: str) -> Any:
        if self._repositories is None:
            raise BackendUnavailableError(self.kind.value, "backend is not connected")
        return self._repositories[name]

    @property
    def tracks(self) -> RedisTrackRepository:
        return self._repo("tracks")

    @property
    def playlists(self) -> RedisPlaylistRepository:
        return self._repo("playlists")

    @property
    def users(self) -> RedisUserAccountRepository:
        return self._repo("users")

    @property
    def artists(self) -> RedisArtistRepository:
        return self._repo("artists")

    async def connect(self) -> None:
        """Create the client and verify the server answers PING."""
        if self._client is None:
            self._client = aioredis.from_url(
                self._url, encoding="utf-8", decode_responses=True
            )
        try:
            async with unavailable_guard(
                self.kind.value,
                "connect",
                self._storage.operation_timeout,
                REDIS_UNAVAILABLE_ERRORS,
            ):
                await self._client.ping()
        except BaseException:
            await self._release_client()
            raise

        options: dict[str, Any] = {
            "keys": self._keys,
            "ttl_seconds": self._ttl,
            "backend_name": self.kind.value,
            "capabilities": self._capabilities,
            "operation_timeout": self._storage.operation_timeout,
            "batch_size": self._storage.query_batch_size,
            "optimistic_concurrency": self._storage.optimistic_concurrency,
        }
        self._repositories = {
            "tracks": RedisTrackRepository(self._client, **options),
            "playlists": RedisPlaylistRepository(self._client, **options),
            "users": RedisUserAccountRepository(self._client, **options),
            "artists": RedisArtistRepository(self._client, **options),
        }
        logger.info(
            "Connected to redis storage",
            extra={
                "url": redact_url(self._url) if self._url else None,
                "key_prefix": self._keys.prefix,
                "ttl_seconds": self._ttl,
            },
        )

    async def close(self) -> None:
        self._repositories = None
        await self._release_client()
        logger.info("Closed redis storage")

    async def _release_client(self) -> None:
        """Close the client only if connect() created it."""
        if self._owns_client and self._client is not None:
            client, self._client = self._client, None
            await client.aclose()

    async def ping(self) -> bool:
        if self._client is None or self._repositories is None:
            return False
        try:
            async with unavailable_guard(
                self.kind.value, "ping", self._storage.operation_timeout, REDIS_UNAVAILABLE_ERRORS
            ):
                await self._client.ping()
        except BackendUnavailableError as e:
            logger.warning("Ping to redis storage failed: %s", e.message)
            return False
        return True
