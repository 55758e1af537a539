"""Tests for the key-value cache backend on fakeredis."""

import json
from unittest.mock import AsyncMock, patch

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from spotify_assistant.config import StorageSettings
from spotify_assistant.domain.entities import Playlist, Track
from spotify_assistant.domain.exceptions import BackendUnavailableError
from spotify_assistant.domain.ports import StorageCapability
from spotify_assistant.infrastructure.persistence.redis_cache import (
    RedisKeys,
    RedisStorageBackend,
)


@pytest.fixture
def client() -> fakeredis.FakeAsyncRedis:
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
async def backend(client):
    instance = RedisStorageBackend(
        StorageSettings(), client=client, key_prefix="sa", ttl_seconds=60
    )
    await instance.connect()
    yield instance
    await instance.close()


class TestKeyLayout:
    """Test the documented key names."""

    def test_keys(self):
        """Test entity and reverse-reference keys."""
        keys = RedisKeys("sa")
        assert keys.entity(Track, "t1") == "sa:track:t1"
        assert keys.entity(Playlist, "p1") == "sa:playlist:p1"
        assert keys.track_refs("t1") == "sa:track-refs:t1"

    async def test_entity_stored_as_json_with_ttl(self, backend, client):
        """Test that the cached value is JSON and expires."""
        await backend.tracks.upsert(Track(id="t1", title="Song"))

        raw = await client.get("sa:track:t1")
        assert json.loads(raw)["version"] == 1
        assert 0 < await client.ttl("sa:track:t1") <= 60

    async def test_playlist_maintains_reference_sets(self, backend, client):
        """Test that the reverse sets follow playlist edits."""
        await backend.tracks.upsert(Track(id="t1", title="One"))
        await backend.tracks.upsert(Track(id="t2", title="Two"))
        stored = await backend.playlists.upsert(
            Playlist(id="p1", name="Mix", track_ids=["t1", "t2"])
        )
        assert await client.smembers("sa:track-refs:t1") == {"p1"}

        stored.remove_track("t1")
        await backend.playlists.upsert(stored)
        assert await client.smembers("sa:track-refs:t1") == set()
        assert await client.smembers("sa:track-refs:t2") == {"p1"}

    async def test_reference_sets_expire_with_playlists(self, backend, client):
        """Test that reverse sets get the cache TTL instead of living forever."""
        await backend.tracks.upsert(Track(id="t1", title="One"))
        await backend.playlists.upsert(Playlist(id="p1", name="Mix", track_ids=["t1"]))

        assert 0 < await client.ttl("sa:track-refs:t1") <= 60

    async def test_replace_keeps_created_at(self, backend, client):
        """Test that rewriting an entity keeps its first created_at."""
        first = await backend.tracks.upsert(Track(id="t1", title="Song"))
        second = await backend.tracks.upsert(Track(id="t1", title="Song (Live)"))

        assert second.created_at == first.created_at
        assert (await backend.tracks.get("t1")).created_at == first.created_at


class TestStaleReferences:
    """Test reverse sets that outlived their playlists."""

    async def test_expired_playlist_does_not_block_delete(self, backend, client):
        """Test that a ref to an expired playlist is ignored on delete."""
        await backend.tracks.upsert(Track(id="t1", title="One"))
        await backend.playlists.upsert(Playlist(id="p1", name="Mix", track_ids=["t1"]))
        await client.delete("sa:playlist:p1")

        await backend.tracks.delete("t1")

        assert await client.exists("sa:track-refs:t1") == 0

    async def test_referencing_playlists_prunes(self, backend, client):
        """Test that stale members are removed on lookup."""
        await backend.tracks.upsert(Track(id="t1", title="One"))
        await backend.playlists.upsert(Playlist(id="p1", name="Mix", track_ids=["t1"]))
        await client.sadd("sa:track-refs:t1", "gone")

        assert await backend.tracks.referencing_playlists("t1") == ["p1"]
        assert await client.smembers("sa:track-refs:t1") == {"p1"}


class TestCapabilities:
    """Test cache capability flags."""

    async def test_no_ttl_means_no_expiry(self, client):
        """Test that ttl 0 disables EXPIRY and leaves keys persistent."""
        backend = RedisStorageBackend(StorageSettings(), client=client, ttl_seconds=0)
        await backend.connect()

        await backend.tracks.upsert(Track(id="t1", title="Song"))

        assert not backend.supports(StorageCapability.EXPIRY)
        assert await client.ttl("spotify-assistant:track:t1") == -1

    def test_repositories_require_connect(self, client):
        """Test that repositories are unavailable before connect()."""
        backend = RedisStorageBackend(StorageSettings(), client=client)
        with pytest.raises(BackendUnavailableError, match="not connected"):
            _ = backend.tracks

    def test_url_or_client_required(self):
        """Test constructor validation."""
        with pytest.raises(ValueError):
            RedisStorageBackend(StorageSettings())


class TestClientOwnership:
    """Test which clients the backend closes."""

    async def test_injected_client_left_open(self, client):
        """Test that close() does not close a client the caller passed in."""
        backend = RedisStorageBackend(StorageSettings(), client=client)
        await backend.connect()
        await backend.close()

        assert await client.ping() is True
        assert await backend.ping() is False

    async def test_own_client_closed_when_connect_fails(self):
        """Test that a refused startup PING closes the client connect() created."""
        own_client = AsyncMock()
        own_client.ping.side_effect = RedisConnectionError("Connection refused")

        with patch(
            "spotify_assistant.infrastructure.persistence.redis_cache.aioredis.from_url",
            return_value=own_client,
        ):
            backend = RedisStorageBackend(StorageSettings(), url="redis://cache.invalid:6379/0")
            with pytest.raises(BackendUnavailableError):
                await backend.connect()

        own_client.aclose.assert_awaited_once()
        assert await backend.ping() is False
