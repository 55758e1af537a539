"""Unit tests for LibrarySyncService."""

import pytest

from spotify_assistant.application.services import LibrarySyncService
from spotify_assistant.domain.entities import Artist, Playlist, Track, UserAccount
from spotify_assistant.domain.exceptions import EntityNotFoundException


@pytest.fixture
def service(sqlite_backend) -> LibrarySyncService:
    return LibrarySyncService(sqlite_backend)


class TestLibrarySyncService:
    """Test ingestion of upstream entities."""

    async def test_import_tracks_counts_new_and_updated(self, service, sqlite_backend):
        """Test created/updated tallies across two syncs."""
        first = await service.import_tracks([Track(id="t1", title="A"), Track(id="t2", title="B")])
        second = await service.import_tracks(
            [Track(id="t2", title="B (Remastered)", version=7), Track(id="t3", title="C")]
        )

        assert (first.created, first.updated) == (2, 0)
        assert (second.created, second.updated) == (1, 1)
        assert second.total == 2
        assert (await sqlite_backend.tracks.get("t2")).title == "B (Remastered)"

    async def test_import_playlist_stores_tracks_first(self, service, sqlite_backend):
        """Test that a playlist import never trips referential integrity."""
        report = await service.import_playlist(
            Playlist(id="p1", name="Mix", track_ids=["t1", "t2"]),
            [Track(id="t1", title="A"), Track(id="t2", title="B")],
        )

        assert report.created == 2
        assert (await sqlite_backend.playlists.get("p1")).track_ids == ["t1", "t2"]

    async def test_import_user(self, service):
        """Test storing the user profile twice."""
        user = UserAccount(id="u1", display_name="Me", product="premium")
        await service.import_user(user)
        stored = await service.import_user(user)

        assert stored.version == 2

    async def test_follow_and_unfollow(self, service, sqlite_backend):
        """Test the followed-artists collection."""
        report = await service.follow_artists([Artist(id="a1", name="Avicii")])
        assert report.created == 1
        assert (await sqlite_backend.artists.get("a1")).followed is True

        unfollowed = await service.unfollow_artist("a1")

        assert unfollowed.followed is False
        assert unfollowed.version == 2

    async def test_unfollow_unknown(self, service):
        """Test that unfollowing an unknown artist is NotFound."""
        with pytest.raises(EntityNotFoundException):
            await service.unfollow_artist("nobody")
