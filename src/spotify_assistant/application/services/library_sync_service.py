"""Library sync: store entities fetched from the upstream Spotify API.

The API client lives outside this package; it hands us already-normalized
domain entities and we persist them. Upstream data always wins, so entities
arrive with version 0 and are written unconditionally.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, replace

from spotify_assistant.domain.entities import Artist, Playlist, Track, UserAccount
from spotify_assistant.domain.ports import IStorageBackend

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Counts from one sync call."""

    created: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated

    def count(self, stored_version: int) -> None:
        """Tally one stored entity; version 1 means it was new."""
        if stored_version == 1:
            self.created += 1
        else:
            self.updated += 1


class LibrarySyncService:
    """Ingest tracks, playlists, the user profile and followed artists."""

    def __init__(self, backend: IStorageBackend) -> None:
        self._backend = backend

    async def import_tracks(self, tracks: Iterable[Track]) -> SyncReport:
        """Upsert tracks as fetched upstream."""
        report = SyncReport()
        for track in tracks:
            stored = await self._backend.tracks.upsert(replace(track, version=0))
            report.count(stored.version)
        logger.info(
            "Imported %d tracks (%d new, %d updated)",
            report.total,
            report.created,
            report.updated,
        )
        return report

    # Hey future me - ORDER MATTERS: tracks first, then the playlist. The playlist upsert is
    # rejected if any of its track ids isn't stored yet.
    async def import_playlist(self, playlist: Playlist, tracks: Iterable[Track]) -> SyncReport:
        """Store a playlist together with its tracks.

        Returns:
            Track counts; the playlist itself is not counted
        """
        report = await self.import_tracks(tracks)
        stored = await self._backend.playlists.upsert(replace(playlist, version=0))
        logger.info(
            "Imported playlist %s (%s) with %d tracks",
            stored.id,
            stored.name,
            stored.track_count(),
        )
        return report

    async def import_user(self, user: UserAccount) -> UserAccount:
        """Store the current user's profile."""
        stored = await self._backend.users.upsert(replace(user, version=0))
        logger.info("Imported user profile %s", stored.id)
        return stored

    async def follow_artists(self, artists: Iterable[Artist]) -> SyncReport:
        """Store artists as followed."""
        report = SyncReport()
        for artist in artists:
            stored = await self._backend.artists.upsert(
                replace(artist, followed=True, version=0)
            )
            report.count(stored.version)
        logger.info("Stored %d followed artists", report.total)
        return report

    async def unfollow_artist(self, artist_id: str) -> Artist:
        """Mark a stored artist as no longer followed."""
        artist = await self._backend.artists.get(artist_id)
        artist.followed = False
        return await self._backend.artists.upsert(artist)
