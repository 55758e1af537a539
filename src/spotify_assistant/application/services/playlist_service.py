"""Playlist service for playlist operations.

Hey future me - every mutation here is read-modify-write through the repository: get the
playlist, change it in memory with the entity's own methods, upsert. The upsert carries the
version we read, so if somebody else wrote in between we get ConflictError and simply start
over from a fresh read (up to max_conflict_retries).
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from spotify_assistant.domain.entities import Playlist, Track
from spotify_assistant.domain.exceptions import BusinessRuleViolation, ConflictError
from spotify_assistant.domain.ports import IPlaylistRepository, ITrackRepository
from spotify_assistant.domain.value_objects import QueryFilter, TrackFingerprint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlaylistComparison:
    """Track-level difference between two playlists, in each playlist's order."""

    first_id: str
    second_id: str
    common: list[str] = field(default_factory=list)
    only_in_first: list[str] = field(default_factory=list)
    only_in_second: list[str] = field(default_factory=list)

    @property
    def is_identical(self) -> bool:
        """True if both playlists hold the same set of tracks."""
        return not self.only_in_first and not self.only_in_second


class PlaylistService:
    """Service for playlist management operations."""

    def __init__(
        self,
        playlists: IPlaylistRepository,
        tracks: ITrackRepository,
        max_conflict_retries: int = 3,
    ) -> None:
        """Initialize playlist service.

        Args:
            playlists: Playlist repository
            tracks: Track repository
            max_conflict_retries: Attempts per mutation before ConflictError escapes
        """
        if max_conflict_retries < 1:
            raise ValueError("max_conflict_retries must be at least 1")
        self._playlists = playlists
        self._tracks = tracks
        self._max_conflict_retries = max_conflict_retries

    async def create_playlist(
        self,
        name: str,
        owner_id: str | None = None,
        track_ids: Sequence[str] = (),
        description: str | None = None,
        public: bool = False,
    ) -> Playlist:
        """Create and store a new playlist.

        Raises:
            ReferentialIntegrityError: A track id is not stored
        """
        playlist = Playlist(
            name=name,
            owner_id=owner_id,
            description=description,
            public=public,
        )
        for track_id in track_ids:
            playlist.add_track(track_id)
        stored = await self._playlists.upsert(playlist)
        logger.info(
            "Created playlist %s with %d tracks", stored.id, stored.track_count()
        )
        return stored

    async def delete_playlist(self, playlist_id: str) -> None:
        """Delete a playlist. Its tracks are NOT deleted."""
        await self._playlists.delete(playlist_id)
        logger.info("Deleted playlist %s", playlist_id)

    async def get_playlist_tracks(self, playlist_id: str) -> list[Track]:
        """Tracks of a playlist in playlist order.

        Ids that no longer resolve (an expired cache entry) are skipped.
        """
        playlist = await self._playlists.get(playlist_id)
        return await self._load_tracks(playlist.track_ids)

    async def add_tracks(
        self,
        playlist_id: str,
        track_ids: Sequence[str],
        position: int | None = None,
    ) -> Playlist:
        """Add tracks (skipping ones already present), at position or at the end."""

        def change(playlist: Playlist) -> int:
            added = 0
            for track_id in dict.fromkeys(track_ids):
                at = None if position is None else position + added
                if playlist.add_track(track_id, at):
                    added += 1
            return added

        return await self._mutate(playlist_id, "add_tracks", change)

    async def remove_tracks(self, playlist_id: str, track_ids: Sequence[str]) -> Playlist:
        """Remove tracks from a playlist; unknown ids are ignored."""

        def change(playlist: Playlist) -> int:
            return sum(1 for track_id in set(track_ids) if playlist.remove_track(track_id))

        return await self._mutate(playlist_id, "remove_tracks", change)

    async def reorder_tracks(
        self,
        playlist_id: str,
        range_start: int,
        insert_before: int,
        range_length: int = 1,
    ) -> Playlist:
        """Move a block of tracks (Spotify reorder semantics)."""

        def change(playlist: Playlist) -> int:
            before = list(playlist.track_ids)
            playlist.move_tracks(range_start, insert_before, range_length)
            return int(before != playlist.track_ids)

        return await self._mutate(playlist_id, "reorder_tracks", change)

    async def compare_playlists(self, first_id: str, second_id: str) -> PlaylistComparison:
        """Which tracks two playlists share and which only one of them has."""
        if first_id == second_id:
            raise BusinessRuleViolation("Cannot compare a playlist with itself")
        first = await self._playlists.get(first_id)
        second = await self._playlists.get(second_id)
        in_first = set(first.track_ids)
        in_second = set(second.track_ids)
        return PlaylistComparison(
            first_id=first_id,
            second_id=second_id,
            common=[tid for tid in first.track_ids if tid in in_second],
            only_in_first=[tid for tid in first.track_ids if tid not in in_second],
            only_in_second=[tid for tid in second.track_ids if tid not in in_first],
        )

    async def find_duplicates(self, playlist_id: str) -> list[list[str]]:
        """Groups of track ids in a playlist that are the same recording.

        Returns:
            One list per duplicated recording, in playlist order; empty if none
        """
        tracks = await self.get_playlist_tracks(playlist_id)
        groups: dict[TrackFingerprint, list[str]] = {}
        for track in tracks:
            groups.setdefault(TrackFingerprint.of(track), []).append(track.id or "")
        return [ids for ids in groups.values() if len(ids) > 1]

    async def _load_tracks(self, track_ids: Sequence[str]) -> list[Track]:
        if not track_ids:
            return []
        by_id = {
            track.id: track async for track in self._tracks.query(QueryFilter.by_ids(*track_ids))
        }
        return [by_id[track_id] for track_id in track_ids if track_id in by_id]

    async def _mutate(
        self,
        playlist_id: str,
        operation: str,
        change: Callable[[Playlist], int],
    ) -> Playlist:
        for attempt in range(1, self._max_conflict_retries + 1):
            playlist = await self._playlists.get(playlist_id)
            if not change(playlist):
                return playlist
            try:
                return await self._playlists.upsert(playlist)
            except ConflictError:
                if attempt == self._max_conflict_retries:
                    logger.error(
                        "%s on playlist %s still conflicting after %d attempts",
                        operation,
                        playlist_id,
                        attempt,
                    )
                    raise
                logger.warning(
                    "%s on playlist %s conflicted (attempt %d/%d), retrying",
                    operation,
                    playlist_id,
                    attempt,
                    self._max_conflict_retries,
                )
        raise RuntimeError("Unexpected state in playlist mutation loop")
