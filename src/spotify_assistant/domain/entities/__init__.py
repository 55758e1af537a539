"""Domain entities.

Plain records shared by the application layer and every storage adapter.
Entities never know where they are stored.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, ClassVar


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me, credential_ref is a HANDLE to a secret that lives somewhere else (keyring,
# env var, secrets manager), shaped like "<scheme>:<locator>". Raw tokens never enter the
# domain model - they would end up in every backend, every cache entry, every log line.
_CREDENTIAL_REF_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*:\S+$")
_RAW_TOKEN_PATTERN = re.compile(r"^(bearer\s|[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$)", re.I)


def _check_popularity(value: int | None, entity: str) -> None:
    if value is not None and not 0 <= value <= 100:
        raise ValueError(f"{entity} popularity must be between 0 and 100")


# Yo, Track is immutable once fetched from the provider (frozen=True). A re-sync produces a
# NEW Track via refreshed() and upserts it - nobody edits a track in place. artists is a
# list (not set) because Spotify's artist order is meaningful: first artist is the main one.
# metadata is the provider blob (external_urls, preview_url, ...) - stored opaque.
@dataclass(frozen=True, kw_only=True)
class Track:
    """Track entity representing a music track."""

    ENTITY_NAME: ClassVar[str] = "Track"
    FILTERABLE_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"title", "album", "isrc", "explicit"}
    )

    id: str | None = None
    title: str
    artists: list[str] = field(default_factory=list)
    duration_ms: int = 0
    album: str | None = None
    isrc: str | None = None
    explicit: bool = False
    popularity: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    created_at: datetime = field(default_factory=utc_now, compare=False)
    updated_at: datetime = field(default_factory=utc_now, compare=False)

    def __post_init__(self) -> None:
        """Validate track data."""
        if not self.title or not self.title.strip():
            raise ValueError("Track title cannot be empty")
        if self.duration_ms < 0:
            raise ValueError("Duration cannot be negative")
        _check_popularity(self.popularity, "Track")

    @property
    def primary_artist(self) -> str | None:
        """First credited artist, if any."""
        return self.artists[0] if self.artists else None

    def refreshed(self, **changes: Any) -> "Track":
        """Return a refreshed copy of this track with a new updated_at."""
        return replace(self, updated_at=utc_now(), **changes)


# Listen, Playlist holds Track REFERENCES (ids), not Track objects. Order matters so it's a
# list. The repository is the owner: in-memory mutations below only matter once the playlist
# is upserted again, and every id must resolve to a stored Track or the upsert is rejected.
@dataclass(kw_only=True)
class Playlist:
    """Playlist entity representing an ordered collection of tracks."""

    ENTITY_NAME: ClassVar[str] = "Playlist"
    FILTERABLE_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"name", "owner_id", "public", "collaborative"}
    )

    id: str | None = None
    name: str
    owner_id: str | None = None
    track_ids: list[str] = field(default_factory=list)
    description: str | None = None
    public: bool = False
    collaborative: bool = False
    snapshot_id: str | None = None
    version: int = 0
    created_at: datetime = field(default_factory=utc_now, compare=False)
    updated_at: datetime = field(default_factory=utc_now, compare=False)

    def __post_init__(self) -> None:
        """Validate playlist data."""
        if not self.name or not self.name.strip():
            raise ValueError("Playlist name cannot be empty")

    def add_track(self, track_id: str, position: int | None = None) -> bool:
        """Add a track to the playlist.

        Returns:
            False if the track was already present (playlists hold no duplicates)
        """
        if track_id in self.track_ids:
            return False
        if position is None:
            self.track_ids.append(track_id)
        else:
            if not 0 <= position <= len(self.track_ids):
                raise ValueError(
                    f"Position {position} out of range for {len(self.track_ids)} tracks"
                )
            self.track_ids.insert(position, track_id)
        self.updated_at = utc_now()
        return True

    def remove_track(self, track_id: str) -> bool:
        """Remove a track from the playlist."""
        if track_id not in self.track_ids:
            return False
        self.track_ids.remove(track_id)
        self.updated_at = utc_now()
        return True

    # Hey future me - same semantics as Spotify's "reorder playlist items" endpoint:
    # take range_length items starting at range_start and put them before the item that
    # is currently at insert_before. insert_before == len(track_ids) means "move to end".
    def move_tracks(
        self, range_start: int, insert_before: int, range_length: int = 1
    ) -> None:
        """Move a contiguous block of tracks to a new position."""
        total = len(self.track_ids)
        if range_length < 1:
            raise ValueError("range_length must be at least 1")
        if not 0 <= range_start < total or range_start + range_length > total:
            raise ValueError(
                f"Range {range_start}+{range_length} out of bounds for {total} tracks"
            )
        if not 0 <= insert_before <= total:
            raise ValueError(f"insert_before {insert_before} out of bounds")
        if range_start <= insert_before <= range_start + range_length:
            return

        block = self.track_ids[range_start : range_start + range_length]
        remaining = (
            self.track_ids[:range_start] + self.track_ids[range_start + range_length :]
        )
        target = insert_before - range_length if insert_before > range_start else insert_before
        self.track_ids = remaining[:target] + block + remaining[target:]
        self.updated_at = utc_now()

    def clear_tracks(self) -> None:
        """Remove all tracks from the playlist."""
        self.track_ids.clear()
        self.updated_at = utc_now()

    def track_count(self) -> int:
        """Get the number of tracks in the playlist."""
        return len(self.track_ids)


@dataclass(kw_only=True)
class UserAccount:
    """Cached Spotify user profile.

    profile holds whatever extra attributes the API client chose to cache
    (images, external_urls, ...). credential_ref is an opaque handle such as
    ``keyring:spotify-assistant/<user>`` - never the secret itself.
    """

    ENTITY_NAME: ClassVar[str] = "UserAccount"
    FILTERABLE_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"display_name", "email", "product", "country"}
    )

    id: str | None = None
    display_name: str | None = None
    email: str | None = None
    product: str | None = None
    country: str | None = None
    followers: int = 0
    explicit_filter_enabled: bool = False
    explicit_filter_locked: bool = False
    profile: dict[str, Any] = field(default_factory=dict)
    credential_ref: str | None = None
    version: int = 0
    created_at: datetime = field(default_factory=utc_now, compare=False)
    updated_at: datetime = field(default_factory=utc_now, compare=False)

    def __post_init__(self) -> None:
        """Validate user account data."""
        if self.followers < 0:
            raise ValueError("Follower count cannot be negative")
        if self.credential_ref is not None:
            self._validate_credential_ref(self.credential_ref)

    @staticmethod
    def _validate_credential_ref(ref: str) -> None:
        if len(ref) > 255 or _RAW_TOKEN_PATTERN.match(ref):
            raise ValueError("credential_ref must be a handle, not a raw token")
        if not _CREDENTIAL_REF_PATTERN.match(ref):
            raise ValueError(
                "credential_ref must look like '<scheme>:<locator>', e.g. 'keyring:user'"
            )

    def update_profile(self, **attributes: Any) -> None:
        """Merge cached profile attributes."""
        self.profile.update(attributes)
        self.updated_at = utc_now()


@dataclass(kw_only=True)
class Artist:
    """Artist entity, used for the followed-artists collection."""

    ENTITY_NAME: ClassVar[str] = "Artist"
    FILTERABLE_FIELDS: ClassVar[frozenset[str]] = frozenset({"name", "followed"})

    id: str | None = None
    name: str
    genres: list[str] = field(default_factory=list)
    popularity: int | None = None
    followers: int = 0
    followed: bool = False
    version: int = 0
    created_at: datetime = field(default_factory=utc_now, compare=False)
    updated_at: datetime = field(default_factory=utc_now, compare=False)

    def __post_init__(self) -> None:
        """Validate artist data."""
        if not self.name or not self.name.strip():
            raise ValueError("Artist name cannot be empty")
        _check_popularity(self.popularity, "Artist")


Entity = Track | Playlist | UserAccount | Artist

__all__ = [
    "Artist",
    "Entity",
    "Playlist",
    "Track",
    "UserAccount",
    "utc_now",
]
