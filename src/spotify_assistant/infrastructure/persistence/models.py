"""SQLAlchemy ORM models for the relational backends (SQLite and Postgres)."""

from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from spotify_assistant.domain.entities import Artist, Playlist, Track, UserAccount, utc_now


# Hey future me - SQLite doesn't preserve timezone info! UTC datetimes come back naive. Every
# to_entity() runs timestamps through this so entities always carry aware datetimes.
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


class Base(DeclarativeBase):
    """Base class for all ORM models.

    All models share this metadata registry; Database.create_tables() builds
    the schema from it.
    """

    pass


class _Versioned:
    """Columns shared by every entity table."""

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utc_now, nullable=False
    )


# Listen, the provider blob lives in a column called "metadata" but the attribute is
# provider_metadata - DeclarativeBase reserves .metadata for the table registry.
class TrackModel(_Versioned, Base):
    """SQLAlchemy model for Track entity."""

    __tablename__ = "tracks"

    title: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    artists: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    album: Mapped[str | None] = mapped_column(String(512), nullable=True, index=True)
    isrc: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    explicit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    popularity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    @classmethod
    def columns_from(cls, track: Track) -> dict[str, Any]:
        """Column values for an INSERT/UPDATE of this track."""
        return {
            "id": track.id,
            "title": track.title,
            "artists": list(track.artists),
            "duration_ms": track.duration_ms,
            "album": track.album,
            "isrc": track.isrc,
            "explicit": track.explicit,
            "popularity": track.popularity,
            "provider_metadata": dict(track.metadata),
            "version": track.version,
            "created_at": track.created_at,
            "updated_at": track.updated_at,
        }

    def to_entity(self) -> Track:
        """Convert to domain entity."""
        return Track(
            id=self.id,
            title=self.title,
            artists=list(self.artists or []),
            duration_ms=self.duration_ms,
            album=self.album,
            isrc=self.isrc,
            explicit=self.explicit,
            popularity=self.popularity,
            metadata=dict(self.provider_metadata or {}),
            version=self.version,
            created_at=ensure_utc_aware(self.created_at),
            updated_at=ensure_utc_aware(self.updated_at),
        )


class PlaylistModel(_Versioned, Base):
    """SQLAlchemy model for Playlist entity."""

    __tablename__ = "playlists"

    name: Mapped[str] = mapped_column(String(512), nullable=False, index=True)
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    public: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    collaborative: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    snapshot_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Read side only; entries are written explicitly by the repository. selectin because the
    # async session can't lazy-load.
    entries: Mapped[list["PlaylistTrackModel"]] = relationship(
        "PlaylistTrackModel",
        order_by="PlaylistTrackModel.position",
        viewonly=True,
        lazy="selectin",
    )

    @classmethod
    def columns_from(cls, playlist: Playlist) -> dict[str, Any]:
        """Column values for an INSERT/UPDATE (track entries excluded)."""
        return {
            "id": playlist.id,
            "name": playlist.name,
            "owner_id": playlist.owner_id,
            "description": playlist.description,
            "public": playlist.public,
            "collaborative": playlist.collaborative,
            "snapshot_id": playlist.snapshot_id,
            "version": playlist.version,
            "created_at": playlist.created_at,
            "updated_at": playlist.updated_at,
        }

    def to_entity(self) -> Playlist:
        """Convert to domain entity."""
        return Playlist(
            id=self.id,
            name=self.name,
            owner_id=self.owner_id,
            track_ids=[entry.track_id for entry in self.entries],
            description=self.description,
            public=self.public,
            collaborative=self.collaborative,
            snapshot_id=self.snapshot_id,
            version=self.version,
            created_at=ensure_utc_aware(self.created_at),
            updated_at=ensure_utc_aware(self.updated_at),
        )


# Yo, this is the ordered Playlist -> Track association. The primary key is
# (playlist_id, position) so order is stored explicitly. The FK to tracks is RESTRICT:
# the database itself refuses to delete a referenced track, backing up the check the
# repository does first. Deleting a playlist cascades to its entries.
class PlaylistTrackModel(Base):
    """Association table for the ordered Playlist-Track relationship."""

    __tablename__ = "playlist_tracks"

    playlist_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("playlists.id", ondelete="CASCADE"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, primary_key=True)
    track_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tracks.id", ondelete="RESTRICT"), nullable=False
    )

    __table_args__ = (Index("ix_playlist_tracks_track_id", "track_id"),)


class UserAccountModel(_Versioned, Base):
    """SQLAlchemy model for UserAccount entity."""

    __tablename__ = "user_accounts"

    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, index=True)
    product: Mapped[str | None] = mapped_column(String(32), nullable=True)
    country: Mapped[str | None] = mapped_column(String(8), nullable=True)
    followers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    explicit_filter_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    explicit_filter_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    profile: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    credential_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @classmethod
    def columns_from(cls, user: UserAccount) -> dict[str, Any]:
        """Column values for an INSERT/UPDATE of this user."""
        return {
            "id": user.id,
            "display_name": user.display_name,
            "email": user.email,
            "product": user.product,
            "country": user.country,
            "followers": user.followers,
            "explicit_filter_enabled": user.explicit_filter_enabled,
            "explicit_filter_locked": user.explicit_filter_locked,
            "profile": dict(user.profile),
            "credential_ref": user.credential_ref,
            "version": user.version,
            "created_at": user.created_at,
            "updated_at": user.updated_at,
        }

    def to_entity(self) -> UserAccount:
        """Convert to domain entity."""
        return UserAccount(
            id=self.id,
            display_name=self.display_name,
            email=self.email,
            product=self.product,
            country=self.country,
            followers=self.followers,
            explicit_filter_enabled=self.explicit_filter_enabled,
            explicit_filter_locked=self.explicit_filter_locked,
            profile=dict(self.profile or {}),
            credential_ref=self.credential_ref,
            version=self.version,
            created_at=ensure_utc_aware(self.created_at),
            updated_at=ensure_utc_aware(self.updated_at),
        )


class ArtistModel(_Versioned, Base):
    """SQLAlchemy model for Artist entity (followed artists)."""

    __tablename__ = "artists"

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    genres: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    popularity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    followers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    followed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    @classmethod
    def columns_from(cls, artist: Artist) -> dict[str, Any]:
        """Column values for an INSERT/UPDATE of this artist."""
        return {
            "id": artist.id,
            "name": artist.name,
            "genres": list(artist.genres),
            "popularity": artist.popularity,
            "followers": artist.followers,
            "followed": artist.followed,
            "version": artist.version,
            "created_at": artist.created_at,
            "updated_at": artist.updated_at,
        }

    def to_entity(self) -> Artist:
        """Convert to domain entity."""
        return Artist(
            id=self.id,
            name=self.name,
            genres=list(self.genres or []),
            popularity=self.popularity,
            followers=self.followers,
            followed=self.followed,
            version=self.version,
            created_at=ensure_utc_aware(self.created_at),
            updated_at=ensure_utc_aware(self.updated_at),
        )
