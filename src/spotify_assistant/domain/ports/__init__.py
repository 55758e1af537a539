"""Domain ports (interfaces) for dependency inversion."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from spotify_assistant.domain.entities import Artist, Playlist, Track, UserAccount
from spotify_assistant.domain.ports.storage import (
    IStorageBackend,
    StorageBackendKind,
    StorageCapability,
)
from spotify_assistant.domain.value_objects import Pagination, QueryFilter


# Hey future me, IRepository is a PORT (Hexagonal Architecture)! Application code depends on
# this contract, never on SQLAlchemy/PyMongo/redis types. Every adapter must give the SAME
# observable results for get/upsert/delete/query - they only differ in speed and durability.
# If you change this interface, ALL adapters must change too!
class IRepository[T](ABC):
    """Technology-agnostic CRUD + query contract for one entity type."""

    @property
    @abstractmethod
    def capabilities(self) -> frozenset[StorageCapability]:
        """Capabilities of the backing store."""
        pass

    def supports(self, capability: StorageCapability) -> bool:
        """Check a capability flag."""
        return capability in self.capabilities

    @abstractmethod
    async def get(self, entity_id: str) -> T:
        """Get an entity by id.

        Raises:
            EntityNotFoundException: No entity with this id is stored
            BackendUnavailableError: The backend failed or timed out
        """
        pass

    @abstractmethod
    async def upsert(self, entity: T) -> T:
        """Insert or replace an entity.

        Assigns an id when the entity has none. Returns the stored copy, with
        its new version; the argument is left untouched.

        Raises:
            ConflictError: The stored version differs from entity.version
            ReferentialIntegrityError: A Playlist references unknown Tracks
            BackendUnavailableError: The backend failed or timed out
        """
        pass

    @abstractmethod
    async def delete(self, entity_id: str) -> None:
        """Delete an entity by id.

        Raises:
            EntityNotFoundException: No entity with this id is stored
            ReferentialIntegrityError: A Track is still referenced by a Playlist
        """
        pass

    @abstractmethod
    def query(
        self,
        query_filter: QueryFilter | None = None,
        pagination: Pagination | None = None,
    ) -> AsyncIterator[T]:
        """Lazily iterate entities matching a filter, ordered by id.

        The filter is validated immediately; results are fetched in batches as
        the caller iterates. Each call starts a fresh iteration.

        Raises:
            ValidationException: The filter uses a non-filterable field
            CapabilityUnsupportedError: The backend cannot answer this filter
        """
        pass


class ITrackRepository(IRepository[Track]):
    """Repository interface for Track entities."""

    @abstractmethod
    async def referencing_playlists(self, track_id: str) -> list[str]:
        """Ids of playlists that reference a track."""
        pass


class IPlaylistRepository(IRepository[Playlist]):
    """Repository interface for Playlist entities.

    Upserts are rejected when track_ids contains ids the backend does not hold.
    """

    pass


class IUserAccountRepository(IRepository[UserAccount]):
    """Repository interface for UserAccount entities."""

    pass


class IArtistRepository(IRepository[Artist]):
    """Repository interface for Artist entities."""

    pass


__all__ = [
    "IArtistRepository",
    "IPlaylistRepository",
    "IRepository",
    "IStorageBackend",
    "ITrackRepository",
    "IUserAccountRepository",
    "StorageBackendKind",
    "StorageCapability",
]
