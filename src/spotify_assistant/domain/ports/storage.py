"""Storage backend port and capability flags."""

from abc import ABC, abstractmethod
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, Any, Self

if TYPE_CHECKING:
    from spotify_assistant.domain.ports import (
        IArtistRepository,
        IPlaylistRepository,
        ITrackRepository,
        IUserAccountRepository,
    )


class StorageBackendKind(str, Enum):
    """Storage technologies a backend adapter can be built on."""

    SQLITE = "sqlite"
    POSTGRES = "postgres"
    MONGO = "mongo"
    REDIS = "redis"


# Hey future me - capabilities are how an adapter says "I can't do that" UP FRONT instead of
# quietly returning half the data. Callers that need a range query check
# supports(RANGE_QUERY) first; adapters without it raise CapabilityUnsupportedError.
class StorageCapability(str, Enum):
    """Features a backend adapter may or may not provide."""

    RANGE_QUERY = "range_query"  # filter on non-id fields / list everything
    OPTIMISTIC_CONCURRENCY = "optimistic_concurrency"  # version-checked upserts
    DURABLE = "durable"  # committed writes survive restart
    TRANSACTIONS = "transactions"  # multi-row writes are atomic
    EXPIRY = "expiry"  # entries may disappear on their own (cache TTL)


class IStorageBackend(ABC):
    """One storage technology exposing a repository per entity type.

    Exactly one backend is active per process; the backend selector builds it
    and hands it to whoever needs repositories.
    """

    kind: StorageBackendKind

    @property
    @abstractmethod
    def capabilities(self) -> frozenset[StorageCapability]:
        """Capabilities shared by all repositories of this backend."""
        pass

    @property
    @abstractmethod
    def tracks(self) -> "ITrackRepository":
        """Track repository."""
        pass

    @property
    @abstractmethod
    def playlists(self) -> "IPlaylistRepository":
        """Playlist repository."""
        pass

    @property
    @abstractmethod
    def users(self) -> "IUserAccountRepository":
        """UserAccount repository."""
        pass

    @property
    @abstractmethod
    def artists(self) -> "IArtistRepository":
        """Artist repository."""
        pass

    @abstractmethod
    async def connect(self) -> None:
        """Open connections and prepare the schema/indexes."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release every connection held by the backend."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the backend answers a trivial round trip."""
        pass

    def supports(self, capability: StorageCapability) -> bool:
        """Check a capability flag."""
        return capability in self.capabilities

    def stats(self) -> dict[str, Any]:
        """Adapter-specific runtime statistics for health reporting."""
        return {}

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
