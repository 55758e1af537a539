"""SQLAlchemy repository implementations and the relational storage backend."""

import logging
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import DisconnectionError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from spotify_assistant.config import StorageSettings
from spotify_assistant.domain.entities import Artist, Entity, Playlist, Track, UserAccount
from spotify_assistant.domain.exceptions import (
    BackendUnavailableError,
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
from spotify_assistant.infrastructure.persistence.database import Database
from spotify_assistant.infrastructure.persistence.models import (
    ArtistModel,
    PlaylistModel,
    PlaylistTrackModel,
    TrackModel,
    UserAccountModel,
    ensure_utc_aware,
)
from spotify_assistant.infrastructure.persistence.retry import lock_metrics, retry_on_lock

logger = logging.getLogger(__name__)

# Lock errors are OperationalErrors too. retry_on_lock replays them first and only the
# final failure reaches the guard.
SQL_UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (
    OperationalError,
    InterfaceError,
    DisconnectionError,
    OSError,
)

# Columns never rewritten by an UPDATE
_IMMUTABLE_COLUMNS = frozenset({"id", "created_at"})


class SqlRepository[T: Entity](BaseRepository[T]):
    """Generic SQLAlchemy repository over one model/entity pair.

    Every public operation runs in its own session_scope() transaction and is
    replayed by retry_on_lock when the database reports a transient lock.
    """

    unavailable_errors = SQL_UNAVAILABLE_ERRORS

    def __init__(
        self, database: Database, entity_type: type[T], model: type[Any], **options: Any
    ) -> None:
        """Initialize repository with the shared database."""
        super().__init__(entity_type, **options)
        self._db = database
        self._model = model

    @retry_on_lock()
    async def _fetch(self, entity_id: str) -> T | None:
        async with self._db.session_scope() as session:
            model = await session.get(self._model, entity_id)
            return model.to_entity() if model else None

    # Hey future me - the version check and the write happen in ONE transaction, and the
    # UPDATE itself is conditional on the version we just read. If another writer committed
    # in between, rowcount is 0 and we raise ConflictError instead of overwriting their
    # change. Two inserts racing on a new id collide on the primary key -> also a conflict.
    @retry_on_lock()
    async def _write(self, entity: T, entity_id: str, expected: int | None) -> T:
        async with self._db.session_scope() as session:
            row = (
                await session.execute(
                    select(self._model.version, self._model.created_at).where(
                        self._model.id == entity_id
                    )
                )
            ).first()
            current = row.version if row else None
            version = self._next_version(entity_id, expected, current)
            stored = self._stamped(
                entity,
                entity_id,
                version,
                created_at=ensure_utc_aware(row.created_at) if row else None,
            )
            await self._check_references(session, stored)

            columns = self._model.columns_from(stored)
            if current is None:
                session.add(self._model(**columns))
                try:
                    await session.flush()
                except IntegrityError as e:
                    raise self._conflict(entity_id, expected) from e
            else:
                values = {
                    getattr(self._model, name): value
                    for name, value in columns.items()
                    if name not in _IMMUTABLE_COLUMNS
                }
                result = await session.execute(
                    update(self._model)
                    .where(self._model.id == entity_id, self._model.version == current)
                    .values(values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:  # type: ignore[attr-defined]
                    raise self._conflict(entity_id, expected)

            await self._write_children(session, stored, replace_existing=current is not None)
        return stored

    @retry_on_lock()
    async def _remove(self, entity_id: str) -> bool:
        async with self._db.session_scope() as session:
            await self._check_removable(session, entity_id)
            try:
                result = await session.execute(
                    delete(self._model)
                    .where(self._model.id == entity_id)
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError as e:
                raise self._delete_blocked(entity_id) from e
            return bool(result.rowcount)  # type: ignore[attr-defined]

    @retry_on_lock()
    async def _fetch_page(
        self,
        query_filter: QueryFilter,
        after_id: str | None,
        skip: int,
        limit: int,
    ) -> list[T]:
        stmt = select(self._model)
        if query_filter.ids is not None:
            stmt = stmt.where(self._model.id.in_(query_filter.ids))
        for name, value in query_filter.criteria.items():
            stmt = stmt.where(getattr(self._model, name) == value)
        if after_id is not None:
            stmt = stmt.where(self._model.id > after_id)
        stmt = stmt.order_by(self._model.id).offset(skip).limit(limit)

        async with self._db.session_scope() as session:
            result = await session.execute(stmt)
            return [model.to_entity() for model in result.scalars().all()]

    # Hooks for entity-specific integrity rules

    async def _check_references(self, session: AsyncSession, entity: T) -> None:
        return None

    async def _write_children(
        self, session: AsyncSession, entity: T, replace_existing: bool
    ) -> None:
        return None

    async def _check_removable(self, session: AsyncSession, entity_id: str) -> None:
        return None

    def _delete_blocked(self, entity_id: str) -> ReferentialIntegrityError:
        return ReferentialIntegrityError(
            f"{self.entity_name} {entity_id} is still referenced",
            self.entity_name,
            entity_id,
        )


class SqlTrackRepository(SqlRepository[Track], ITrackRepository):
    """SQLAlchemy implementation of Track repository."""

    def __init__(self, database: Database, **options: Any) -> None:
        super().__init__(database, Track, TrackModel, **options)

    async def referencing_playlists(self, track_id: str) -> list[str]:
        """Ids of playlists that reference a track."""
        async with self.guard("referencing_playlists", track_id):
            async with self._db.session_scope() as session:
                return await _referencing_playlists(session, track_id)

    async def _check_removable(self, session: AsyncSession, entity_id: str) -> None:
        playlist_ids = await _referencing_playlists(session, entity_id)
        if playlist_ids:
            raise _still_referenced(entity_id, playlist_ids)

    # Raised when the RESTRICT foreign key fires: a playlist grabbed the track after our check
    def _delete_blocked(self, entity_id: str) -> ReferentialIntegrityError:
        return _still_referenced(entity_id, [])


class SqlPlaylistRepository(SqlRepository[Playlist], IPlaylistRepository):
    """SQLAlchemy implementation of Playlist repository."""

    def __init__(self, database: Database, **options: Any) -> None:
        super().__init__(database, Playlist, PlaylistModel, **options)

    async def _check_references(self, session: AsyncSession, entity: Playlist) -> None:
        wanted = set(entity.track_ids)
        if not wanted:
            return
        found = set(
            (
                await session.scalars(select(TrackModel.id).where(TrackModel.id.in_(wanted)))
            ).all()
        )
        missing = sorted(wanted - found)
        if missing:
            raise ReferentialIntegrityError(
                f"Playlist {entity.id} references unknown tracks: {', '.join(missing)}",
                "Playlist",
                entity.id,
                references=missing,
            )

    async def _write_children(
        self, session: AsyncSession, entity: Playlist, replace_existing: bool
    ) -> None:
        if replace_existing:
            await session.execute(
                delete(PlaylistTrackModel)
                .where(PlaylistTrackModel.playlist_id == entity.id)
                .execution_options(synchronize_session=False)
            )
        session.add_all(
            PlaylistTrackModel(playlist_id=entity.id, position=position, track_id=track_id)
            for position, track_id in enumerate(entity.track_ids)
        )
        try:
            await session.flush()
        except IntegrityError as e:
            raise ReferentialIntegrityError(
                f"Playlist {entity.id} references a track that was deleted concurrently",
                "Playlist",
                entity.id,
                references=list(entity.track_ids),
            ) from e


class SqlUserAccountRepository(SqlRepository[UserAccount], IUserAccountRepository):
    """SQLAlchemy implementation of UserAccount repository."""

    def __init__(self, database: Database, **options: Any) -> None:
        super().__init__(database, UserAccount, UserAccountModel, **options)


class SqlArtistRepository(SqlRepository[Artist], IArtistRepository):
    """SQLAlchemy implementation of Artist repository."""

    def __init__(self, database: Database, **options: Any) -> None:
        super().__init__(database, Artist, ArtistModel, **options)


async def _referencing_playlists(session: AsyncSession, track_id: str) -> list[str]:
    result = await session.scalars(
        select(PlaylistTrackModel.playlist_id)
        .where(PlaylistTrackModel.track_id == track_id)
        .distinct()
        .order_by(PlaylistTrackModel.playlist_id)
    )
    return list(result.all())


def _still_referenced(track_id: str, playlist_ids: list[str]) -> ReferentialIntegrityError:
    detail = f" by playlists {', '.join(playlist_ids)}" if playlist_ids else ""
    return ReferentialIntegrityError(
        f"Track {track_id} is still referenced{detail}",
        "Track",
        track_id,
        references=playlist_ids,
    )


class SqlStorageBackend(IStorageBackend):
    """Relational backend (SQLite or Postgres) built on one Database."""

    def __init__(
        self,
        database: Database,
        storage: StorageSettings,
        kind: StorageBackendKind = StorageBackendKind.SQLITE,
    ) -> None:
        self.kind = kind
        self._db = database
        self._timeout = storage.operation_timeout

        capabilities = {
            StorageCapability.RANGE_QUERY,
            StorageCapability.DURABLE,
            StorageCapability.TRANSACTIONS,
        }
        if storage.optimistic_concurrency:
            capabilities.add(StorageCapability.OPTIMISTIC_CONCURRENCY)
        self._capabilities = frozenset(capabilities)

        options: dict[str, Any] = {
            "backend_name": kind.value,
            "capabilities": self._capabilities,
            "operation_timeout": storage.operation_timeout,
            "batch_size": storage.query_batch_size,
            "optimistic_concurrency": storage.optimistic_concurrency,
        }
        self._tracks = SqlTrackRepository(database, **options)
        self._playlists = SqlPlaylistRepository(database, **options)
        self._users = SqlUserAccountRepository(database, **options)
        self._artists = SqlArtistRepository(database, **options)

    @property
    def capabilities(self) -> frozenset[StorageCapability]:
        return self._capabilities

    @property
    def tracks(self) -> SqlTrackRepository:
        return self._tracks

    @property
    def playlists(self) -> SqlPlaylistRepository:
        return self._playlists

    @property
    def users(self) -> SqlUserAccountRepository:
        return self._users

    @property
    def artists(self) -> SqlArtistRepository:
        return self._artists

    async def connect(self) -> None:
        """Create missing tables; fails fast if the database is unreachable.

        The engine is disposed again when this fails, so no pooled connection outlives it.
        """
        try:
            async with unavailable_guard(
                self.kind.value, "connect", self._timeout, SQL_UNAVAILABLE_ERRORS
            ):
                await self._db.create_tables()
        except BaseException:
            await self._db.close()
            raise
        logger.info(
            "Connected to %s storage",
            self.kind.value,
            extra={"url": self._db.safe_url},
        )

    async def close(self) -> None:
        await self._db.close()
        logger.info("Closed %s storage", self.kind.value)

    async def ping(self) -> bool:
        try:
            async with unavailable_guard(
                self.kind.value, "ping", self._timeout, SQL_UNAVAILABLE_ERRORS
            ):
                await self._db.ping()
        except BackendUnavailableError as e:
            logger.warning("Ping to %s storage failed: %s", self.kind.value, e.message)
            return False
        return True

    def stats(self) -> dict[str, Any]:
        return {"pool": self._db.get_pool_stats(), "locks": lock_metrics.snapshot()}
