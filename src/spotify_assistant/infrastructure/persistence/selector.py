"""Backend selection: configuration in, exactly one storage backend out."""

import importlib.util
import logging
from collections.abc import Callable
from pathlib import Path
from urllib.parse import urlsplit

from spotify_assistant.config import Settings, redact_url
from spotify_assistant.domain.exceptions import ConfigurationError
from spotify_assistant.domain.ports import IStorageBackend, StorageBackendKind

logger = logging.getLogger(__name__)

# kind -> (driver module that must be importable, pip extra that provides it)
_DRIVERS: dict[StorageBackendKind, tuple[str, str]] = {
    StorageBackendKind.SQLITE: ("aiosqlite", "sqlite"),
    StorageBackendKind.POSTGRES: ("asyncpg", "postgres"),
    StorageBackendKind.MONGO: ("pymongo", "mongo"),
    StorageBackendKind.REDIS: ("redis", "rds"),
}

_URL_SCHEMES: dict[StorageBackendKind, frozenset[str]] = {
    StorageBackendKind.POSTGRES: frozenset(
        {"postgres", "postgresql", "postgresql+asyncpg", "postgresql+psycopg2", "postgresql+psycopg"}
    ),
    StorageBackendKind.MONGO: frozenset({"mongodb", "mongodb+srv"}),
    StorageBackendKind.REDIS: frozenset({"redis", "rediss", "unix"}),
}


def validate_sqlite_path(db_path: Path) -> None:
    """Ensure the SQLite file's directory exists and is writable.

    The database file itself is not created here; SQLite does that on first
    connect along with its journal files.
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to create SQLite database directory '{db_path.parent}': {exc}. "
            "Set SQLITE_PATH to a writable location."
        ) from exc

    test_file = db_path.parent / f".{db_path.stem}_write_test"
    try:
        test_file.write_bytes(b"test")
        test_file.unlink()
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to write files in database directory '{db_path.parent}': {exc}. "
            "SQLite needs write access for the database and its journal files."
        ) from exc
    logger.debug("Verified SQLite directory is writable: %s", db_path.parent)


def _validate_url(kind: StorageBackendKind, url: str, env_var: str) -> None:
    scheme = urlsplit(url).scheme.lower()
    if scheme not in _URL_SCHEMES[kind]:
        raise ConfigurationError(
            f"{env_var} has unsupported scheme '{scheme or '<none>'}' for the {kind.value} "
            f"backend; expected one of {', '.join(sorted(_URL_SCHEMES[kind]))}"
        )


# Hey future me - the selector NEVER falls back. "postgres is down, let's use sqlite" would
# silently split the user's data across two stores. Wrong or missing config is a hard
# ConfigurationError at startup, and the process is expected to exit.
class BackendSelector:
    """Build the one storage backend named by ``settings.storage.backend``.

    Example:
        backend = BackendSelector(get_settings()).select()
        async with backend:
            await backend.tracks.upsert(track)
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._selected: IStorageBackend | None = None

    def resolve_kind(self) -> StorageBackendKind:
        """Backend kind from settings, or ConfigurationError."""
        name = self.settings.storage.backend
        if not name:
            raise ConfigurationError(
                "No storage backend configured. Set STORAGE_BACKEND to one of: "
                + ", ".join(kind.value for kind in StorageBackendKind)
            )
        try:
            return StorageBackendKind(name)
        except ValueError:
            raise ConfigurationError(
                f"Unknown storage backend '{name}'. Expected one of: "
                + ", ".join(kind.value for kind in StorageBackendKind)
            ) from None

    def select(self) -> IStorageBackend:
        """Build (once) and return the configured backend. Does not connect."""
        if self._selected is not None:
            return self._selected

        kind = self.resolve_kind()
        self._require_driver(kind)
        builders: dict[StorageBackendKind, Callable[[], IStorageBackend]] = {
            StorageBackendKind.SQLITE: self._build_sqlite,
            StorageBackendKind.POSTGRES: self._build_postgres,
            StorageBackendKind.MONGO: self._build_mongo,
            StorageBackendKind.REDIS: self._build_redis,
        }
        self._selected = builders[kind]()
        logger.info(
            "Selected %s storage backend",
            kind.value,
            extra={"capabilities": sorted(cap.value for cap in self._selected.capabilities)},
        )
        return self._selected

    @staticmethod
    def _require_driver(kind: StorageBackendKind) -> None:
        module, extra = _DRIVERS[kind]
        if importlib.util.find_spec(module) is None:
            raise ConfigurationError(
                f"The {kind.value} backend needs the '{module}' package. "
                f"Install it with: pip install 'spotify-assistant-storage[{extra}]'"
            )

    def _build_sqlite(self) -> IStorageBackend:
        from spotify_assistant.infrastructure.persistence.database import Database
        from spotify_assistant.infrastructure.persistence.repositories import SqlStorageBackend

        db_path = self.settings.sqlite_path()
        validate_sqlite_path(db_path)
        database = Database.for_sqlite(str(db_path), self.settings.sqlite)
        logger.debug("SQLite database path: %s", db_path)
        return SqlStorageBackend(database, self.settings.storage, StorageBackendKind.SQLITE)

    def _build_postgres(self) -> IStorageBackend:
        from spotify_assistant.infrastructure.persistence.database import Database
        from spotify_assistant.infrastructure.persistence.repositories import SqlStorageBackend

        pg = self.settings.postgres
        if pg.url is None or not pg.url.get_secret_value().strip():
            raise ConfigurationError("POSTGRES_URL is required for the postgres backend")
        _validate_url(StorageBackendKind.POSTGRES, pg.url.get_secret_value(), "POSTGRES_URL")
        database = Database.for_postgres(pg)
        logger.debug("Postgres URL: %s", database.safe_url)
        return SqlStorageBackend(database, self.settings.storage, StorageBackendKind.POSTGRES)

    def _build_mongo(self) -> IStorageBackend:
        from spotify_assistant.infrastructure.persistence.mongo import MongoStorageBackend

        mongo = self.settings.mongo
        connection_string = mongo.connection_string()
        if connection_string is None:
            if mongo.username or mongo.password:
                raise ConfigurationError(
                    "MONGODB_USERNAME, MONGODB_PASSWORD and MONGODB_CLUSTER_HOST are all "
                    "required when MONGODB_URL is not set"
                )
            raise ConfigurationError(
                "The mongo backend needs MONGODB_URL or MONGODB_USERNAME/MONGODB_PASSWORD"
            )
        _validate_url(StorageBackendKind.MONGO, connection_string, "MONGODB_URL")
        logger.debug("Mongo URL: %s", redact_url(connection_string))
        return MongoStorageBackend(
            self.settings.storage,
            connection_string=connection_string,
            database_name=mongo.database,
            app_name=mongo.app_name,
            server_selection_timeout_ms=mongo.server_selection_timeout_ms,
        )

    def _build_redis(self) -> IStorageBackend:
        from spotify_assistant.infrastructure.persistence.redis_cache import RedisStorageBackend

        rds = self.settings.redis
        if rds.url is None or not rds.url.get_secret_value().strip():
            raise ConfigurationError("REDIS_URL is required for the redis backend")
        _validate_url(StorageBackendKind.REDIS, rds.url.get_secret_value(), "REDIS_URL")
        return RedisStorageBackend(
            self.settings.storage,
            url=rds.url.get_secret_value(),
            key_prefix=rds.key_prefix,
            ttl_seconds=rds.ttl_seconds,
        )
