"""Application settings loaded from environment variables and a .env file.

Hey future me - every section is its own BaseSettings with its own env prefix, so the
variable names match what people already have in their .env from the old tooling
(RSPOTIFY_CLIENT_ID, MONGODB_USERNAME, ...). Secrets are SecretStr: they print as
'**********' and never leak into logs or reprs. Use redact_url() before logging any
connection string.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any
from urllib.parse import quote_plus, urlsplit, urlunsplit

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from spotify_assistant.domain.ports.storage import StorageBackendKind

DEFAULT_DATA_DIR = Path.home() / ".spotify_assistant"

# Old feature-flag names and common spellings -> canonical backend kind
BACKEND_ALIASES: dict[str, StorageBackendKind] = {
    "rds": StorageBackendKind.REDIS,
    "postgresql": StorageBackendKind.POSTGRES,
    "pg": StorageBackendKind.POSTGRES,
    "mongodb": StorageBackendKind.MONGO,
    "sqlite3": StorageBackendKind.SQLITE,
}


def redact_url(url: str) -> str:
    """Mask the password component of a connection URL for logging."""
    parts = urlsplit(url)
    if parts.password is None:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{parts.username}:***@{host}" if parts.username else f"***@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


class _EnvSettings(BaseSettings):
    """Shared settings behaviour: read env vars and .env, ignore unrelated keys."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )


class StorageSettings(_EnvSettings):
    """Backend selection and behaviour shared by all adapters."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    # None means "not configured" - the selector refuses to guess a default backend.
    # Kept as a plain string so an unknown name surfaces as ConfigurationError from the
    # selector instead of a ValidationError while loading settings.
    backend: str | None = None
    operation_timeout: float = Field(default=10.0, gt=0)
    query_batch_size: int = Field(default=100, ge=1, le=10_000)
    optimistic_concurrency: bool = True

    @field_validator("backend", mode="before")
    @classmethod
    def _resolve_alias(cls, value: Any) -> Any:
        if isinstance(value, StorageBackendKind):
            return value.value
        if isinstance(value, str):
            key = value.strip().lower()
            if not key:
                return None
            alias = BACKEND_ALIASES.get(key)
            return alias.value if alias else key
        return value


class SqliteSettings(_EnvSettings):
    """Embedded relational backend."""

    model_config = SettingsConfigDict(env_prefix="SQLITE_")

    # None -> <data_dir>/databases/main.db
    path: Path | None = None
    echo: bool = False
    busy_timeout: float = Field(default=30.0, gt=0)


class PostgresSettings(_EnvSettings):
    """Networked relational backend."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    url: SecretStr | None = None
    echo: bool = False
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    pool_timeout: float = Field(default=30.0, gt=0)
    pool_recycle: int = Field(default=1800, ge=-1)
    pool_pre_ping: bool = True


class MongoSettings(_EnvSettings):
    """Document store backend.

    Either MONGODB_URL, or MONGODB_USERNAME + MONGODB_PASSWORD for an Atlas
    cluster addressed by MONGODB_CLUSTER / MONGODB_CLUSTER_HOST.
    """

    model_config = SettingsConfigDict(env_prefix="MONGODB_")

    url: SecretStr | None = None
    username: str | None = None
    password: SecretStr | None = None
    cluster: str = "generalcluster"
    cluster_host: str | None = None
    app_name: str = "GeneralCluster"
    database: str = "spotify"
    server_selection_timeout_ms: int = Field(default=5000, ge=1)

    def connection_string(self) -> str | None:
        """Full connection string, or None when not enough is configured."""
        if self.url is not None:
            return self.url.get_secret_value()
        if not (self.username and self.password and self.cluster_host):
            return None
        user = quote_plus(self.username)
        password = quote_plus(self.password.get_secret_value())
        return (
            f"mongodb+srv://{user}:{password}@{self.cluster}.{self.cluster_host}/"
            f"?retryWrites=true&w=majority&appName={self.app_name}"
        )


class RedisSettings(_EnvSettings):
    """Key-value cache backend."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    url: SecretStr | None = None
    key_prefix: str = "spotify-assistant"
    # None or 0 -> entries never expire
    ttl_seconds: int | None = Field(default=3600, ge=0)


class SpotifySettings(_EnvSettings):
    """Upstream provider credentials.

    Held for the API client component; the storage core never uses or logs them.
    """

    model_config = SettingsConfigDict(env_prefix="RSPOTIFY_")

    client_id: str | None = None
    client_secret: SecretStr | None = None
    redirect_uri: str = "http://127.0.0.1:8281/callback"


class LoggingSettings(_EnvSettings):
    """Logging output."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = "INFO"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class Settings(_EnvSettings):
    """Top-level settings container."""

    model_config = SettingsConfigDict(env_prefix="SPOTIFY_ASSISTANT_")

    app_name: str = "spotify-assistant"
    data_dir: Path = DEFAULT_DATA_DIR

    storage: StorageSettings = Field(default_factory=StorageSettings)
    sqlite: SqliteSettings = Field(default_factory=SqliteSettings)
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    spotify: SpotifySettings = Field(default_factory=SpotifySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    def sqlite_path(self) -> Path:
        """Resolved SQLite database file path."""
        if self.sqlite.path is not None:
            return self.sqlite.path.expanduser()
        return self.data_dir.expanduser() / "databases" / "main.db"


# Hey future me - cached so the whole process sees ONE Settings object. Tests that tweak env
# vars must call get_settings.cache_clear() (or just build Settings() directly).
@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
