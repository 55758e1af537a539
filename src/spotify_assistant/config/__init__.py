"""Configuration module for spotify-assistant."""

from .settings import (
    LoggingSettings,
    MongoSettings,
    PostgresSettings,
    RedisSettings,
    Settings,
    SpotifySettings,
    SqliteSettings,
    StorageSettings,
    get_settings,
    redact_url,
)

__all__ = [
    "LoggingSettings",
    "MongoSettings",
    "PostgresSettings",
    "RedisSettings",
    "Settings",
    "SpotifySettings",
    "SqliteSettings",
    "StorageSettings",
    "get_settings",
    "redact_url",
]
