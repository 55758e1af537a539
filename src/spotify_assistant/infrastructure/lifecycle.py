"""Storage lifecycle: select, connect, hand out, close."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from spotify_assistant.config import Settings, get_settings
from spotify_assistant.domain.ports import IStorageBackend
from spotify_assistant.infrastructure.observability.health import (
    HealthStatus,
    check_storage_health,
)
from spotify_assistant.infrastructure.observability.logger_template import log_operation
from spotify_assistant.infrastructure.observability.logging import configure_logging
from spotify_assistant.infrastructure.persistence.selector import BackendSelector

logger = logging.getLogger(__name__)


# Listen future me, everything before `yield` is STARTUP, everything after is SHUTDOWN. The
# try/finally means the backend is closed even when connect() or the body raises. Startup errors
# (ConfigurationError, BackendUnavailableError) propagate - a process without its store
# must not limp on. Logging is only configured when asked; library users keep their own.
@asynccontextmanager
async def storage_lifespan(
    settings: Settings | None = None,
    *,
    setup_logging: bool = False,
) -> AsyncGenerator[IStorageBackend, None]:
    """Connect the configured storage backend for the duration of the block.

    Args:
        settings: Settings to use (defaults to get_settings())
        setup_logging: Also run configure_logging() from settings.logging

    Yields:
        The connected backend
    """
    settings = settings or get_settings()
    if setup_logging:
        configure_logging(
            log_level=settings.logging.level,
            json_format=settings.logging.json_format,
            app_name=settings.app_name,
        )

    backend = BackendSelector(settings).select()
    try:
        async with log_operation(logger, "storage.connect", backend=backend.kind.value):
            await backend.connect()
        health = await check_storage_health(backend)
        log = logger.info if health.status is HealthStatus.HEALTHY else logger.warning
        log(
            "Storage ready: %s (%s)",
            backend.kind.value,
            health.status.value,
            extra={"details": health.details},
        )
        yield backend
    finally:
        await backend.close()
        logger.info("Storage shut down: %s", backend.kind.value)
