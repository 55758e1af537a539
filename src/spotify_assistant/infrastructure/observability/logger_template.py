"""Shared logger helpers.

USAGE:
    from spotify_assistant.infrastructure.observability.logger_template import log_operation

    async with log_operation(logger, "library.import_tracks", count=len(tracks)):
        ...
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from spotify_assistant.domain.exceptions import DomainException
from spotify_assistant.infrastructure.observability.logging import (
    get_correlation_id,
    set_correlation_id,
)


# Yo, wraps an operation with started/completed/failed records plus duration_ms. If no
# correlation id is active yet, one is minted here so nested repository logs share it.
# Failures are logged WITHOUT traceback for expected domain errors (conflict, not found)
# and re-raised either way.
@asynccontextmanager
async def log_operation(
    logger: logging.Logger,
    operation: str,
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Log operation start/end with automatic timing.

    Args:
        logger: Module logger
        operation: Operation name (e.g., "playlist.reorder")
        **context: Extra fields for every record

    Yields:
        Mutable dict; keys added inside the block land on the completion record
    """
    if not get_correlation_id():
        set_correlation_id()

    start = time.monotonic()
    result: dict[str, Any] = {}
    logger.debug(f"{operation}.started", extra=context)
    try:
        yield result
    except Exception as e:
        logger.warning(
            f"{operation}.failed",
            extra={
                **context,
                "duration_ms": int((time.monotonic() - start) * 1000),
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=not isinstance(e, DomainException),
        )
        raise
    logger.info(
        f"{operation}.completed",
        extra={
            **context,
            **result,
            "duration_ms": int((time.monotonic() - start) * 1000),
        },
    )
