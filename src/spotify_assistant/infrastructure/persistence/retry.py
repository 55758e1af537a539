# Hey future me - two kinds of retry live here, don't mix them up:
#
# 1. retry_on_lock: INSIDE the SQL adapter. SQLite allows one writer at a time ("database is
#    locked"), Postgres aborts one side of a deadlock or a serialization failure on its own.
#    Both clear up by themselves, so the adapter replays the whole unit of work with
#    exponential backoff.
#
# 2. execute_with_retry: OUTSIDE the adapters, for callers. A BackendUnavailableError with
#    retryable=True (network blip, timeout) may succeed on a second try. Adapters never retry
#    those on their own - the caller decides whether an operation is safe to replay.
#
# USAGE:
#   @retry_on_lock()
#   async def _write(self, ...) -> Track:
#       ...
#
#   stored = await execute_with_retry(lambda: repo.upsert(track))
"""Retry utilities for storage operations."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import asdict, dataclass, fields
from functools import wraps
from typing import Any, ParamSpec, TypeVar

from sqlalchemy.exc import DBAPIError

from spotify_assistant.domain.exceptions import BackendUnavailableError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

# serialization_failure, deadlock_detected
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})
_SQLITE_LOCK_MARKERS = ("database is locked", "database is busy", "database table is locked")


@dataclass
class LockMetrics:
    """Lock wait counters, reported in the SQL backend's health details."""

    retries: int = 0
    failures: int = 0
    total_wait_ms: float = 0.0
    max_wait_ms: float = 0.0
    last_event_at: float | None = None

    def record_retry(self, wait_ms: float) -> None:
        self.retries += 1
        self.total_wait_ms += wait_ms
        self.max_wait_ms = max(self.max_wait_ms, wait_ms)
        self.last_event_at = time.time()

    def record_failure(self) -> None:
        self.failures += 1
        self.last_event_at = time.time()

    def snapshot(self) -> dict[str, Any]:
        stats = asdict(self)
        stats["total_wait_ms"] = round(self.total_wait_ms, 2)
        stats["max_wait_ms"] = round(self.max_wait_ms, 2)
        return stats

    def reset(self) -> None:
        """Zero every counter (for testing)."""
        for counter in fields(self):
            setattr(self, counter.name, counter.default)


# Process-wide; every SQL repository shares it
lock_metrics = LockMetrics()


def is_transient_lock_error(exception: BaseException) -> bool:
    """True for SQLite lock/busy errors and Postgres deadlock or serialization aborts."""
    if not isinstance(exception, DBAPIError):
        return False
    original = exception.orig
    sqlstate = getattr(original, "sqlstate", None) or getattr(original, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    message = str(original if original is not None else exception).lower()
    return any(marker in message for marker in _SQLITE_LOCK_MARKERS)


def _backoff(initial: float, maximum: float, factor: float) -> Iterator[float]:
    delay = initial
    while True:
        yield delay
        delay = min(delay * factor, maximum)


def retry_on_lock(
    max_attempts: int = 3,
    initial_delay: float = 0.1,
    max_delay: float = 2.0,
    backoff_factor: float = 2.0,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Replay an async unit of work while the database reports a transient lock.

    The decorated function must open its own transaction on every call so a
    replay starts clean. Every other error propagates on the first attempt.

    Args:
        max_attempts: Attempts including the first
        initial_delay: First backoff sleep in seconds
        max_delay: Backoff cap in seconds
        backoff_factor: Delay multiplier per retry
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            delays = _backoff(initial_delay, max_delay, backoff_factor)
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except DBAPIError as e:
                    if not is_transient_lock_error(e):
                        raise
                    if attempt >= max_attempts:
                        lock_metrics.record_failure()
                        logger.error(
                            "%s still locked after %d attempts, giving up",
                            func.__qualname__,
                            attempt,
                        )
                        raise
                    delay = next(delays)
                    logger.warning(
                        "%s hit a database lock (attempt %d/%d), retrying in %.2fs",
                        func.__qualname__,
                        attempt,
                        max_attempts,
                        delay,
                    )
                    lock_metrics.record_retry(delay * 1000)
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator


async def execute_with_retry(
    operation: Callable[[], Awaitable[R]],
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 5.0,
) -> R:
    """Run a storage call, retrying retryable BackendUnavailableErrors.

    Args:
        operation: Zero-argument async callable, invoked again on every attempt
        max_attempts: Attempts including the first
        initial_delay: First backoff sleep in seconds (doubles per retry)
        max_delay: Backoff cap in seconds

    Example:
        stored = await execute_with_retry(lambda: backend.tracks.upsert(track))
    """
    delays = _backoff(initial_delay, max_delay, 2.0)
    attempt = 1
    while True:
        try:
            return await operation()
        except BackendUnavailableError as e:
            if not e.retryable or attempt >= max_attempts:
                raise
            delay = next(delays)
            logger.warning(
                "Storage unavailable (attempt %d/%d), retrying in %.1fs: %s",
                attempt,
                max_attempts,
                delay,
                e.message,
            )
            await asyncio.sleep(delay)
            attempt += 1
