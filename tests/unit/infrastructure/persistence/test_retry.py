"""Tests for storage retry helpers."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from spotify_assistant.domain.exceptions import BackendUnavailableError
from spotify_assistant.infrastructure.persistence.retry import (
    execute_with_retry,
    is_transient_lock_error,
    lock_metrics,
    retry_on_lock,
)


class _PgDriverError(Exception):
    """Mimics an asyncpg error carrying a SQLSTATE."""

    def __init__(self, message: str, sqlstate: str) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def _operational(message: str) -> OperationalError:
    return OperationalError("UPDATE tracks ...", {}, Exception(message))


def _postgres(message: str, sqlstate: str) -> DBAPIError:
    return DBAPIError("UPDATE tracks ...", {}, _PgDriverError(message, sqlstate))


@pytest.fixture(autouse=True)
def _reset_metrics():
    lock_metrics.reset()
    yield
    lock_metrics.reset()


@pytest.fixture(autouse=True)
def _no_sleep():
    with patch(
        "spotify_assistant.infrastructure.persistence.retry.asyncio.sleep", new=AsyncMock()
    ) as sleep:
        yield sleep


class TestIsTransientLockError:
    """Test transient lock detection."""

    def test_sqlite_locked_and_busy(self):
        """Test that both SQLite lock messages are recognized."""
        assert is_transient_lock_error(_operational("database is locked"))
        assert is_transient_lock_error(_operational("database is busy"))

    def test_postgres_deadlock_and_serialization(self):
        """Test the Postgres SQLSTATEs for aborted transactions."""
        assert is_transient_lock_error(_postgres("deadlock detected", "40P01"))
        assert is_transient_lock_error(_postgres("could not serialize access", "40001"))

    def test_other_errors(self):
        """Test that unrelated errors are not retried."""
        assert not is_transient_lock_error(_operational("no such table: tracks"))
        assert not is_transient_lock_error(_postgres("duplicate key", "23505"))
        assert not is_transient_lock_error(ValueError("database is locked"))


class TestRetryOnLock:
    """Test the lock retry decorator."""

    async def test_succeeds_after_lock(self, _no_sleep):
        """Test that a transient lock is retried with backoff."""
        calls = AsyncMock(side_effect=[_operational("database is locked"), "ok"])

        @retry_on_lock(max_attempts=3, initial_delay=0.1)
        async def unit_of_work():
            return await calls()

        assert await unit_of_work() == "ok"
        assert calls.await_count == 2
        _no_sleep.assert_awaited_once_with(0.1)
        stats = lock_metrics.snapshot()
        assert stats["retries"] == 1
        assert stats["max_wait_ms"] == 100.0

    async def test_postgres_deadlock_is_replayed(self):
        """Test that a deadlock victim is run again."""
        calls = AsyncMock(side_effect=[_postgres("deadlock detected", "40P01"), "ok"])

        @retry_on_lock()
        async def unit_of_work():
            return await calls()

        assert await unit_of_work() == "ok"
        assert calls.await_count == 2

    async def test_gives_up_after_max_attempts(self):
        """Test that a persistent lock is raised and counted."""
        calls = AsyncMock(side_effect=_operational("database is locked"))

        @retry_on_lock(max_attempts=2)
        async def unit_of_work():
            return await calls()

        with pytest.raises(OperationalError):
            await unit_of_work()
        assert calls.await_count == 2
        assert lock_metrics.snapshot()["failures"] == 1

    async def test_non_lock_error_not_retried(self):
        """Test that other driver errors fail immediately."""
        calls = AsyncMock(side_effect=IntegrityError("INSERT ...", {}, Exception("UNIQUE")))

        @retry_on_lock(max_attempts=3)
        async def unit_of_work():
            return await calls()

        with pytest.raises(IntegrityError):
            await unit_of_work()
        assert calls.await_count == 1
        assert lock_metrics.snapshot()["retries"] == 0

    async def test_backoff_is_capped(self, _no_sleep):
        """Test exponential backoff with a maximum delay."""
        calls = AsyncMock(side_effect=[_operational("database is locked")] * 3 + ["ok"])

        @retry_on_lock(max_attempts=4, initial_delay=1.0, max_delay=1.5, backoff_factor=2.0)
        async def unit_of_work():
            return await calls()

        await unit_of_work()
        delays = [call.args[0] for call in _no_sleep.await_args_list]
        assert delays == [1.0, 1.5, 1.5]


class TestExecuteWithRetry:
    """Test caller-side retry of unavailable backends."""

    async def test_retries_retryable(self):
        """Test that a retryable outage is retried."""
        operation = AsyncMock(side_effect=[BackendUnavailableError("redis", "down"), 42])
        assert await execute_with_retry(operation) == 42
        assert operation.await_count == 2

    async def test_non_retryable_raised_immediately(self):
        """Test that retryable=False errors are not retried."""
        operation = AsyncMock(
            side_effect=BackendUnavailableError("postgres", "auth failed", retryable=False)
        )
        with pytest.raises(BackendUnavailableError):
            await execute_with_retry(operation)
        assert operation.await_count == 1

    async def test_exhausted(self, _no_sleep):
        """Test that the last error escapes after max_attempts."""
        operation = AsyncMock(side_effect=BackendUnavailableError("mongo", "down"))
        with pytest.raises(BackendUnavailableError, match=r"\[mongo\] down"):
            await execute_with_retry(operation, max_attempts=3, initial_delay=0.5)
        assert operation.await_count == 3
        assert [call.args[0] for call in _no_sleep.await_args_list] == [0.5, 1.0]
