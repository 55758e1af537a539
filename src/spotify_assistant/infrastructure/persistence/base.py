"""Shared repository behaviour for every storage adapter.

Adapters only implement the storage primitives (_fetch, _write, _remove,
_fetch_page). Id assignment, version resolution, filter validation, lazy
batched iteration, timeouts and driver error mapping live here so every
backend behaves the same way.
"""

import asyncio
import copy
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from functools import cache
from typing import Any, get_args, get_type_hints

from spotify_assistant.domain.entities import Entity, utc_now
from spotify_assistant.domain.exceptions import (
    BackendUnavailableError,
    ConflictError,
    DomainException,
    EntityNotFoundException,
    ValidationException,
)
from spotify_assistant.domain.ports import IRepository
from spotify_assistant.domain.ports.storage import StorageCapability
from spotify_assistant.domain.value_objects import Pagination, QueryFilter, new_entity_id

logger = logging.getLogger(__name__)


@cache
def filter_value_types(entity_type: type[Entity]) -> dict[str, tuple[type, ...]]:
    """Accepted query value types per filterable field, read from the dataclass hints."""
    hints = get_type_hints(entity_type)
    return {
        name: get_args(hints[name]) or (hints[name],)
        for name in entity_type.FILTERABLE_FIELDS
    }


# Hey future me - EVERY driver call goes through this guard. It does two things:
# 1. asyncio.timeout so a hung socket can't hang the caller forever
# 2. maps driver connection errors to BackendUnavailableError so callers never
#    import sqlalchemy/pymongo/redis exception types.
# Domain errors (Conflict, NotFound, ...) pass through untouched. CancelledError is a
# BaseException and is never caught here.
@asynccontextmanager
async def unavailable_guard(
    backend_name: str,
    operation: str,
    timeout: float,
    unavailable_errors: tuple[type[BaseException], ...],
) -> AsyncIterator[None]:
    """Apply a timeout and map driver failures to BackendUnavailableError."""
    try:
        async with asyncio.timeout(timeout):
            yield
    except DomainException:
        raise
    except TimeoutError as e:
        logger.error(
            "%s timed out after %.1fs", operation, timeout, extra={"backend": backend_name}
        )
        raise BackendUnavailableError(
            backend_name, f"{operation} timed out after {timeout}s"
        ) from e
    except unavailable_errors as e:
        logger.error(
            "%s failed: backend unavailable",
            operation,
            extra={"backend": backend_name, "error_type": type(e).__name__},
        )
        raise BackendUnavailableError(backend_name, f"{operation} failed: {e}") from e


class BaseRepository[T: Entity](IRepository[T]):
    """Template for adapter repositories.

    Subclasses set ``unavailable_errors`` to the driver exceptions that mean
    "the backend is not reachable" and implement the storage primitives.
    """

    unavailable_errors: tuple[type[BaseException], ...] = (OSError,)

    def __init__(
        self,
        entity_type: type[T],
        *,
        backend_name: str,
        capabilities: frozenset[StorageCapability],
        operation_timeout: float = 10.0,
        batch_size: int = 100,
        optimistic_concurrency: bool = True,
    ) -> None:
        self.entity_type = entity_type
        self.entity_name: str = entity_type.ENTITY_NAME
        self.backend_name = backend_name
        self._capabilities = capabilities
        self._timeout = operation_timeout
        self._batch_size = batch_size
        self._optimistic = optimistic_concurrency

    @property
    def capabilities(self) -> frozenset[StorageCapability]:
        return self._capabilities

    @asynccontextmanager
    async def guard(self, operation: str, entity_id: str | None = None) -> AsyncIterator[None]:
        """Apply the operation timeout and map driver failures."""
        label = f"{self.entity_name} {operation}"
        if entity_id:
            label = f"{label} {entity_id}"
        async with unavailable_guard(
            self.backend_name, label, self._timeout, self.unavailable_errors
        ):
            yield

    # =========================================================================
    # Public contract
    # =========================================================================

    async def get(self, entity_id: str) -> T:
        """Get an entity by id."""
        self._require_id(entity_id)
        async with self.guard("get", entity_id):
            entity = await self._fetch(entity_id)
        if entity is None:
            raise EntityNotFoundException(self.entity_name, entity_id)
        return entity

    async def upsert(self, entity: T) -> T:
        """Insert or replace an entity, returning the stored copy."""
        if not isinstance(entity, self.entity_type):
            raise ValidationException(
                f"Expected {self.entity_name}, got {type(entity).__name__}"
            )
        entity_id = entity.id or new_entity_id()
        expected = entity.version if self._optimistic and entity.version > 0 else None
        async with self.guard("upsert", entity_id):
            stored = await self._write(entity, entity_id, expected)
        logger.debug(
            "Stored %s %s at version %d",
            self.entity_name,
            entity_id,
            stored.version,
            extra={"backend": self.backend_name},
        )
        return stored

    async def delete(self, entity_id: str) -> None:
        """Delete an entity by id."""
        self._require_id(entity_id)
        async with self.guard("delete", entity_id):
            removed = await self._remove(entity_id)
        if not removed:
            raise EntityNotFoundException(self.entity_name, entity_id)

    def query(
        self,
        query_filter: QueryFilter | None = None,
        pagination: Pagination | None = None,
    ) -> AsyncIterator[T]:
        """Validate the filter now; fetch matching entities lazily, ordered by id."""
        query_filter = query_filter or QueryFilter()
        pagination = pagination or Pagination()
        query_filter.validate_fields(self.entity_name, self.entity_type.FILTERABLE_FIELDS)
        query_filter.validate_values(self.entity_name, filter_value_types(self.entity_type))
        self._check_query_supported(query_filter)
        return self._iterate(query_filter, pagination)

    # =========================================================================
    # Shared helpers for adapters
    # =========================================================================

    def _require_id(self, entity_id: str) -> None:
        if not isinstance(entity_id, str) or not entity_id:
            raise ValidationException(f"{self.entity_name} id must be a non-empty string")

    def _next_version(
        self, entity_id: str, expected: int | None, current: int | None
    ) -> int:
        """Check the stored version against the caller's and return the new one.

        Raises:
            ConflictError: expected is set and differs from the stored version
        """
        if expected is not None and current != expected:
            logger.warning(
                "Version conflict on %s %s (expected %s, found %s)",
                self.entity_name,
                entity_id,
                expected,
                current,
                extra={"backend": self.backend_name},
            )
            raise ConflictError(self.entity_name, entity_id, expected, current)
        return (current or 0) + 1

    def _conflict(self, entity_id: str, expected: int | None) -> ConflictError:
        """ConflictError for a write that lost a race after the version check."""
        logger.warning(
            "Concurrent write on %s %s",
            self.entity_name,
            entity_id,
            extra={"backend": self.backend_name},
        )
        return ConflictError(self.entity_name, entity_id, expected)

    def _stamped(
        self,
        entity: T,
        entity_id: str,
        version: int,
        created_at: datetime | None = None,
    ) -> T:
        """Independent copy of entity carrying its stored id/version/timestamps.

        Pass the stored created_at on replaces; it never changes after the first write.
        """
        changes: dict[str, Any] = {
            "id": entity_id,
            "version": version,
            "updated_at": utc_now(),
        }
        if created_at is not None:
            changes["created_at"] = created_at
        return replace(copy.deepcopy(entity), **changes)

    def _check_query_supported(self, query_filter: QueryFilter) -> None:
        """Raise CapabilityUnsupportedError for filters the backend can't answer."""
        return None

    # Listen, pagination is KEYSET after the first page: page N+1 asks for ids greater than
    # the last id of page N. That keeps batches stable when rows are inserted mid-iteration
    # (offset paging would skip or repeat rows). Pagination.offset only applies to page 1.
    async def _iterate(
        self, query_filter: QueryFilter, pagination: Pagination
    ) -> AsyncIterator[T]:
        remaining = pagination.limit
        skip = pagination.offset
        after_id: str | None = None

        while remaining is None or remaining > 0:
            size = self._batch_size if remaining is None else min(self._batch_size, remaining)
            async with self.guard("query"):
                batch = await self._fetch_page(query_filter, after_id, skip, size)
            for entity in batch:
                yield entity
            if len(batch) < size:
                return
            after_id = batch[-1].id
            skip = 0
            if remaining is not None:
                remaining -= len(batch)

    # =========================================================================
    # Storage primitives
    # =========================================================================

    @abstractmethod
    async def _fetch(self, entity_id: str) -> T | None:
        """Load one entity or None."""

    @abstractmethod
    async def _write(self, entity: T, entity_id: str, expected: int | None) -> T:
        """Persist entity under entity_id.

        Must compare the stored version with ``expected`` via _next_version and
        make the final write conditional on the version it read.
        """

    @abstractmethod
    async def _remove(self, entity_id: str) -> bool:
        """Delete one entity; False if it did not exist."""

    @abstractmethod
    async def _fetch_page(
        self,
        query_filter: QueryFilter,
        after_id: str | None,
        skip: int,
        limit: int,
    ) -> list[T]:
        """Up to ``limit`` matching entities with id > after_id, ordered by id."""

