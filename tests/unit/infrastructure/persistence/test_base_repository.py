"""Tests for the shared repository template.

Hey future me - these use a dict-backed repository so the template logic (versions,
timeouts, error mapping, lazy paging) is tested without any driver.
"""

import asyncio

import pytest

from spotify_assistant.domain.entities import Artist
from spotify_assistant.domain.exceptions import (
    BackendUnavailableError,
    ConflictError,
    EntityNotFoundException,
    ValidationException,
)
from spotify_assistant.domain.ports import StorageCapability
from spotify_assistant.domain.value_objects import Pagination, QueryFilter
from spotify_assistant.infrastructure.persistence.base import BaseRepository


class DictArtistRepository(BaseRepository[Artist]):
    """In-memory repository that records page requests."""

    def __init__(self, **options) -> None:
        options.setdefault("backend_name", "memory")
        options.setdefault("capabilities", frozenset({StorageCapability.RANGE_QUERY}))
        super().__init__(Artist, **options)
        self.rows: dict[str, Artist] = {}
        self.pages: list[tuple[str | None, int, int]] = []
        self.delay = 0.0
        self.fail_with: BaseException | None = None

    async def _maybe_fail(self) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    async def _fetch(self, entity_id):
        await self._maybe_fail()
        return self.rows.get(entity_id)

    async def _write(self, entity, entity_id, expected):
        await self._maybe_fail()
        current = self.rows.get(entity_id)
        version = self._next_version(entity_id, expected, current.version if current else None)
        stored = self._stamped(entity, entity_id, version)
        self.rows[entity_id] = stored
        return stored

    async def _remove(self, entity_id):
        await self._maybe_fail()
        return self.rows.pop(entity_id, None) is not None

    async def _fetch_page(self, query_filter, after_id, skip, limit):
        self.pages.append((after_id, skip, limit))
        ids = sorted(self.rows)
        if query_filter.ids is not None:
            ids = [i for i in ids if i in query_filter.ids]
        if after_id is not None:
            ids = [i for i in ids if i > after_id]
        matching = [
            self.rows[i]
            for i in ids
            if all(getattr(self.rows[i], k) == v for k, v in query_filter.criteria.items())
        ]
        return matching[skip : skip + limit]


class TestVersioning:
    """Test version resolution shared by all adapters."""

    async def test_first_write_is_version_one(self):
        """Test insert versioning."""
        repo = DictArtistRepository()
        stored = await repo.upsert(Artist(id="a", name="A"))
        assert stored.version == 1

    async def test_matching_version_increments(self):
        """Test a conditional write with the current version."""
        repo = DictArtistRepository()
        stored = await repo.upsert(Artist(id="a", name="A"))
        again = await repo.upsert(stored)
        assert again.version == 2

    async def test_stale_version_conflicts(self):
        """Test that a stale version raises ConflictError with both versions."""
        repo = DictArtistRepository()
        stored = await repo.upsert(Artist(id="a", name="A"))
        await repo.upsert(stored)

        with pytest.raises(ConflictError) as exc_info:
            await repo.upsert(stored)
        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2

    async def test_concurrency_disabled_is_last_write_wins(self):
        """Test that disabling optimistic concurrency makes writes unconditional."""
        repo = DictArtistRepository(optimistic_concurrency=False)
        stored = await repo.upsert(Artist(id="a", name="A"))
        await repo.upsert(stored)

        latest = await repo.upsert(stored)
        assert latest.version == 3

    async def test_stamped_copy_is_independent(self):
        """Test that the stored copy shares no state with the argument."""
        repo = DictArtistRepository()
        artist = Artist(id="a", name="A", genres=["house"])
        stored = await repo.upsert(artist)

        stored.genres.append("techno")
        assert artist.genres == ["house"]
        assert artist.version == 0


class TestErrorMapping:
    """Test timeouts and driver errors."""

    async def test_timeout_maps_to_unavailable(self):
        """Test that a hung call becomes BackendUnavailableError."""
        repo = DictArtistRepository(operation_timeout=0.01)
        repo.delay = 1.0

        with pytest.raises(BackendUnavailableError, match="timed out") as exc_info:
            await repo.get("a")
        assert exc_info.value.backend == "memory"
        assert exc_info.value.retryable is True

    async def test_driver_error_maps_to_unavailable(self):
        """Test that unavailable_errors are translated."""
        repo = DictArtistRepository()
        repo.fail_with = ConnectionRefusedError("connection refused")

        with pytest.raises(BackendUnavailableError) as exc_info:
            await repo.upsert(Artist(id="a", name="A"))
        assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)

    async def test_other_errors_propagate(self):
        """Test that programming errors are not disguised as outages."""
        repo = DictArtistRepository()
        repo.fail_with = KeyError("bug")

        with pytest.raises(KeyError):
            await repo.get("a")

    async def test_not_found(self):
        """Test get/delete on unknown ids."""
        repo = DictArtistRepository()
        with pytest.raises(EntityNotFoundException):
            await repo.get("missing")
        with pytest.raises(EntityNotFoundException):
            await repo.delete("missing")


class TestLazyQuery:
    """Test batched keyset iteration."""

    async def _seed(self, repo: DictArtistRepository, count: int) -> None:
        for index in range(count):
            await repo.upsert(
                Artist(id=f"a{index}", name=f"Artist {index}", followed=index % 2 == 0)
            )

    async def test_nothing_fetched_until_iterated(self):
        """Test that query() itself does not hit the store."""
        repo = DictArtistRepository(batch_size=2)
        await self._seed(repo, 5)

        iterator = repo.query()
        assert repo.pages == []

        first = await anext(iterator)
        assert first.id == "a0"
        assert repo.pages == [(None, 0, 2)]

    async def test_pages_use_keyset_after_first(self):
        """Test that later pages continue after the last id instead of offsetting."""
        repo = DictArtistRepository(batch_size=2)
        await self._seed(repo, 5)

        found = [a.id async for a in repo.query(pagination=Pagination(offset=1))]

        assert found == ["a1", "a2", "a3", "a4"]
        assert repo.pages == [(None, 1, 2), ("a2", 0, 2), ("a4", 0, 2)]

    async def test_limit_shrinks_last_batch(self):
        """Test that no more than limit entities are requested."""
        repo = DictArtistRepository(batch_size=2)
        await self._seed(repo, 5)

        found = [a.id async for a in repo.query(pagination=Pagination(limit=3))]

        assert found == ["a0", "a1", "a2"]
        assert repo.pages == [(None, 0, 2), ("a1", 0, 1)]

    async def test_criteria_filter(self):
        """Test exact-match criteria."""
        repo = DictArtistRepository(batch_size=10)
        await self._seed(repo, 5)

        found = [a.id async for a in repo.query(QueryFilter.where(followed=True))]
        assert found == ["a0", "a2", "a4"]

    async def test_invalid_field_raises_eagerly(self):
        """Test that query() validates before returning the iterator."""
        repo = DictArtistRepository()
        with pytest.raises(ValidationException):
            repo.query(QueryFilter.where(genres="house"))

    async def test_mistyped_value_raises_before_fetch(self):
        """Test that a value of the wrong type never reaches the store."""
        repo = DictArtistRepository()
        with pytest.raises(ValidationException, match="Artist.followed"):
            repo.query(QueryFilter.where(followed="yes"))
        assert repo.pages == []

    async def test_none_matches_optional_field(self):
        """Test that None is a valid value for optional fields only."""
        repo = DictArtistRepository()
        await repo.upsert(Artist(id="a0", name="Artist 0"))

        assert [a.id async for a in repo.query(QueryFilter.where(name="Artist 0"))] == ["a0"]
        with pytest.raises(ValidationException):
            repo.query(QueryFilter.where(name=None))
