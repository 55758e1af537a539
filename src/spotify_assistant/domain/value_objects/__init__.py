"""Domain value objects."""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from spotify_assistant.domain.exceptions import ValidationException
from spotify_assistant.domain.value_objects.fingerprint import TrackFingerprint

# Values a field can be compared against; anything else (dicts, lists, objects) is
# never a valid exact match and must not reach a driver as a query operator.
_SCALAR_TYPES = (str, int, float, bool)


def new_entity_id() -> str:
    """Generate a fresh opaque entity id."""
    return uuid.uuid4().hex


# Hey future me, QueryFilter is deliberately dumb: an AND of exact matches on scalar fields,
# optionally narrowed to a set of ids. Every backend can express that (SQL WHERE, Mongo
# filter document) except the key-value cache, which can only do the id part. Don't add
# ranges/LIKE here without a capability flag for it!
@dataclass(frozen=True)
class QueryFilter:
    """Exact-match filter over an entity's filterable fields."""

    criteria: Mapping[str, Any] = field(default_factory=dict)
    ids: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        """Freeze criteria and normalize ids; reject non-scalar values."""
        for name, value in self.criteria.items():
            if value is not None and not isinstance(value, _SCALAR_TYPES):
                raise ValidationException(
                    f"Filter value for {name} must be a scalar, got {type(value).__name__}"
                )
        object.__setattr__(self, "criteria", MappingProxyType(dict(self.criteria)))
        if self.ids is not None:
            if isinstance(self.ids, str) or not all(isinstance(i, str) for i in self.ids):
                raise ValidationException("Filter ids must be a sequence of strings")
            object.__setattr__(self, "ids", tuple(dict.fromkeys(self.ids)))

    @classmethod
    def where(cls, **criteria: Any) -> "QueryFilter":
        """Build a filter from keyword criteria: QueryFilter.where(title="Song A")."""
        return cls(criteria=criteria)

    @classmethod
    def by_ids(cls, *ids: str) -> "QueryFilter":
        """Build an id-only filter."""
        return cls(ids=tuple(ids))

    @property
    def is_id_only(self) -> bool:
        """True if the filter can be answered by key lookups alone."""
        return self.ids is not None and not self.criteria

    @property
    def is_empty(self) -> bool:
        """True if the filter matches everything."""
        return self.ids is None and not self.criteria

    def validate_fields(self, entity_name: str, allowed: frozenset[str]) -> None:
        """Reject criteria on fields the entity does not expose for filtering."""
        unknown = sorted(set(self.criteria) - allowed)
        if unknown:
            raise ValidationException(
                f"Cannot filter {entity_name} on {', '.join(unknown)}; "
                f"allowed fields: {', '.join(sorted(allowed))}"
            )

    def validate_values(
        self, entity_name: str, field_types: Mapping[str, tuple[type, ...]]
    ) -> None:
        """Reject criteria whose value type can never match the field.

        Args:
            entity_name: Entity name for the error message
            field_types: Accepted value types per filterable field (NoneType for optionals)
        """
        for name, value in self.criteria.items():
            accepted = field_types[name]
            if value is None:
                matches = type(None) in accepted
            elif isinstance(value, bool):
                # bool is an int subclass; only bool fields take True/False
                matches = bool in accepted
            else:
                matches = isinstance(value, accepted)
            if not matches:
                expected = " or ".join(t.__name__ for t in accepted)
                raise ValidationException(
                    f"Cannot filter {entity_name}.{name} by {value!r}; expected {expected}"
                )


@dataclass(frozen=True)
class Pagination:
    """Offset/limit window over a query's id-ordered results."""

    limit: int | None = None
    offset: int = 0

    def __post_init__(self) -> None:
        """Validate pagination bounds."""
        if self.offset < 0:
            raise ValidationException("Pagination offset cannot be negative")
        if self.limit is not None and self.limit < 0:
            raise ValidationException("Pagination limit cannot be negative")


__all__ = [
    "Pagination",
    "QueryFilter",
    "TrackFingerprint",
    "new_entity_id",
]
