"""Entity <-> document/JSON conversion for the document and cache adapters.

Uses pydantic TypeAdapters over the domain dataclasses, so decoding runs the
entities' own __post_init__ validation and parses ISO timestamps back into
timezone-aware datetimes.
"""

from collections.abc import Mapping
from functools import cache
from typing import Any

from pydantic import TypeAdapter

from spotify_assistant.domain.entities import Entity


@cache
def _adapter(entity_type: type) -> TypeAdapter[Any]:
    return TypeAdapter(entity_type)


def to_document(entity: Entity) -> dict[str, Any]:
    """Entity as a plain dict with native datetimes, keyed by ``_id``."""
    document = _adapter(type(entity)).dump_python(entity, mode="python")
    document["_id"] = document.pop("id")
    return document


def from_document[T: Entity](entity_type: type[T], document: Mapping[str, Any]) -> T:
    """Entity from a stored document (``_id`` or ``id`` key)."""
    data = dict(document)
    if "_id" in data:
        data["id"] = data.pop("_id")
    return _adapter(entity_type).validate_python(data)


def to_json(entity: Entity) -> str:
    """Entity as a JSON string."""
    return _adapter(type(entity)).dump_json(entity).decode("utf-8")


def from_json[T: Entity](entity_type: type[T], raw: str | bytes) -> T:
    """Entity from a JSON string produced by to_json."""
    return _adapter(entity_type).validate_json(raw)
