"""Runtime entity instances with lazy, resolve-once relation fields.

    post = await runtime.get("Post", "p1")
    post.title             # scalar value
    author = await post.author   # resolved on first await, cached afterwards
    post.invalidate("author")    # next await resolves again
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from ai_database.providers.base import Record
from ai_database.schema.graph import ParsedEntity
from ai_database.schema.parser import ParsedField
from ai_database.services.relationship_resolver import ResolutionContext

if TYPE_CHECKING:  # pragma: no cover
    from ai_database.runtime import Runtime

_UNRESOLVED = object()


class LazyRelation:
    """Awaitable handle for one relation field of one entity instance.

    The first await resolves through the relationship resolver; later awaits
    return the cached value. A failed resolution is not cached.
    """

    def __init__(self, entity: Entity, field: ParsedField):
        self._entity = entity
        self.field = field
        self._value: Any = _UNRESOLVED
        self._lock = asyncio.Lock()

    @property
    def is_resolved(self) -> bool:
        return self._value is not _UNRESOLVED

    def invalidate(self) -> None:
        self._value = _UNRESOLVED

    async def resolve(self, *, allow_generation: bool = False) -> Entity | list[Entity] | None:
        async with self._lock:
            if self._value is not _UNRESOLVED:
                return self._value

            entity = self._entity
            context = ResolutionContext(
                entity_type=entity.type,
                record=entity._record,
                allow_generation=allow_generation,
            )
            resolved = await entity._runtime.resolver.resolve(self.field, context)
            self._value = entity._runtime.wrap(resolved)
            return self._value

    def __await__(self):
        return self.resolve().__await__()

    def __repr__(self) -> str:
        state = "resolved" if self.is_resolved else "pending"
        return f"<LazyRelation {self._entity.type}.{self.field.name} ({state})>"


class Entity:
    """A stored record bound to its schema definition and runtime."""

    def __init__(self, runtime: Runtime, definition: ParsedEntity, record: Record):
        self._runtime = runtime
        self._definition = definition
        self._record = record
        self._relations: dict[str, LazyRelation] = {}

    @property
    def id(self) -> str:
        return self._record["$id"]

    @property
    def type(self) -> str:
        return self._record["$type"]

    @property
    def definition(self) -> ParsedEntity:
        return self._definition

    @property
    def data(self) -> Record:
        return dict(self._record)

    def to_dict(self) -> Record:
        return dict(self._record)

    def relation(self, name: str) -> LazyRelation:
        field = self._definition.fields.get(name)
        if field is None or not field.is_relation:
            raise AttributeError(f"{self._definition.name} has no relation field {name!r}")
        if name not in self._relations:
            self._relations[name] = LazyRelation(self, field)
        return self._relations[name]

    def invalidate(self, name: str | None = None) -> None:
        """Forget cached relation values so the next access resolves again."""
        targets = [name] if name is not None else list(self._relations)
        for target in targets:
            if target in self._relations:
                self._relations[target].invalidate()

    def __getitem__(self, key: str) -> Any:
        return self._record[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self._record.get(key, default)

    def __getattr__(self, name: str) -> Any:
        # Only called when normal attribute lookup fails
        if name.startswith("_"):
            raise AttributeError(name)
        field = self._definition.fields.get(name)
        if field is not None and field.is_relation:
            return self.relation(name)
        if name in self._record:
            return self._record[name]
        if field is not None:
            return None
        raise AttributeError(f"{self._definition.name} has no field {name!r}")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return NotImplemented
        return (self.type, self.id) == (other.type, other.id)

    def __hash__(self) -> int:
        return hash((self.type, self.id))

    def __repr__(self) -> str:
        return f"<Entity {self.type} {self.id}>"
