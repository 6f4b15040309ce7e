"""Provider contracts for pluggable storage backends.

Records are plain dicts carrying "$id" and "$type" alongside field values.
Only the core methods below are required; optional features (semantic
search, events, actions, artifacts, batching, transactions) are discovered
structurally by ai_database.providers.capabilities.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

type Record = dict[str, Any]

# Link metadata key naming the relation as seen from the target entity.
# Providers use it to answer related() for backward fields.
INVERSE_KEY = "inverse"


@runtime_checkable
class DBProvider(Protocol):
    """Core storage contract every provider implements."""

    async def get(self, entity_type: str, entity_id: str) -> Record | None:
        """Fetch one record, or None when it does not exist."""
        ...

    async def list(
        self,
        entity_type: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Record]:
        """List records of a type, optionally filtered by field equality."""
        ...

    async def search(self, entity_type: str, query: str, limit: int = 10) -> list[Record]:
        """Keyword search over string fields."""
        ...

    async def create(
        self, entity_type: str, entity_id: str | None, data: dict[str, Any]
    ) -> Record:
        """Create a record; a new id is assigned when entity_id is None."""
        ...

    async def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> Record:
        """Merge data into an existing record."""
        ...

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        """Delete a record and its links. Returns False when nothing was deleted."""
        ...

    async def related(self, entity_type: str, entity_id: str, relation: str) -> list[Record]:
        """Records linked to this one under the given relation name."""
        ...

    async def relate(
        self,
        from_type: str,
        from_id: str,
        relation: str,
        to_type: str,
        to_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a directed link."""
        ...

    async def unrelate(
        self, from_type: str, from_id: str, relation: str, to_type: str, to_id: str
    ) -> None:
        """Remove a directed link."""
        ...


@runtime_checkable
class Transaction(Protocol):
    """Buffered unit of work over a provider.

    Reads see buffered writes first; nothing is visible to the provider until
    commit.
    """

    async def get(self, entity_type: str, entity_id: str) -> Record | None: ...

    async def create(
        self, entity_type: str, entity_id: str | None, data: dict[str, Any]
    ) -> Record: ...

    async def update(
        self, entity_type: str, entity_id: str, data: dict[str, Any]
    ) -> Record: ...

    async def delete(self, entity_type: str, entity_id: str) -> bool: ...

    async def relate(
        self,
        from_type: str,
        from_id: str,
        relation: str,
        to_type: str,
        to_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...
