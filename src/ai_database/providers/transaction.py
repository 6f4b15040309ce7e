"""Buffered transactions over any provider.

A TransactionBuffer collects writes in memory and applies them to the
underlying provider only on commit. Reads inside the transaction see the
buffered state first. If any write fails during commit, the writes already
applied are undone so no partial state stays visible.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from functools import partial
from typing import Any, Awaitable, Callable

from loguru import logger

from ai_database.errors import DuplicateEntityError, EntityNotFoundError, TransactionError
from ai_database.providers.base import DBProvider, Record


class TransactionState(Enum):
    OPEN = auto()
    COMMITTED = auto()
    ROLLED_BACK = auto()
    FAILED = auto()


@dataclass
class _Operation:
    kind: str  # create | update | delete | relate | unrelate
    entity_type: str
    entity_id: str
    data: dict[str, Any] = field(default_factory=dict)
    relation: tuple[str, str, str] | None = None  # (relation, to_type, to_id)
    metadata: dict[str, Any] | None = None


type _Undo = Callable[[], Awaitable[Any]]


def _strip_identity(record: Record) -> dict[str, Any]:
    return {k: v for k, v in record.items() if k not in ("$id", "$type")}


def _link_endpoints(link: dict[str, Any]) -> tuple[str, str, str, str, str]:
    return (link["from_type"], link["from_id"], link["relation"], link["to_type"], link["to_id"])


class TransactionBuffer:
    """Transaction implementation that buffers writes against a provider."""

    def __init__(self, provider: DBProvider):
        self._provider = provider
        self._operations: list[_Operation] = []
        # (type, id) -> buffered record, or None for a buffered delete
        self._overlay: dict[tuple[str, str], Record | None] = {}
        self.state = TransactionState.OPEN

    @property
    def is_open(self) -> bool:
        return self.state is TransactionState.OPEN

    @property
    def pending_operations(self) -> int:
        return len(self._operations)

    def _ensure_open(self) -> None:
        if self.state is not TransactionState.OPEN:
            raise TransactionError(f"Transaction is already {self.state.name.lower()}")

    # --- Reads ---

    async def get(self, entity_type: str, entity_id: str) -> Record | None:
        self._ensure_open()
        key = (entity_type, entity_id)
        if key in self._overlay:
            record = self._overlay[key]
            return dict(record) if record is not None else None
        return await self._provider.get(entity_type, entity_id)

    # --- Buffered writes ---

    async def create(
        self, entity_type: str, entity_id: str | None, data: dict[str, Any]
    ) -> Record:
        self._ensure_open()
        entity_id = entity_id or str(uuid.uuid4())
        key = (entity_type, entity_id)
        if self._overlay.get(key) is not None:
            raise DuplicateEntityError(entity_type, entity_id)

        payload = _strip_identity(data)
        record = {**payload, "$id": entity_id, "$type": entity_type}
        self._overlay[key] = record
        self._operations.append(_Operation("create", entity_type, entity_id, data=payload))
        return dict(record)

    async def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> Record:
        current = await self.get(entity_type, entity_id)
        if current is None:
            raise EntityNotFoundError(entity_type, entity_id)

        payload = _strip_identity(data)
        record = {**current, **payload}
        self._overlay[(entity_type, entity_id)] = record
        self._operations.append(_Operation("update", entity_type, entity_id, data=payload))
        return dict(record)

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        current = await self.get(entity_type, entity_id)
        if current is None:
            return False
        self._overlay[(entity_type, entity_id)] = None
        self._operations.append(_Operation("delete", entity_type, entity_id))
        return True

    async def relate(
        self,
        from_type: str,
        from_id: str,
        relation: str,
        to_type: str,
        to_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._ensure_open()
        self._operations.append(
            _Operation(
                "relate",
                from_type,
                from_id,
                relation=(relation, to_type, to_id),
                metadata=dict(metadata) if metadata else None,
            )
        )

    async def unrelate(
        self, from_type: str, from_id: str, relation: str, to_type: str, to_id: str
    ) -> None:
        self._ensure_open()
        self._operations.append(
            _Operation("unrelate", from_type, from_id, relation=(relation, to_type, to_id))
        )

    # --- Commit / rollback ---

    async def _links_of(self, entity_type: str, entity_id: str) -> list[dict[str, Any]] | None:
        """Snapshot every link touching an entity, or None when the provider can't list links."""
        list_links = getattr(self._provider, "links", None)
        if list_links is None:
            return None
        return await list_links(entity_type, entity_id, incoming=True)

    async def _restore_record(
        self,
        entity_type: str,
        entity_id: str,
        before: Record,
        links: list[dict[str, Any]],
    ) -> None:
        """Put a record and its links back exactly as they were."""
        provider = self._provider
        await provider.delete(entity_type, entity_id)
        await provider.create(entity_type, entity_id, _strip_identity(before))
        for link in links:
            await provider.relate(*_link_endpoints(link), link["metadata"] or None)

    async def _restore_link(self, link: dict[str, Any]) -> None:
        """Put a link back with exactly its previous metadata."""
        await self._provider.unrelate(*_link_endpoints(link))
        await self._provider.relate(*_link_endpoints(link), link["metadata"] or None)

    async def _find_link(
        self, from_type: str, from_id: str, relation: str, to_type: str, to_id: str
    ) -> dict[str, Any] | None:
        endpoints = (from_type, from_id, relation, to_type, to_id)
        for link in await self._links_of(from_type, from_id) or []:
            if _link_endpoints(link) == endpoints:
                return link
        return None

    async def _apply(self, op: _Operation) -> _Undo | None:
        """Apply one buffered operation and return how to undo it."""
        provider = self._provider

        if op.kind == "create":
            await provider.create(op.entity_type, op.entity_id, op.data)
            return partial(provider.delete, op.entity_type, op.entity_id)

        if op.kind == "update":
            before = await provider.get(op.entity_type, op.entity_id)
            if before is None:
                raise EntityNotFoundError(op.entity_type, op.entity_id)
            added = [key for key in op.data if key not in before]
            links = await self._links_of(op.entity_type, op.entity_id) if added else None
            await provider.update(op.entity_type, op.entity_id, op.data)
            if links is not None:
                # update() only merges, so dropping the added keys means rewriting the record
                return partial(self._restore_record, op.entity_type, op.entity_id, before, links)
            restore = {key: before.get(key) for key in op.data}
            return partial(provider.update, op.entity_type, op.entity_id, restore)

        if op.kind == "delete":
            before = await provider.get(op.entity_type, op.entity_id)
            if before is None:
                return None
            links = await self._links_of(op.entity_type, op.entity_id) or []
            await provider.delete(op.entity_type, op.entity_id)
            return partial(self._restore_record, op.entity_type, op.entity_id, before, links)

        if op.relation is None:
            raise TransactionError(f"{op.kind} of {op.entity_type}/{op.entity_id} names no link")
        relation, to_type, to_id = op.relation
        endpoints = (op.entity_type, op.entity_id, relation, to_type, to_id)
        existing = await self._find_link(*endpoints)

        if op.kind == "relate":
            await provider.relate(*endpoints, op.metadata)
            if existing is not None:
                return partial(self._restore_link, existing)
            return partial(provider.unrelate, *endpoints)

        await provider.unrelate(*endpoints)
        if existing is not None:
            return partial(provider.relate, *endpoints, existing["metadata"] or None)
        if hasattr(provider, "links"):
            # The link was never there
            return None
        return partial(provider.relate, *endpoints)

    async def commit(self) -> None:
        """Apply buffered operations in order.

        Raises:
            TransactionError: If an operation fails. Operations applied before
                the failure are undone first.
        """
        self._ensure_open()
        undo_stack: list[_Undo] = []
        for index, op in enumerate(self._operations):
            try:
                undo = await self._apply(op)
            except Exception as exc:
                logger.warning(
                    f"Transaction commit failed at operation {index} "
                    f"({op.kind} {op.entity_type}/{op.entity_id}): {exc}"
                )
                await self._undo(undo_stack)
                self.state = TransactionState.FAILED
                self._clear()
                raise TransactionError(
                    f"Commit failed on {op.kind} {op.entity_type}/{op.entity_id}", exc
                ) from exc
            if undo is not None:
                undo_stack.append(undo)

        logger.debug(f"Transaction committed {len(self._operations)} operations")
        self.state = TransactionState.COMMITTED
        self._clear()

    async def _undo(self, undo_stack: list[_Undo]) -> None:
        for undo in reversed(undo_stack):
            try:
                await undo()
            except Exception as exc:
                # Keep undoing the rest; the commit error is raised by the caller
                logger.error(f"Failed to undo transaction operation: {exc}")

    async def rollback(self) -> None:
        """Discard all buffered operations."""
        self._ensure_open()
        logger.debug(f"Transaction rolled back, discarding {len(self._operations)} operations")
        self.state = TransactionState.ROLLED_BACK
        self._clear()

    def _clear(self) -> None:
        self._operations.clear()
        self._overlay.clear()

    async def __aenter__(self) -> "TransactionBuffer":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.is_open:
            return
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()
