"""Cascade generation: create an entity and, depth-first by level, the entities it points to.

Only forward relations (-> and ~>) cascade; backward relations are queries
and never generate. Each child branch is best-effort: a failing branch is
reported through on_error and its siblings carry on. Sibling branches run
concurrently up to a fan-out limit, and every branch entity is written in its
own transaction when the provider supports transactions.

Progress callbacks see planning once, then per entity:
  generating(depth) -> created(depth)
followed by a single complete (or error) once the whole cascade settles.
"""

import asyncio
import inspect
import time
from collections.abc import Collection
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, AsyncIterator, Awaitable, Callable

import logfire
from loguru import logger

from ai_database.config import AIDatabaseConfig
from ai_database.errors import AIDatabaseError, CascadeCancelledError
from ai_database.generation.context import Ancestor
from ai_database.providers.base import DBProvider, Record
from ai_database.providers.capabilities import detect_capabilities
from ai_database.schema.graph import ParsedEntity, ParsedGraph
from ai_database.schema.parser import ParsedField
from ai_database.services.generation_service import GenerationService
from ai_database.services.relationship_resolver import RelationshipResolver, stored_ids


class CascadePhase(StrEnum):
    PLANNING = "planning"
    GENERATING = "generating"
    CREATED = "created"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class CascadeProgress:
    phase: CascadePhase
    depth: int
    current_type: str | None
    total_entities_created: int
    types_generated: tuple[str, ...] = ()


@dataclass(frozen=True)
class BranchContext:
    """Where in the cascade an error happened."""

    entity_type: str
    depth: int
    field: str | None = None
    parent_type: str | None = None
    parent_id: str | None = None


type ProgressCallback = Callable[[CascadeProgress], Awaitable[None] | None]
type ErrorCallback = Callable[[BaseException, BranchContext], Awaitable[None] | None]


@dataclass
class CascadeOptions:
    """Options for create_with_cascade.

    max_depth defaults to the configured cascade depth when cascade is on and is
    always capped by the configured hard limit. timeout is in seconds.
    """

    cascade: bool = False
    max_depth: int | None = None
    cascade_types: Collection[str] | None = None
    on_progress: ProgressCallback | None = None
    on_error: ErrorCallback | None = None
    stop_on_error: bool = False
    concurrency: int | None = None
    array_count: int = 1
    cancel_event: asyncio.Event | None = None
    timeout: float | None = None
    use_transactions: bool = True


@dataclass
class _Branch:
    field: ParsedField
    hint: str | None


@dataclass
class _CascadeRun:
    """Mutable state for one create_with_cascade invocation."""

    options: CascadeOptions
    max_depth: int
    semaphore: asyncio.Semaphore
    deadline: float | None = None
    total_created: int = 0
    types_generated: list[str] = field(default_factory=list)
    first_error: BaseException | None = None
    stopped: bool = False
    cancel_reported: bool = False
    # (parent id, field name) -> ids already used by fuzzy matches on that field
    claimed: dict[tuple[str, str], set[str]] = field(default_factory=dict)

    def cancel_reason(self) -> str | None:
        if self.options.cancel_event is not None and self.options.cancel_event.is_set():
            return "cancelled"
        if self.deadline is not None and time.monotonic() >= self.deadline:
            return "timed out"
        return None

    async def _call(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            # Callback failures are logged, never raised into the cascade
            logger.exception(f"Cascade callback {callback!r} failed: {exc}")

    async def emit(self, phase: CascadePhase, depth: int, current_type: str | None) -> None:
        progress = CascadeProgress(
            phase=phase,
            depth=depth,
            current_type=current_type,
            total_entities_created=self.total_created,
            types_generated=tuple(self.types_generated),
        )
        await self._call(self.options.on_progress, progress)

    def record_created(self, entity_type: str) -> None:
        self.total_created += 1
        if entity_type not in self.types_generated:
            self.types_generated.append(entity_type)

    async def report_error(self, error: BaseException, context: BranchContext) -> None:
        logger.warning(
            f"Cascade branch failed: {context.parent_type}.{context.field} -> "
            f"{context.entity_type} at depth {context.depth}: {error}"
        )
        if self.first_error is None:
            self.first_error = error
        if self.options.stop_on_error:
            self.stopped = True
        await self._call(self.options.on_error, error, context)
        await self.emit(CascadePhase.ERROR, context.depth, context.entity_type)

    async def report_cancellation(self, error: CascadeCancelledError, context: BranchContext) -> None:
        if self.cancel_reported:
            return
        self.cancel_reported = True
        logger.info(f"Cascade {error.reason} at depth {context.depth}; no new branches start")
        await self._call(self.options.on_error, error, context)

    async def guard[T](self, awaitable: Awaitable[T], depth: int, entity_type: str) -> T:
        """Await work, abandoning it when the cascade is cancelled or times out."""
        reason = self.cancel_reason()
        if reason:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise CascadeCancelledError(depth, entity_type, reason)

        task = asyncio.ensure_future(awaitable)
        waiters: set[asyncio.Future] = {task}
        cancel_waiter = None
        if self.options.cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(self.options.cancel_event.wait())
            waiters.add(cancel_waiter)
        timeout = None if self.deadline is None else max(0.0, self.deadline - time.monotonic())

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            # The caller itself was cancelled; do not leave the work running
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        # Let the abandoned work unwind (transactions roll back) before reporting
        await asyncio.gather(task, return_exceptions=True)
        raise CascadeCancelledError(depth, entity_type, self.cancel_reason() or "cancelled")


class CascadeService:
    """Creates entities and cascades generation along forward relations."""

    def __init__(
        self,
        graph: ParsedGraph,
        provider: DBProvider,
        generation: GenerationService,
        resolver: RelationshipResolver,
        config: AIDatabaseConfig | None = None,
    ):
        self.graph = graph
        self.provider = provider
        self.generation = generation
        self.resolver = resolver
        self.config = config or AIDatabaseConfig()

    def effective_max_depth(self, options: CascadeOptions) -> int:
        if not options.cascade:
            return 0
        requested = (
            options.max_depth if options.max_depth is not None else self.config.default_cascade_depth
        )
        return max(0, min(requested, self.config.max_cascade_depth))

    async def create_with_cascade(
        self,
        entity_type: str,
        data: dict[str, Any] | None = None,
        options: CascadeOptions | None = None,
        *,
        entity_id: str | None = None,
    ) -> Record:
        """Create an entity and, when options.cascade is set, the entities it points to.

        Args:
            entity_type: Entity type of the root.
            data: Provided field values; missing scalar fields are generated.
            options: Cascade options.
            entity_id: Id for the root; generated when omitted.

        Returns:
            The stored root record, including ids of cascaded children.

        Raises:
            GenerationError: If the root cannot be generated.
            CascadeCancelledError: If cancelled before the root is persisted.
            Exception: The first branch error, when options.stop_on_error is set.
        """
        options = options or CascadeOptions()
        self.graph.require_entity(entity_type)
        concurrency = options.concurrency or self.config.cascade_concurrency
        run = _CascadeRun(
            options=options,
            max_depth=self.effective_max_depth(options),
            semaphore=asyncio.Semaphore(concurrency),
            deadline=time.monotonic() + options.timeout if options.timeout is not None else None,
        )

        with logfire.span(
            "Cascade create",
            entity_type=entity_type,
            max_depth=run.max_depth,
            concurrency=concurrency,
        ):  # pyright: ignore [reportGeneralTypeIssues]
            await run.emit(CascadePhase.PLANNING, 0, entity_type)
            await run.emit(CascadePhase.GENERATING, 0, entity_type)
            try:
                root = await run.guard(
                    self._create_root(run, entity_type, dict(data or {}), entity_id), 0, entity_type
                )
            except Exception:
                await run.emit(CascadePhase.ERROR, 0, entity_type)
                raise
            run.record_created(entity_type)
            await run.emit(CascadePhase.CREATED, 0, entity_type)

            if run.max_depth > 0:
                await self._cascade_children(run, root, entity_type, 0, [])

            if run.first_error is not None and options.stop_on_error:
                raise run.first_error

            await run.emit(CascadePhase.COMPLETE, 0, entity_type)
            logger.info(
                f"Cascade for {entity_type} {root['$id']} created {run.total_created} entities "
                f"across {run.types_generated}"
            )

        return await self.provider.get(entity_type, root["$id"]) or root

    # --- Persistence ---

    @asynccontextmanager
    async def _unit_of_work(self, run: _CascadeRun) -> AsyncIterator[Any]:
        """Yield a transaction when the provider has them, else the provider itself."""
        capabilities = detect_capabilities(self.provider)
        if not (run.options.use_transactions and capabilities.has_transactions):
            yield self.provider
            return

        # Commits on a clean exit, rolls back when the branch raises or is cancelled
        async with self.provider.begin_transaction() as transaction:  # type: ignore[attr-defined]
            yield transaction

    async def _link_provided(self, writer: Any, entity: ParsedEntity, record: Record) -> None:
        """Link forward relation ids supplied by the caller."""
        for f in entity.forward_relations():
            for target_id in stored_ids(record.get(f.name)):
                target = await self._find_target(f, target_id)
                if target is None:
                    logger.warning(
                        f"{entity.name}.{f.name}: provided id {target_id} does not exist; "
                        "stored without a link"
                    )
                    continue
                await self.resolver.link(
                    writer, entity.name, record["$id"], f, target["$type"], target_id
                )

    async def _find_target(self, field_: ParsedField, target_id: str) -> Record | None:
        for target_type in field_.target_types:
            record = await self.provider.get(target_type, target_id)
            if record is not None:
                return record
        return None

    async def _create_root(
        self, run: _CascadeRun, entity_type: str, data: dict[str, Any], entity_id: str | None
    ) -> Record:
        entity = self.graph.require_entity(entity_type)
        values = await self.generation.generate_values(entity_type, data)
        entity_id = entity_id or values.pop("$id", None)
        values.pop("$type", None)
        async with self._unit_of_work(run) as writer:
            record = await writer.create(entity_type, entity_id, values)
            await self._link_provided(writer, entity, record)
        return record

    async def _create_child(
        self,
        run: _CascadeRun,
        parent: Record,
        parent_type: str,
        branch: _Branch,
        lineage: list[Ancestor],
    ) -> Record:
        target_type = branch.field.related_type or ""
        values = await self.generation.generate_values(
            target_type, ancestors=lineage, prompt=branch.field.prompt, hint=branch.hint
        )
        values.update(
            {
                "$generated": True,
                "$generatedBy": parent["$id"],
                "$sourceField": branch.field.name,
            }
        )
        async with self._unit_of_work(run) as writer:
            record = await writer.create(target_type, values.pop("$id", None), values)
            await self.resolver.link(
                writer, parent_type, parent["$id"], branch.field, target_type, record["$id"]
            )
        return record

    # --- Planning ---

    def _plan_branches(self, run: _CascadeRun, entity: ParsedEntity, record: Record) -> list[_Branch]:
        branches: list[_Branch] = []
        cascade_types = run.options.cascade_types
        for f in entity.forward_relations():
            target = f.related_type or ""
            if stored_ids(record.get(f.name)):
                continue
            if cascade_types is not None and target not in cascade_types:
                continue
            if not self.graph.has_entity(target):
                continue

            raw = record.get(f"{f.name}Hint")
            explicit = [raw] if isinstance(raw, str) else list(raw or [])
            explicit = [str(h) for h in explicit if str(h).strip()]
            if f.is_optional and not explicit:
                continue

            if f.is_fuzzy:
                hints: list[str | None] = list(self.resolver.hints_for(f, record)) or [f.name]
            else:
                hints = list(explicit) or [None]

            if f.is_array:
                if not explicit:
                    hints = hints[:1] * max(run.options.array_count, 0)
            else:
                hints = hints[:1]
            branches.extend(_Branch(f, hint) for hint in hints)
        return branches

    # --- Cascading ---

    async def _cascade_children(
        self,
        run: _CascadeRun,
        record: Record,
        entity_type: str,
        depth: int,
        ancestors: list[Ancestor],
    ) -> None:
        """Create children of record at depth + 1, then cascade below each new child."""
        entity = self.graph.require_entity(entity_type)
        branches = self._plan_branches(run, entity, record)
        if not branches:
            return

        lineage = [*ancestors, (entity_type, record)]
        results = await asyncio.gather(
            *(self._run_branch(run, record, entity_type, b, depth + 1, lineage) for b in branches)
        )

        await self._store_child_ids(run, entity, record, branches, results, depth)

        if depth + 1 >= run.max_depth:
            return
        await asyncio.gather(
            *(
                self._cascade_children(run, child, b.field.related_type or "", depth + 1, lineage)
                for b, (child, created) in zip(branches, results)
                if child is not None and created
            )
        )

    async def _store_child_ids(
        self,
        run: _CascadeRun,
        entity: ParsedEntity,
        record: Record,
        branches: list[_Branch],
        results: list[tuple[Record | None, bool]],
        depth: int,
    ) -> None:
        ids_by_field: dict[str, list[str]] = {}
        for branch, (child, _) in zip(branches, results):
            if child is not None:
                ids_by_field.setdefault(branch.field.name, []).append(child["$id"])
        if not ids_by_field:
            return

        update = {
            name: ids if entity.fields[name].is_array else ids[0]
            for name, ids in ids_by_field.items()
        }
        try:
            await self.provider.update(entity.name, record["$id"], update)
        except AIDatabaseError as exc:
            await run.report_error(exc, BranchContext(entity.name, depth, parent_id=record["$id"]))
            return
        record.update(update)

    async def _run_branch(
        self,
        run: _CascadeRun,
        parent: Record,
        parent_type: str,
        branch: _Branch,
        depth: int,
        lineage: list[Ancestor],
    ) -> tuple[Record | None, bool]:
        """Resolve one child slot. Returns (child record, whether it was newly created)."""
        target_type = branch.field.related_type or ""
        context = BranchContext(
            entity_type=target_type,
            depth=depth,
            field=branch.field.name,
            parent_type=parent_type,
            parent_id=parent["$id"],
        )
        if run.stopped:
            return None, False
        reason = run.cancel_reason()
        if reason:
            await run.report_cancellation(CascadeCancelledError(depth, target_type, reason), context)
            return None, False

        try:
            with logfire.span(
                "Cascade branch",
                entity_type=target_type,
                depth=depth,
                field=branch.field.name,
            ):  # pyright: ignore [reportGeneralTypeIssues]
                async with run.semaphore:
                    if branch.field.is_fuzzy:
                        matched = await self._match_existing(run, parent, parent_type, branch, depth)
                        if matched is not None:
                            return matched, False
                    await run.emit(CascadePhase.GENERATING, depth, target_type)
                    child = await run.guard(
                        self._create_child(run, parent, parent_type, branch, lineage),
                        depth,
                        target_type,
                    )
                run.record_created(target_type)
                await run.emit(CascadePhase.CREATED, depth, target_type)
                return child, True
        except CascadeCancelledError as exc:
            await run.report_cancellation(exc, context)
        except Exception as exc:
            await run.report_error(exc, context)
        return None, False

    async def _match_existing(
        self,
        run: _CascadeRun,
        parent: Record,
        parent_type: str,
        branch: _Branch,
        depth: int,
    ) -> Record | None:
        """Reuse an existing entity for a fuzzy branch, claiming it for this field."""
        field_ = branch.field
        hint = branch.hint or field_.prompt or field_.name
        claimed = run.claimed.setdefault((parent["$id"], field_.name), set())
        threshold = self.resolver.threshold_for(parent_type, field_)
        matches = await run.guard(
            self.resolver.find_matches(field_, hint, threshold, set(claimed)),
            depth,
            field_.related_type or "",
        )
        # No await between picking and claiming, so concurrent siblings never share a match
        match = next((m for m in matches if m.entity_id not in claimed), None)
        if match is None:
            return None
        claimed.add(match.entity_id)

        async with self._unit_of_work(run) as writer:
            await self.resolver.link(
                writer,
                parent_type,
                parent["$id"],
                field_,
                match.entity_type,
                match.entity_id,
                {"match_mode": "fuzzy", "similarity": match.score},
            )
        logger.debug(
            f"{parent_type}.{field_.name}: reused {match.entity_type} {match.entity_id} "
            f"(score={match.score:.2f})"
        )
        return {**match.record, "$similarity": match.score, "$generated": False}
