"""Relationship resolution for the four operators.

  ->  forward exact   stored id(s) fetched with provider.get
  ~>  forward fuzzy   reuse a similar existing entity, else generate one
  <-  backward exact  provider.related() over links pointing at this entity
  <~  backward fuzzy  ground against existing (reference) entities; no
                      generation unless the caller allows it

Fuzzy matching uses semantic search when the provider has it and falls back
to text matching when it does not. "No match" is a normal outcome, never an
exception.
"""

from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from ai_database.errors import ResolutionError, SemanticSearchUnavailableError
from ai_database.generation.context import Ancestor, build_scope, interpolate
from ai_database.providers.base import INVERSE_KEY, DBProvider, Record
from ai_database.providers.capabilities import (
    Capability,
    detect_capabilities,
    warn_if_unavailable,
)
from ai_database.schema.graph import ParsedGraph
from ai_database.schema.parser import ParsedField, RelationshipOperator
from ai_database.services.generation_service import GenerationService
from ai_database.services.text_match import rank_text_matches
from ai_database.services.union_search import Match, SearchMode, search_union

type Resolved = Record | list[Record] | None


@dataclass
class ResolutionContext:
    """The entity whose relation is being resolved."""

    entity_type: str
    record: Record
    allow_generation: bool = False  # Only consulted for <~ fields
    ancestors: list[Ancestor] = field(default_factory=list)

    @property
    def entity_id(self) -> str:
        return self.record["$id"]


def stored_ids(value: Any) -> list[str]:
    """Normalize a stored relation value (id, list of ids, or records) to ids."""
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple)) else [value]
    ids = []
    for item in items:
        if isinstance(item, dict):
            item = item.get("$id")
        if isinstance(item, str) and item:
            ids.append(item)
    return ids


class RelationshipResolver:
    """Resolves relation fields of stored entities."""

    def __init__(
        self,
        graph: ParsedGraph,
        provider: DBProvider,
        generation: GenerationService | None = None,
        *,
        default_threshold: float = 0.5,
        search_limit: int = 10,
        union_mode: SearchMode = SearchMode.ORDERED,
    ):
        self.graph = graph
        self.provider = provider
        self.generation = generation
        self.default_threshold = default_threshold
        self.search_limit = search_limit
        self.union_mode = union_mode

    # --- Public API ---

    async def resolve(self, field_: ParsedField | str, context: ResolutionContext) -> Resolved:
        """Resolve one relation field of context.record.

        Returns a record, a list of records for array fields, or None.

        Raises:
            ResolutionError: Only for a required forward exact relation whose id is
                missing or whose target does not exist.
        """
        if isinstance(field_, str):
            field_ = self._field(context.entity_type, field_)
        if not field_.is_relation:
            raise ResolutionError(context.entity_type, field_.name, "field is not a relation")

        match field_.operator:
            case RelationshipOperator.FORWARD_EXACT:
                return await self._resolve_forward_exact(field_, context)
            case RelationshipOperator.FORWARD_FUZZY:
                return await self._resolve_forward_fuzzy(field_, context)
            case RelationshipOperator.BACKWARD_EXACT:
                return await self._resolve_backward_exact(field_, context)
            case _:
                return await self._resolve_backward_fuzzy(field_, context)

    def threshold_for(self, entity_type: str, field_: ParsedField) -> float:
        """Field threshold, else the entity's $fuzzyThreshold directive, else the default."""
        if field_.threshold is not None:
            return field_.threshold
        entity = self.graph.get_entity(entity_type)
        directive = entity.directives.get("$fuzzyThreshold") if entity else None
        if directive is not None:
            return float(directive)
        return self.default_threshold

    def hints_for(self, field_: ParsedField, record: Record) -> list[str]:
        """The {field}Hint value(s), else the field's prompt interpolated against record."""
        raw = record.get(f"{field_.name}Hint")
        if isinstance(raw, str) and raw.strip():
            return [raw.strip()]
        if isinstance(raw, (list, tuple)):
            hints = [str(h).strip() for h in raw if str(h).strip()]
            if hints:
                return hints
        if field_.prompt:
            return [interpolate(field_.prompt, build_scope(record))]
        return []

    async def find_matches(
        self,
        field_: ParsedField,
        hint: str,
        threshold: float,
        exclude_ids: set[str] | None = None,
    ) -> list[Match]:
        """Existing entities of the field's target type(s) scoring at least threshold."""
        exclude_ids = exclude_ids or set()

        async def _search_type(entity_type: str) -> list[Match]:
            matches = await self._semantic_matches(entity_type, hint, threshold, exclude_ids)
            if matches is not None:
                return matches
            records = await self.provider.list(entity_type)
            return [
                Match(record, entity_type, score, "text")
                for record, score in rank_text_matches(hint, records, threshold, exclude_ids)
            ]

        return await search_union(field_.target_types, _search_type, self.union_mode)

    async def find_match(
        self,
        field_: ParsedField,
        hint: str,
        threshold: float,
        exclude_ids: set[str] | None = None,
    ) -> Match | None:
        matches = await self.find_matches(field_, hint, threshold, exclude_ids)
        return matches[0] if matches else None

    async def link(
        self,
        writer: Any,
        source_type: str,
        source_id: str,
        field_: ParsedField,
        target_type: str,
        target_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a link from source to target, labelled with the inverse field name.

        writer is the provider or an open transaction.
        """
        meta = {"operator": field_.operator.value if field_.operator else None}
        meta.update(metadata or {})
        inverse = self.graph.inverse_field_name(source_type, field_.name)
        if inverse:
            meta[INVERSE_KEY] = inverse
        await writer.relate(source_type, source_id, field_.name, target_type, target_id, meta)

    # --- Operators ---

    async def _resolve_forward_exact(self, field_: ParsedField, ctx: ResolutionContext) -> Resolved:
        ids = stored_ids(ctx.record.get(field_.name))
        if not ids and field_.is_required:
            raise ResolutionError(ctx.entity_type, field_.name, "required relation has no id")

        records = []
        for entity_id in ids:
            record = await self._get_any(field_.target_types, entity_id)
            if record is None:
                if field_.is_required:
                    raise ResolutionError(
                        ctx.entity_type,
                        field_.name,
                        f"{'|'.join(field_.target_types)} {entity_id} does not exist",
                    )
                logger.debug(f"{ctx.entity_type}.{field_.name}: dangling id {entity_id}")
                continue
            records.append(record)
        return self._shape(field_, records)

    async def _resolve_forward_fuzzy(self, field_: ParsedField, ctx: ResolutionContext) -> Resolved:
        ids = stored_ids(ctx.record.get(field_.name))
        if ids:
            return self._shape(field_, await self._fetch(field_, ids))

        hints = self.hints_for(field_, ctx.record)
        if not field_.is_array:
            hints = hints[:1] or [field_.name]

        resolved = await self._match_or_generate(field_, ctx, hints, allow_generation=True)
        await self._remember(field_, ctx, resolved)
        return self._shape(field_, resolved)

    async def _resolve_backward_exact(self, field_: ParsedField, ctx: ResolutionContext) -> Resolved:
        records = await self.provider.related(ctx.entity_type, ctx.entity_id, field_.name)
        records = [r for r in records if r.get("$type") in field_.target_types]
        return self._shape(field_, records)

    async def _resolve_backward_fuzzy(
        self, field_: ParsedField, ctx: ResolutionContext
    ) -> Resolved:
        ids = stored_ids(ctx.record.get(field_.name))
        if ids:
            return self._shape(field_, await self._fetch(field_, ids))

        hints = self.hints_for(field_, ctx.record)
        if not hints:
            return self._shape(field_, [])

        threshold = self.threshold_for(ctx.entity_type, field_)
        if field_.is_array:
            # Every qualifying match for every hint, each entity once
            found: list[Record] = []
            seen: set[str] = set()
            for hint in hints:
                for match in await self.find_matches(field_, hint, threshold, seen):
                    seen.add(match.entity_id)
                    found.append(self._annotate(match))
            if not found and ctx.allow_generation:
                found = await self._match_or_generate(field_, ctx, hints, allow_generation=True)
        else:
            found = await self._match_or_generate(
                field_, ctx, hints[:1], allow_generation=ctx.allow_generation
            )

        await self._remember(field_, ctx, found)
        return self._shape(field_, found)

    # --- Helpers ---

    def _field(self, entity_type: str, name: str) -> ParsedField:
        entity = self.graph.require_entity(entity_type)
        if name not in entity.fields:
            raise ResolutionError(entity_type, name, "no such field")
        return entity.fields[name]

    @staticmethod
    def _shape(field_: ParsedField, records: list[Record]) -> Resolved:
        if field_.is_array:
            return records
        return records[0] if records else None

    @staticmethod
    def _annotate(match: Match) -> Record:
        return {**match.record, "$similarity": match.score, "$generated": False}

    async def _get_any(self, types: tuple[str, ...], entity_id: str) -> Record | None:
        for entity_type in types:
            record = await self.provider.get(entity_type, entity_id)
            if record is not None:
                return record
        return None

    async def _fetch(self, field_: ParsedField, ids: list[str]) -> list[Record]:
        records = []
        for entity_id in ids:
            record = await self._get_any(field_.target_types, entity_id)
            if record is not None:
                records.append(record)
        return records

    async def _semantic_matches(
        self, entity_type: str, hint: str, threshold: float, exclude_ids: set[str]
    ) -> list[Match] | None:
        """Semantic hits at or above threshold, or None when semantic search is unavailable."""
        capabilities = detect_capabilities(self.provider)
        if not warn_if_unavailable(
            capabilities, Capability.SEMANTIC_SEARCH, "Fuzzy relationship matching"
        ):
            return None
        try:
            hits = await self.provider.semantic_search(  # type: ignore[attr-defined]
                entity_type, hint, min_score=threshold, limit=self.search_limit
            )
        except SemanticSearchUnavailableError as exc:
            logger.debug(f"Semantic search unavailable, using text matching: {exc}")
            return None

        return [
            Match(hit, entity_type, float(hit.get("$score", 0.0)), "semantic")
            for hit in hits
            if hit.get("$id") not in exclude_ids and float(hit.get("$score", 0.0)) >= threshold
        ]

    async def _match_or_generate(
        self,
        field_: ParsedField,
        ctx: ResolutionContext,
        hints: list[str],
        allow_generation: bool,
    ) -> list[Record]:
        """Resolve each hint to one entity, never reusing an entity for two hints."""
        threshold = self.threshold_for(ctx.entity_type, field_)
        used: set[str] = set()
        resolved: list[Record] = []
        for hint in hints:
            match = await self.find_match(field_, hint, threshold, used)
            if match is not None:
                logger.debug(
                    f"{ctx.entity_type}.{field_.name}: matched {match.entity_type} "
                    f"{match.entity_id} ({match.method}, score={match.score:.2f})"
                )
                record = self._annotate(match)
            elif allow_generation and self.generation is not None:
                record = await self._generate(self.generation, field_, ctx, hint)
            else:
                continue
            used.add(record["$id"])
            resolved.append(record)
        return resolved

    async def _generate(
        self, generation: GenerationService, field_: ParsedField, ctx: ResolutionContext, hint: str
    ) -> Record:
        target_type = field_.related_type or ""
        values = await generation.generate_values(
            target_type,
            ancestors=[*ctx.ancestors, (ctx.entity_type, ctx.record)],
            prompt=field_.prompt,
            hint=hint,
        )
        values.update(
            {"$generated": True, "$generatedBy": ctx.entity_id, "$sourceField": field_.name}
        )
        record = await self.provider.create(target_type, None, values)
        logger.info(
            f"{ctx.entity_type}.{field_.name}: generated {target_type} {record['$id']} "
            f"for hint {hint!r}"
        )
        return record

    async def _remember(
        self, field_: ParsedField, ctx: ResolutionContext, records: list[Record]
    ) -> None:
        """Persist a fuzzy resolution so later reads fetch ids instead of searching."""
        if not records:
            return
        ids = [r["$id"] for r in records]
        value: Any = ids if field_.is_array else ids[0]
        await self.provider.update(ctx.entity_type, ctx.entity_id, {field_.name: value})
        ctx.record[field_.name] = value
        for record in records:
            await self.link(
                self.provider,
                ctx.entity_type,
                ctx.entity_id,
                field_,
                record["$type"],
                record["$id"],
                {"match_mode": "fuzzy", "similarity": record.get("$similarity")},
            )
