"""Runtime: one schema, one provider and the services built on them.

There is no global provider. Everything that needs storage receives it from
the Runtime that owns it:

    async with Runtime(schema, MemoryProvider()) as db:
        post = await db.create("Post", {"title": "Hello"})
        author = await post.author
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from loguru import logger

from ai_database.config import AIDatabaseConfig
from ai_database.embeddings import create_embedding_provider
from ai_database.entity import Entity
from ai_database.errors import EntityNotFoundError
from ai_database.generation import Generator, create_generator
from ai_database.providers.base import DBProvider, Record
from ai_database.providers.capabilities import (
    Capability,
    ProviderCapabilities,
    clear_capability_cache,
    detect_capabilities,
    require_capability,
)
from ai_database.schema.graph import ParsedGraph, build_graph
from ai_database.services.cascade_service import CascadeOptions, CascadeService
from ai_database.services.generation_service import GenerationService
from ai_database.services.relationship_resolver import RelationshipResolver
from ai_database.services.seed_service import SeedResult, SeedService


class Runtime:
    """Explicitly constructed database facade with async teardown."""

    def __init__(
        self,
        schema: Mapping[str, Any] | ParsedGraph,
        provider: DBProvider,
        *,
        generator: Generator | None = None,
        config: AIDatabaseConfig | None = None,
    ):
        self.config = config or AIDatabaseConfig()
        self.graph = schema if isinstance(schema, ParsedGraph) else build_graph(schema)
        self.provider = provider
        self.generator = generator or create_generator(self.config)
        self._attach_embeddings()

        self.generation = GenerationService(self.graph, self.generator)
        self.resolver = RelationshipResolver(
            self.graph,
            provider,
            self.generation,
            default_threshold=self.config.default_fuzzy_threshold,
            search_limit=self.config.semantic_search_limit,
        )
        self.cascade = CascadeService(
            self.graph, provider, self.generation, self.resolver, self.config
        )
        self.seeder = SeedService(self.graph, provider, timeout=self.config.seed_timeout)
        self._closed = False
        logger.debug(
            f"Runtime ready: {len(self.graph.entities)} entities, capabilities={sorted(self.capabilities.tags)}"
        )

    def _attach_embeddings(self) -> None:
        """Give an embedding-capable provider the configured embedder, if it has none."""
        if self.config.semantic_embedding_provider == "none":
            return
        setter = getattr(self.provider, "set_embedding_provider", None)
        if setter is None:
            logger.warning(
                f"Embedding provider {self.config.semantic_embedding_provider!r} configured but "
                f"{type(self.provider).__name__} cannot use one"
            )
            return
        embedder = create_embedding_provider(self.config)
        if embedder is not None:
            setter(embedder)
            clear_capability_cache(self.provider)

    # --- Lifecycle ---

    async def __aenter__(self) -> Runtime:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        clear_capability_cache(self.provider)
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
        logger.debug("Runtime closed")

    # --- Entities ---

    @property
    def capabilities(self) -> ProviderCapabilities:
        return detect_capabilities(self.provider)

    def entity(self, record: Record) -> Entity:
        definition = self.graph.require_entity(record["$type"])
        return Entity(self, definition, record)

    def wrap(self, resolved: Record | list[Record] | None) -> Entity | list[Entity] | None:
        if resolved is None:
            return None
        if isinstance(resolved, list):
            return [self.entity(r) for r in resolved]
        return self.entity(resolved)

    async def create(
        self,
        entity_type: str,
        data: dict[str, Any] | None = None,
        *,
        id: str | None = None,
        options: CascadeOptions | None = None,
    ) -> Entity:
        """Create one entity; missing scalar fields are generated, given relation ids linked."""
        record = await self.cascade.create_with_cascade(
            entity_type, data, options, entity_id=id
        )
        return self.entity(record)

    async def create_with_cascade(
        self,
        entity_type: str,
        data: dict[str, Any] | None = None,
        options: CascadeOptions | None = None,
    ) -> Entity:
        """Create an entity and cascade along forward relations (cascade defaults to on)."""
        options = options or CascadeOptions(cascade=True)
        record = await self.cascade.create_with_cascade(entity_type, data, options)
        return self.entity(record)

    async def get(self, entity_type: str, entity_id: str) -> Entity | None:
        self.graph.require_entity(entity_type)
        record = await self.provider.get(entity_type, entity_id)
        return self.entity(record) if record is not None else None

    async def require(self, entity_type: str, entity_id: str) -> Entity:
        found = await self.get(entity_type, entity_id)
        if found is None:
            raise EntityNotFoundError(entity_type, entity_id)
        return found

    async def list(
        self,
        entity_type: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Entity]:
        self.graph.require_entity(entity_type)
        records = await self.provider.list(entity_type, where, limit, offset)
        return [self.entity(r) for r in records]

    async def seed(self, entity_type: str) -> SeedResult:
        return await self.seeder.seed(entity_type)

    # --- Search ---

    async def semantic_search(
        self,
        entity_type: str,
        query: str,
        *,
        min_score: float = 0.0,
        limit: int = 10,
    ) -> list[Entity]:
        """Raises CapabilityNotSupportedError when the provider has no semantic search."""
        require_capability(self.capabilities, Capability.SEMANTIC_SEARCH)
        hits = await self.provider.semantic_search(  # type: ignore[attr-defined]
            entity_type, query, min_score=min_score, limit=limit
        )
        return [self.entity(hit) for hit in hits]

    async def hybrid_search(self, entity_type: str, query: str, *, limit: int = 10) -> list[Entity]:
        """Raises CapabilityNotSupportedError when the provider has no hybrid search."""
        require_capability(self.capabilities, Capability.HYBRID_SEARCH)
        hits = await self.provider.hybrid_search(entity_type, query, limit=limit)  # type: ignore[attr-defined]
        return [self.entity(hit) for hit in hits]
