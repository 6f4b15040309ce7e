"""In-memory reference providers.

MemoryProvider implements the core provider contract plus transactions.
SemanticMemoryProvider adds embedding-backed semantic and hybrid search on
top of it, so the two cover both sides of capability detection.
"""

from __future__ import annotations

import copy
import math
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from ai_database.embeddings.provider import EmbeddingProvider
from ai_database.errors import (
    DuplicateEntityError,
    EntityNotFoundError,
    SemanticSearchUnavailableError,
)
from ai_database.providers.base import INVERSE_KEY, Record
from ai_database.providers.transaction import TransactionBuffer

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _string_values(record: Record, fields: list[str] | None = None) -> list[str]:
    return [
        value
        for key, value in record.items()
        if isinstance(value, str)
        and not key.startswith("$")
        and (fields is None or key in fields)
    ]


@dataclass
class _Link:
    from_type: str
    from_id: str
    relation: str
    to_type: str
    to_id: str
    metadata: dict[str, Any] = field(default_factory=dict)


class MemoryProvider:
    """Dict-backed provider for tests, prototyping and reference data."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Record]] = {}
        self._links: list[_Link] = []

    # --- Reads ---

    async def get(self, entity_type: str, entity_id: str) -> Record | None:
        record = self._records.get(entity_type, {}).get(entity_id)
        return copy.deepcopy(record) if record is not None else None

    async def list(
        self,
        entity_type: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Record]:
        records = list(self._records.get(entity_type, {}).values())
        if where:
            records = [r for r in records if all(r.get(k) == v for k, v in where.items())]
        records = records[offset:]
        if limit is not None:
            records = records[:limit]
        return copy.deepcopy(records)

    async def search(self, entity_type: str, query: str, limit: int = 10) -> list[Record]:
        """Rank records by how many query tokens appear in their string fields."""
        tokens = set(_TOKEN_RE.findall(query.lower()))
        if not tokens:
            return []

        scored: list[tuple[float, Record]] = []
        for record in self._records.get(entity_type, {}).values():
            text = " ".join(_string_values(record)).lower()
            hits = sum(1 for token in tokens if token in text)
            if hits:
                scored.append((hits / len(tokens), record))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [{**copy.deepcopy(r), "$score": score} for score, r in scored[:limit]]

    # --- Writes ---

    async def create(
        self, entity_type: str, entity_id: str | None, data: dict[str, Any]
    ) -> Record:
        entity_id = entity_id or str(uuid.uuid4())
        table = self._records.setdefault(entity_type, {})
        if entity_id in table:
            raise DuplicateEntityError(entity_type, entity_id)

        record = {
            **{k: v for k, v in copy.deepcopy(data).items() if k not in ("$id", "$type")},
            "$id": entity_id,
            "$type": entity_type,
        }
        table[entity_id] = record
        return copy.deepcopy(record)

    async def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> Record:
        record = self._records.get(entity_type, {}).get(entity_id)
        if record is None:
            raise EntityNotFoundError(entity_type, entity_id)
        for key, value in copy.deepcopy(data).items():
            if key not in ("$id", "$type"):
                record[key] = value
        return copy.deepcopy(record)

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        table = self._records.get(entity_type, {})
        if entity_id not in table:
            return False
        del table[entity_id]
        self._links = [
            link
            for link in self._links
            if (link.from_type, link.from_id) != (entity_type, entity_id)
            and (link.to_type, link.to_id) != (entity_type, entity_id)
        ]
        return True

    # --- Relationships ---

    async def relate(
        self,
        from_type: str,
        from_id: str,
        relation: str,
        to_type: str,
        to_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        for link in self._links:
            if (link.from_type, link.from_id, link.relation, link.to_type, link.to_id) == (
                from_type,
                from_id,
                relation,
                to_type,
                to_id,
            ):
                link.metadata.update(metadata or {})
                return
        self._links.append(
            _Link(from_type, from_id, relation, to_type, to_id, dict(metadata or {}))
        )

    async def unrelate(
        self, from_type: str, from_id: str, relation: str, to_type: str, to_id: str
    ) -> None:
        key = (from_type, from_id, relation, to_type, to_id)
        self._links = [
            link
            for link in self._links
            if (link.from_type, link.from_id, link.relation, link.to_type, link.to_id) != key
        ]

    async def related(self, entity_type: str, entity_id: str, relation: str) -> list[Record]:
        """Records linked to (entity_type, entity_id) under relation.

        Includes outgoing links named relation and incoming links whose
        inverse name is relation.
        """
        found: list[tuple[str, str]] = []
        for link in self._links:
            if (link.from_type, link.from_id, link.relation) == (
                entity_type,
                entity_id,
                relation,
            ):
                target = (link.to_type, link.to_id)
            elif (link.to_type, link.to_id) == (entity_type, entity_id) and link.metadata.get(
                INVERSE_KEY
            ) == relation:
                target = (link.from_type, link.from_id)
            else:
                continue
            if target not in found:
                found.append(target)

        records = []
        for target_type, target_id in found:
            record = await self.get(target_type, target_id)
            if record is not None:
                records.append(record)
        return records

    async def links(
        self, entity_type: str, entity_id: str, incoming: bool = False
    ) -> list[dict[str, Any]]:
        """Links of an entity, for inspection.

        Outgoing links only by default; with incoming=True, links pointing at
        the entity are included too.
        """
        key = (entity_type, entity_id)
        return [
            {
                "from_type": link.from_type,
                "from_id": link.from_id,
                "relation": link.relation,
                "to_type": link.to_type,
                "to_id": link.to_id,
                "metadata": dict(link.metadata),
            }
            for link in self._links
            if (link.from_type, link.from_id) == key
            or (incoming and (link.to_type, link.to_id) == key)
        ]

    # --- Transactions ---

    def begin_transaction(self) -> TransactionBuffer:
        return TransactionBuffer(self)

    async def clear(self) -> None:
        self._records.clear()
        self._links.clear()


# --- Semantic search ---


@dataclass
class EmbeddingsConfig:
    """Which string fields to embed, per entity type. Unlisted types embed all string fields."""

    fields: dict[str, list[str]] = field(default_factory=dict)


def cosine_similarity(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class SemanticMemoryProvider(MemoryProvider):
    """MemoryProvider with embedding-backed semantic and hybrid search."""

    def __init__(
        self,
        embedding_provider: EmbeddingProvider | None = None,
        embeddings_config: EmbeddingsConfig | None = None,
    ) -> None:
        super().__init__()
        self._embedding_provider = embedding_provider
        self._embeddings_config = embeddings_config or EmbeddingsConfig()
        self._vectors: dict[tuple[str, str], list[float]] = {}

    def set_embeddings_config(self, config: EmbeddingsConfig) -> None:
        self._embeddings_config = config

    def set_embedding_provider(self, embedding_provider: EmbeddingProvider) -> None:
        self._embedding_provider = embedding_provider
        self._vectors.clear()

    def _embedding_text(self, record: Record) -> str:
        fields = self._embeddings_config.fields.get(record["$type"])
        return " ".join(_string_values(record, fields))

    async def _index(self, record: Record) -> None:
        if self._embedding_provider is None:
            return
        text = self._embedding_text(record)
        key = (record["$type"], record["$id"])
        if not text:
            self._vectors.pop(key, None)
            return
        self._vectors[key] = await self._embedding_provider.embed_query(text)

    async def create(
        self, entity_type: str, entity_id: str | None, data: dict[str, Any]
    ) -> Record:
        record = await super().create(entity_type, entity_id, data)
        await self._index(record)
        return record

    async def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> Record:
        record = await super().update(entity_type, entity_id, data)
        await self._index(record)
        return record

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        self._vectors.pop((entity_type, entity_id), None)
        return await super().delete(entity_type, entity_id)

    async def semantic_search(
        self,
        entity_type: str,
        query: str,
        min_score: float = 0.0,
        limit: int = 10,
    ) -> list[Record]:
        """Rank records of a type by cosine similarity to the query.

        Results carry the similarity as "$score" and are sorted best first.

        Raises:
            SemanticSearchUnavailableError: If no embedding provider is configured.
        """
        if self._embedding_provider is None:
            raise SemanticSearchUnavailableError(
                "Semantic search requires an embedding provider; none is configured."
            )

        query_vector = await self._embedding_provider.embed_query(query)
        scored: list[tuple[float, Record]] = []
        for entity_id, record in self._records.get(entity_type, {}).items():
            vector = self._vectors.get((entity_type, entity_id))
            if vector is None:
                continue
            score = cosine_similarity(query_vector, vector)
            if score >= min_score:
                scored.append((score, record))

        scored.sort(key=lambda item: item[0], reverse=True)
        logger.debug(
            f"Semantic search {entity_type} query={query!r}: {len(scored)} hits >= {min_score}"
        )
        return [{**copy.deepcopy(r), "$score": score} for score, r in scored[:limit]]

    async def hybrid_search(
        self,
        entity_type: str,
        query: str,
        limit: int = 10,
        rrf_k: int = 60,
    ) -> list[Record]:
        """Fuse keyword and semantic rankings with reciprocal rank fusion."""
        keyword_hits = await self.search(entity_type, query, limit=limit * 2)
        semantic_hits = await self.semantic_search(entity_type, query, limit=limit * 2)

        fused: dict[str, dict[str, Any]] = {}
        for rank, hit in enumerate(keyword_hits, start=1):
            entry = fused.setdefault(hit["$id"], {"record": hit, "rrf": 0.0})
            entry["rrf"] += 1.0 / (rrf_k + rank)
            entry["record"]["$ftsRank"] = rank
        for rank, hit in enumerate(semantic_hits, start=1):
            entry = fused.setdefault(hit["$id"], {"record": hit, "rrf": 0.0})
            entry["rrf"] += 1.0 / (rrf_k + rank)
            entry["record"]["$semanticRank"] = rank
            entry["record"]["$score"] = hit["$score"]

        ranked = sorted(fused.values(), key=lambda e: e["rrf"], reverse=True)[:limit]
        return [{**entry["record"], "$rrfScore": entry["rrf"]} for entry in ranked]
