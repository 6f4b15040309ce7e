"""Tests for ai_database.providers.memory -- the in-memory reference providers."""

import pytest

from ai_database.errors import (
    DuplicateEntityError,
    EntityNotFoundError,
    SemanticSearchUnavailableError,
)
from ai_database.providers.base import DBProvider
from ai_database.providers.memory import (
    EmbeddingsConfig,
    SemanticMemoryProvider,
    cosine_similarity,
)


class TestMemoryProviderCrud:
    @pytest.mark.asyncio
    async def test_satisfies_protocol(self, memory_provider):
        assert isinstance(memory_provider, DBProvider)

    @pytest.mark.asyncio
    async def test_create_and_get(self, memory_provider):
        record = await memory_provider.create("Post", "p1", {"title": "Hello", "$type": "Other"})
        assert record == {"title": "Hello", "$id": "p1", "$type": "Post"}
        assert await memory_provider.get("Post", "p1") == record
        assert await memory_provider.get("Post", "nope") is None

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, memory_provider):
        await memory_provider.create("Post", "p1", {"tags": ["a"]})
        record = await memory_provider.get("Post", "p1")
        record["tags"].append("b")
        assert (await memory_provider.get("Post", "p1"))["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_duplicate_create(self, memory_provider):
        await memory_provider.create("Post", "p1", {})
        with pytest.raises(DuplicateEntityError):
            await memory_provider.create("Post", "p1", {})

    @pytest.mark.asyncio
    async def test_update_merges(self, memory_provider):
        await memory_provider.create("Post", "p1", {"title": "a", "body": "b"})
        updated = await memory_provider.update("Post", "p1", {"title": "c", "$id": "ignored"})
        assert updated == {"title": "c", "body": "b", "$id": "p1", "$type": "Post"}
        with pytest.raises(EntityNotFoundError):
            await memory_provider.update("Post", "missing", {})

    @pytest.mark.asyncio
    async def test_list_filters_and_pages(self, memory_provider):
        for i in range(5):
            await memory_provider.create("Post", f"p{i}", {"n": i, "kind": "even" if i % 2 == 0 else "odd"})
        evens = await memory_provider.list("Post", where={"kind": "even"})
        assert [r["$id"] for r in evens] == ["p0", "p2", "p4"]
        page = await memory_provider.list("Post", limit=2, offset=1)
        assert [r["$id"] for r in page] == ["p1", "p2"]
        assert await memory_provider.list("Missing") == []

    @pytest.mark.asyncio
    async def test_search_scores_token_overlap(self, memory_provider):
        await memory_provider.create("Tag", "t1", {"name": "python programming"})
        await memory_provider.create("Tag", "t2", {"name": "python"})
        await memory_provider.create("Tag", "t3", {"name": "cooking"})
        results = await memory_provider.search("Tag", "python programming")
        assert [r["$id"] for r in results] == ["t1", "t2"]
        assert results[0]["$score"] == 1.0
        assert results[1]["$score"] == 0.5

    @pytest.mark.asyncio
    async def test_delete_drops_links(self, memory_provider):
        await memory_provider.create("Post", "p1", {})
        await memory_provider.create("Author", "a1", {})
        await memory_provider.relate("Post", "p1", "author", "Author", "a1")
        assert await memory_provider.delete("Author", "a1") is True
        assert await memory_provider.links("Post", "p1") == []
        assert await memory_provider.delete("Author", "a1") is False


class TestMemoryProviderLinks:
    @pytest.mark.asyncio
    async def test_related_follows_outgoing_and_labelled_incoming_links(self, memory_provider):
        await memory_provider.create("Post", "p1", {"title": "one"})
        await memory_provider.create("Post", "p2", {"title": "two"})
        await memory_provider.create("Author", "a1", {"name": "Ada"})
        await memory_provider.relate("Post", "p1", "author", "Author", "a1", {"inverse": "posts"})
        await memory_provider.relate("Post", "p2", "author", "Author", "a1", {"inverse": "posts"})

        outgoing = await memory_provider.related("Post", "p1", "author")
        assert [r["$id"] for r in outgoing] == ["a1"]
        incoming = await memory_provider.related("Author", "a1", "posts")
        assert [r["$id"] for r in incoming] == ["p1", "p2"]
        assert await memory_provider.related("Author", "a1", "other") == []

    @pytest.mark.asyncio
    async def test_relate_is_deduplicated_and_merges_metadata(self, memory_provider):
        await memory_provider.relate("Post", "p1", "tags", "Tag", "t1", {"similarity": 0.8})
        await memory_provider.relate("Post", "p1", "tags", "Tag", "t1", {"match_mode": "fuzzy"})
        (link,) = await memory_provider.links("Post", "p1")
        assert link["metadata"] == {"similarity": 0.8, "match_mode": "fuzzy"}

    @pytest.mark.asyncio
    async def test_links_include_incoming_on_request(self, memory_provider):
        await memory_provider.relate("Post", "p1", "author", "Author", "a1")
        await memory_provider.relate("Blog", "b1", "posts", "Post", "p1")

        assert [link["to_id"] for link in await memory_provider.links("Post", "p1")] == ["a1"]
        both = await memory_provider.links("Post", "p1", incoming=True)
        assert [(link["from_id"], link["to_id"]) for link in both] == [("p1", "a1"), ("b1", "p1")]

    @pytest.mark.asyncio
    async def test_unrelate(self, memory_provider):
        await memory_provider.relate("Post", "p1", "tags", "Tag", "t1")
        await memory_provider.unrelate("Post", "p1", "tags", "Tag", "t1")
        assert await memory_provider.links("Post", "p1") == []

    @pytest.mark.asyncio
    async def test_clear(self, memory_provider):
        await memory_provider.create("Post", "p1", {})
        await memory_provider.clear()
        assert await memory_provider.list("Post") == []


class TestSemanticMemoryProvider:
    @pytest.mark.asyncio
    async def test_semantic_search_ranks_by_similarity(self, semantic_provider):
        await semantic_provider.create("Occupation", "o1", {"title": "Software Developers"})
        await semantic_provider.create("Occupation", "o2", {"title": "Bakers"})

        results = await semantic_provider.semantic_search("Occupation", "software developers")
        assert results[0]["$id"] == "o1"
        assert results[0]["$score"] == pytest.approx(1.0)

        filtered = await semantic_provider.semantic_search(
            "Occupation", "software developers", min_score=0.5
        )
        assert [r["$id"] for r in filtered] == ["o1"]

    @pytest.mark.asyncio
    async def test_update_reindexes(self, semantic_provider):
        await semantic_provider.create("Tag", "t1", {"name": "gardening"})
        await semantic_provider.update("Tag", "t1", {"name": "astronomy"})
        (hit,) = await semantic_provider.semantic_search("Tag", "astronomy", min_score=0.9)
        assert hit["$id"] == "t1"

    @pytest.mark.asyncio
    async def test_embeddings_config_limits_fields(self, embedding_provider):
        provider = SemanticMemoryProvider(
            embedding_provider, EmbeddingsConfig(fields={"Post": ["title"]})
        )
        await provider.create("Post", "p1", {"title": "rockets", "body": "cooking recipes"})
        assert await provider.semantic_search("Post", "cooking recipes", min_score=0.1) == []

    @pytest.mark.asyncio
    async def test_without_embedder_raises(self):
        provider = SemanticMemoryProvider()
        with pytest.raises(SemanticSearchUnavailableError):
            await provider.semantic_search("Tag", "anything")

    @pytest.mark.asyncio
    async def test_hybrid_search_fuses_rankings(self, semantic_provider):
        await semantic_provider.create("Tag", "t1", {"name": "machine learning"})
        await semantic_provider.create("Tag", "t2", {"name": "learning to cook"})
        results = await semantic_provider.hybrid_search("Tag", "machine learning")
        assert results[0]["$id"] == "t1"
        assert results[0]["$rrfScore"] > results[1]["$rrfScore"]
        assert results[0]["$ftsRank"] == 1
        assert results[0]["$semanticRank"] == 1

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == 1.0
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
