"""Tests for ai_database.services.cascade_service -- depth-bounded cascade generation."""

import asyncio

import pytest

from ai_database.config import AIDatabaseConfig
from ai_database.errors import CascadeCancelledError, GenerationError, TransactionError
from ai_database.generation.placeholder import PlaceholderGenerator
from ai_database.providers.memory import MemoryProvider
from ai_database.schema.graph import build_graph
from ai_database.services.cascade_service import (
    BranchContext,
    CascadeOptions,
    CascadePhase,
    CascadeService,
)
from ai_database.services.generation_service import GenerationService
from ai_database.services.relationship_resolver import RelationshipResolver

CHAIN = {
    "Company": {
        "name": "string",
        "founder": "->Person",
        "mentor": "->Person?",
        "products": ["->Product"],
    },
    "Person": {"name": "string", "hometown": "->City"},
    "City": {"name": "string", "country": "->Country"},
    "Country": {"name": "string"},
    "Product": {"title": "string"},
}


class _ScriptedGenerator(PlaceholderGenerator):
    """Placeholder generator that can fail or stall for chosen entity types."""

    def __init__(self, fail_types=(), slow_types=(), delay=0.0):
        super().__init__()
        self.fail_types = set(fail_types)
        self.slow_types = set(slow_types)
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def generate(self, directives, request):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if request.entity_type in self.slow_types:
                await asyncio.sleep(self.delay)
            if request.entity_type in self.fail_types:
                raise RuntimeError(f"{request.entity_type} generation failed")
            return await super().generate(directives, request)
        finally:
            self.active -= 1


class _RelateFailsProvider(MemoryProvider):
    async def relate(self, *args, **kwargs):
        raise RuntimeError("link store offline")


def _service(provider, generator=None, config=None, schema=CHAIN) -> CascadeService:
    graph = build_graph(schema)
    generation = GenerationService(graph, generator or PlaceholderGenerator())
    resolver = RelationshipResolver(graph, provider, generation)
    return CascadeService(graph, provider, generation, resolver, config or AIDatabaseConfig())


class _Recorder:
    def __init__(self):
        self.progress = []
        self.errors: list[tuple[BaseException, BranchContext]] = []

    def on_progress(self, progress):
        self.progress.append(progress)

    async def on_error(self, error, context):
        self.errors.append((error, context))

    @property
    def phases(self):
        return [(p.phase, p.depth, p.current_type) for p in self.progress]


class TestEffectiveDepth:
    def test_depth_rules(self, memory_provider, app_config):
        service = _service(memory_provider, config=app_config)
        assert service.effective_max_depth(CascadeOptions()) == 0
        assert service.effective_max_depth(CascadeOptions(cascade=False, max_depth=5)) == 0
        assert service.effective_max_depth(CascadeOptions(cascade=True)) == 3
        assert service.effective_max_depth(CascadeOptions(cascade=True, max_depth=2)) == 2
        assert service.effective_max_depth(CascadeOptions(cascade=True, max_depth=50)) == 10

    def test_configured_ceiling(self, memory_provider, config_env):
        config = AIDatabaseConfig(default_cascade_depth=1, max_cascade_depth=1)
        service = _service(memory_provider, config=config)
        assert service.effective_max_depth(CascadeOptions(cascade=True, max_depth=5)) == 1


class TestDepthBound:
    @pytest.mark.asyncio
    async def test_no_cascade_creates_only_the_root(self, memory_provider):
        root = await _service(memory_provider).create_with_cascade("Company", {"name": "Acme"})

        assert root["name"] == "Acme"
        assert "founder" not in root
        assert await memory_provider.list("Person") == []

    @pytest.mark.asyncio
    async def test_max_depth_two_stops_before_third_level(self, memory_provider):
        service = _service(memory_provider)
        root = await service.create_with_cascade(
            "Company", {"name": "Acme"}, CascadeOptions(cascade=True, max_depth=2)
        )

        (person,) = await memory_provider.list("Person")
        (city,) = await memory_provider.list("City")
        assert await memory_provider.list("Country") == []
        assert root["founder"] == person["$id"]
        assert person["hometown"] == city["$id"]
        assert "country" not in city
        assert person["$generated"] is True
        assert person["$generatedBy"] == root["$id"]
        assert person["$sourceField"] == "founder"

    @pytest.mark.asyncio
    async def test_default_depth_reaches_leaves(self, memory_provider, app_config):
        service = _service(memory_provider, config=app_config)
        await service.create_with_cascade("Company", {"name": "Acme"}, CascadeOptions(cascade=True))
        assert len(await memory_provider.list("Country")) == 1

    @pytest.mark.asyncio
    async def test_children_are_linked_with_inverse_labels(self, memory_provider):
        schema = {
            "Blog": {"name": "string", "owner": "->Author.blogs"},
            "Author": {"name": "string"},
        }
        service = _service(memory_provider, schema=schema)
        root = await service.create_with_cascade(
            "Blog", {"name": "b"}, CascadeOptions(cascade=True, max_depth=1)
        )

        related = await memory_provider.related("Author", root["owner"], "blogs")
        assert [r["$id"] for r in related] == [root["$id"]]

    @pytest.mark.asyncio
    async def test_child_generation_sees_parent(self, memory_provider, generator):
        service = _service(memory_provider, generator)
        await service.create_with_cascade(
            "Company", {"name": "Acme"}, CascadeOptions(cascade=True, max_depth=1)
        )

        person_request = next(r for r in generator.requests if r.entity_type == "Person")
        assert person_request.parent_type == "Company"
        assert person_request.parent_data["name"] == "Acme"


class TestBranchPlanning:
    @pytest.mark.asyncio
    async def test_provided_ids_are_linked_not_generated(self, memory_provider):
        await memory_provider.create("Person", "p1", {"name": "Ada"})
        service = _service(memory_provider)
        root = await service.create_with_cascade(
            "Company", {"name": "Acme", "founder": "p1"}, CascadeOptions(cascade=True, max_depth=1)
        )

        assert root["founder"] == "p1"
        assert [p["$id"] for p in await memory_provider.list("Person")] == ["p1"]
        links = await memory_provider.links("Company", root["$id"])
        assert [link["to_id"] for link in links if link["relation"] == "founder"] == ["p1"]

    @pytest.mark.asyncio
    async def test_optional_relation_needs_a_hint(self, memory_provider):
        service = _service(memory_provider)
        root = await service.create_with_cascade(
            "Company", {"name": "Acme"}, CascadeOptions(cascade=True, max_depth=1)
        )
        assert "mentor" not in root

        hinted = await service.create_with_cascade(
            "Company",
            {"name": "Beta", "mentorHint": "A retired engineer"},
            CascadeOptions(cascade=True, max_depth=1),
        )
        mentor = await memory_provider.get("Person", hinted["mentor"])
        assert mentor["name"] == "A retired engineer"

    @pytest.mark.asyncio
    async def test_array_count_and_explicit_hints(self, memory_provider):
        service = _service(memory_provider)
        root = await service.create_with_cascade(
            "Company", {"name": "Acme"}, CascadeOptions(cascade=True, max_depth=1, array_count=3)
        )
        assert len(root["products"]) == 3

        hinted = await service.create_with_cascade(
            "Company",
            {"name": "Beta", "productsHint": ["Widget", "Gadget"]},
            CascadeOptions(cascade=True, max_depth=1, array_count=5),
        )
        titles = [(await memory_provider.get("Product", pid))["title"] for pid in hinted["products"]]
        assert sorted(titles) == ["Gadget", "Widget"]

    @pytest.mark.asyncio
    async def test_cascade_types_restricts_targets(self, memory_provider):
        service = _service(memory_provider)
        root = await service.create_with_cascade(
            "Company",
            {"name": "Acme"},
            CascadeOptions(cascade=True, max_depth=3, cascade_types={"Person"}),
        )

        assert root["founder"]
        assert await memory_provider.list("City") == []
        assert await memory_provider.list("Product") == []

    @pytest.mark.asyncio
    async def test_fuzzy_relation_reuses_existing_entities(self, memory_provider):
        schema = {
            "Post": {"title": "string", "tags": "~>Tag[]"},
            "Tag": {"name": "string", "category": "->Category"},
            "Category": {"name": "string"},
        }
        await memory_provider.create("Tag", "t1", {"name": "python"})
        recorder = _Recorder()
        service = _service(memory_provider, schema=schema)

        root = await service.create_with_cascade(
            "Post",
            {"title": "Hello", "tagsHint": ["python", "rust"]},
            CascadeOptions(cascade=True, max_depth=2, on_progress=recorder.on_progress),
        )

        assert "t1" in root["tags"]
        assert len(root["tags"]) == 2
        assert {t["name"] for t in await memory_provider.list("Tag")} == {"python", "rust"}
        # The reused tag is not cascaded into; only the generated one gets a category
        assert len(await memory_provider.list("Category")) == 1
        assert "category" not in await memory_provider.get("Tag", "t1")
        assert recorder.progress[-1].total_entities_created == 3
        (reused_link,) = [
            link for link in await memory_provider.links("Post", root["$id"]) if link["to_id"] == "t1"
        ]
        assert reused_link["metadata"]["match_mode"] == "fuzzy"

    @pytest.mark.asyncio
    async def test_fuzzy_siblings_never_share_a_match(self, memory_provider):
        schema = {"Post": {"title": "string", "tags": "~>Tag[]"}, "Tag": {"name": "string"}}
        await memory_provider.create("Tag", "t1", {"name": "python"})
        service = _service(memory_provider, schema=schema)

        root = await service.create_with_cascade(
            "Post",
            {"title": "Hello", "tagsHint": ["python", "python"]},
            CascadeOptions(cascade=True, max_depth=1),
        )

        assert len(set(root["tags"])) == 2
        assert root["tags"].count("t1") == 1


class TestProgress:
    @pytest.mark.asyncio
    async def test_phase_sequence(self, memory_provider):
        recorder = _Recorder()
        schema = {"Company": {"name": "string", "founder": "->Person"}, "Person": {"name": "string"}}
        await _service(memory_provider, schema=schema).create_with_cascade(
            "Company",
            {"name": "Acme"},
            CascadeOptions(cascade=True, max_depth=1, on_progress=recorder.on_progress),
        )

        assert recorder.phases == [
            (CascadePhase.PLANNING, 0, "Company"),
            (CascadePhase.GENERATING, 0, "Company"),
            (CascadePhase.CREATED, 0, "Company"),
            (CascadePhase.GENERATING, 1, "Person"),
            (CascadePhase.CREATED, 1, "Person"),
            (CascadePhase.COMPLETE, 0, "Company"),
        ]
        assert [p.total_entities_created for p in recorder.progress] == [0, 0, 1, 1, 2, 2]
        assert recorder.progress[-1].types_generated == ("Company", "Person")

    @pytest.mark.asyncio
    async def test_counts_never_decrease(self, memory_provider):
        recorder = _Recorder()
        await _service(memory_provider).create_with_cascade(
            "Company",
            {"name": "Acme"},
            CascadeOptions(cascade=True, max_depth=3, array_count=2, on_progress=recorder.on_progress),
        )

        counts = [p.total_entities_created for p in recorder.progress]
        assert counts == sorted(counts)
        assert counts[-1] == 1 + 1 + 2 + 1 + 1  # company, founder, products, city, country
        assert recorder.progress[-1].phase is CascadePhase.COMPLETE
        assert all(p.depth <= 3 for p in recorder.progress)

    @pytest.mark.asyncio
    async def test_async_progress_callback_and_callback_failures(self, memory_provider):
        seen = []

        async def on_progress(progress):
            seen.append(progress.phase)
            raise ValueError("callback bug")

        root = await _service(memory_provider).create_with_cascade(
            "Company", {"name": "Acme"}, CascadeOptions(on_progress=on_progress)
        )

        assert root["$id"]
        assert seen[-1] is CascadePhase.COMPLETE


class TestErrors:
    @pytest.mark.asyncio
    async def test_failed_branch_is_reported_and_siblings_continue(self, memory_provider):
        recorder = _Recorder()
        generator = _ScriptedGenerator(fail_types={"Person"})
        root = await _service(memory_provider, generator).create_with_cascade(
            "Company",
            {"name": "Acme"},
            CascadeOptions(
                cascade=True,
                max_depth=1,
                array_count=2,
                on_progress=recorder.on_progress,
                on_error=recorder.on_error,
            ),
        )

        (error, context) = recorder.errors[0]
        assert isinstance(error, GenerationError)
        assert context == BranchContext(
            entity_type="Person",
            depth=1,
            field="founder",
            parent_type="Company",
            parent_id=root["$id"],
        )
        assert "founder" not in root
        assert len(root["products"]) == 2
        assert (CascadePhase.ERROR, 1, "Person") in recorder.phases
        assert recorder.phases[-1][0] is CascadePhase.COMPLETE

    @pytest.mark.asyncio
    async def test_stop_on_error_raises_first_error(self, memory_provider):
        generator = _ScriptedGenerator(fail_types={"City"})
        with pytest.raises(GenerationError, match="City generation failed"):
            await _service(memory_provider, generator).create_with_cascade(
                "Company",
                {"name": "Acme"},
                CascadeOptions(cascade=True, max_depth=3, stop_on_error=True),
            )
        # Entities created before the failure stay
        assert len(await memory_provider.list("Company")) == 1

    @pytest.mark.asyncio
    async def test_root_failure_propagates(self, memory_provider):
        recorder = _Recorder()
        generator = _ScriptedGenerator(fail_types={"Company"})
        with pytest.raises(GenerationError):
            await _service(memory_provider, generator).create_with_cascade(
                "Company", {}, CascadeOptions(cascade=True, on_progress=recorder.on_progress)
            )
        assert recorder.phases[-1] == (CascadePhase.ERROR, 0, "Company")
        assert await memory_provider.list("Company") == []


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_event_stops_new_branches(self, memory_provider):
        recorder = _Recorder()
        cancel = asyncio.Event()

        def on_progress(progress):
            recorder.on_progress(progress)
            if progress.phase is CascadePhase.CREATED and progress.depth == 0:
                cancel.set()

        root = await _service(memory_provider).create_with_cascade(
            "Company",
            {"name": "Acme"},
            CascadeOptions(
                cascade=True,
                max_depth=3,
                array_count=3,
                cancel_event=cancel,
                on_progress=on_progress,
                on_error=recorder.on_error,
            ),
        )

        assert root["$id"]
        assert await memory_provider.list("Person") == []
        assert await memory_provider.list("Product") == []
        # Reported once even though several branches were skipped
        assert len(recorder.errors) == 1
        (error, context) = recorder.errors[0]
        assert isinstance(error, CascadeCancelledError)
        assert error.reason == "cancelled"
        assert context.depth == 1

    @pytest.mark.asyncio
    async def test_cancel_abandons_in_flight_generation(self, memory_provider):
        recorder = _Recorder()
        cancel = asyncio.Event()
        generator = _ScriptedGenerator(slow_types={"Person"}, delay=5.0)

        def on_progress(progress):
            if progress.phase is CascadePhase.GENERATING and progress.current_type == "Person":
                asyncio.get_running_loop().call_later(0.05, cancel.set)

        schema = {"Company": {"name": "string", "founder": "->Person"}, "Person": {"name": "string"}}
        await _service(memory_provider, generator, schema=schema).create_with_cascade(
            "Company",
            {"name": "Acme"},
            CascadeOptions(
                cascade=True,
                max_depth=1,
                cancel_event=cancel,
                on_progress=on_progress,
                on_error=recorder.on_error,
            ),
        )

        assert await memory_provider.list("Person") == []
        assert isinstance(recorder.errors[0][0], CascadeCancelledError)
        assert generator.active == 0

    @pytest.mark.asyncio
    async def test_timeout_reports_timed_out(self, memory_provider):
        recorder = _Recorder()
        generator = _ScriptedGenerator(slow_types={"Person"}, delay=5.0)
        schema = {"Company": {"name": "string", "founder": "->Person"}, "Person": {"name": "string"}}

        root = await _service(memory_provider, generator, schema=schema).create_with_cascade(
            "Company",
            {"name": "Acme"},
            CascadeOptions(cascade=True, max_depth=1, timeout=0.1, on_error=recorder.on_error),
        )

        assert root["name"] == "Acme"
        (error, _context) = recorder.errors[0]
        assert isinstance(error, CascadeCancelledError)
        assert error.reason == "timed out"
        assert await memory_provider.list("Person") == []


class TestConcurrencyAndTransactions:
    @pytest.mark.asyncio
    async def test_sibling_fan_out_is_bounded(self, memory_provider):
        generator = _ScriptedGenerator(slow_types={"Product"}, delay=0.02)
        root = await _service(memory_provider, generator).create_with_cascade(
            "Company",
            {"name": "Acme"},
            CascadeOptions(cascade=True, max_depth=1, array_count=6, concurrency=2, cascade_types={"Product"}),
        )

        assert len(root["products"]) == 6
        assert generator.max_active <= 2

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back_the_branch(self):
        provider = _RelateFailsProvider()
        recorder = _Recorder()
        schema = {"Company": {"name": "string", "founder": "->Person"}, "Person": {"name": "string"}}

        root = await _service(provider, schema=schema).create_with_cascade(
            "Company",
            {"name": "Acme"},
            CascadeOptions(cascade=True, max_depth=1, on_error=recorder.on_error),
        )

        assert isinstance(recorder.errors[0][0], TransactionError)
        assert await provider.list("Person") == []
        assert "founder" not in root

    @pytest.mark.asyncio
    async def test_without_transactions_partial_writes_remain(self):
        provider = _RelateFailsProvider()
        recorder = _Recorder()
        schema = {"Company": {"name": "string", "founder": "->Person"}, "Person": {"name": "string"}}

        await _service(provider, schema=schema).create_with_cascade(
            "Company",
            {"name": "Acme"},
            CascadeOptions(
                cascade=True, max_depth=1, use_transactions=False, on_error=recorder.on_error
            ),
        )

        assert isinstance(recorder.errors[0][0], RuntimeError)
        assert len(await provider.list("Person")) == 1
