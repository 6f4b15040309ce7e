"""Tests for ai_database.services.generation_service."""

import pytest

from ai_database.errors import GenerationError, SchemaError
from ai_database.schema.graph import build_graph
from ai_database.services.generation_service import GenerationService

SCHEMA = {
    "Person": {
        "$instructions": "Someone working in tech",
        "name": "string",
        "nickname": "string?",
        "bio": "Write a short biography of {name}",
        "motto": "A short motto?",
        "code": "$.Code",
        "employer": "->Company",
    },
    "Company": {"name": "string"},
}


class _BrokenGenerator:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    async def generate(self, directives, request):
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def service(generator):
    return GenerationService(build_graph(SCHEMA), generator)


class TestFieldsToGenerate:
    def test_selects_missing_scalars(self, service):
        entity = service.graph.entities["Person"]
        names = [f.name for f in service.fields_to_generate(entity, {"name": "Ada"})]
        # Optional plain fields, seed columns and relations are not generated
        assert names == ["bio", "motto"]


class TestGenerateValues:
    @pytest.mark.asyncio
    async def test_provided_values_win(self, service, generator):
        values = await service.generate_values("Person", {"name": "Ada", "bio": "Wrote programs"})

        assert values["name"] == "Ada"
        assert values["bio"] == "Wrote programs"
        assert "motto" in values
        request = generator.requests[0]
        assert request.instructions == "Someone working in tech"
        assert request.existing == {"name": "Ada", "bio": "Wrote programs"}

    @pytest.mark.asyncio
    async def test_nothing_to_generate_skips_generator(self, service, generator):
        data = {"name": "Ada", "bio": "x", "motto": "y"}
        assert await service.generate_values("Person", data) == data
        assert generator.requests == []

    @pytest.mark.asyncio
    async def test_prompts_are_interpolated(self, service, generator):
        await service.generate_values("Person", {"name": "Ada"})
        bio = next(f for f in generator.requests[0].fields if f.name == "bio")
        assert bio.prompt == "Write a short biography of Ada"

    @pytest.mark.asyncio
    async def test_hint_and_ancestors_reach_the_request(self, service, generator):
        await service.generate_values(
            "Company",
            ancestors=[("Person", {"name": "Ada"})],
            prompt="Where does {parent.name} work?",
            hint="a startup",
        )
        request = generator.requests[0]
        assert request.prompt == "Where does Ada work?"
        assert request.hint == "a startup"
        assert request.parent_type == "Person"

    @pytest.mark.asyncio
    async def test_generator_failure_is_wrapped(self):
        service = GenerationService(build_graph(SCHEMA), _BrokenGenerator(error=TimeoutError("slow")))
        with pytest.raises(GenerationError, match="Failed to generate Company: slow"):
            await service.generate_values("Company")

    @pytest.mark.asyncio
    async def test_non_dict_result_is_rejected(self):
        service = GenerationService(build_graph(SCHEMA), _BrokenGenerator(result=["x"]))
        with pytest.raises(GenerationError, match="expected dict"):
            await service.generate_values("Company")

    @pytest.mark.asyncio
    async def test_unknown_entity(self, service):
        with pytest.raises(SchemaError):
            await service.generate_values("Missing")
