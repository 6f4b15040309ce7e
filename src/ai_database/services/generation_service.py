"""Fills an entity's missing scalar fields through the Generator collaborator."""

from typing import Any

import logfire
from loguru import logger

from ai_database.errors import GenerationError
from ai_database.generation.base import Generator
from ai_database.generation.context import Ancestor, build_request
from ai_database.schema.graph import ParsedEntity, ParsedGraph
from ai_database.schema.parser import ParsedField


class GenerationService:
    """Decides which fields need values and asks the generator for them."""

    def __init__(self, graph: ParsedGraph, generator: Generator):
        self.graph = graph
        self.generator = generator

    def fields_to_generate(self, entity: ParsedEntity, data: dict[str, Any]) -> list[ParsedField]:
        """Scalar fields without a value that generation should fill.

        Optional plain fields and seed column mappings are left alone;
        prompt fields are always filled.
        """
        fields = []
        for f in entity.scalar_fields():
            if data.get(f.name) is not None or f.source_column:
                continue
            if f.is_optional and not f.is_prompt_field:
                continue
            fields.append(f)
        return fields

    @logfire.instrument()
    async def generate_values(
        self,
        entity_type: str,
        data: dict[str, Any] | None = None,
        *,
        ancestors: list[Ancestor] | None = None,
        prompt: str | None = None,
        hint: str | None = None,
    ) -> dict[str, Any]:
        """Return data completed with generated values. Provided values always win.

        Raises:
            GenerationError: If the generator fails or returns something other than a dict.
        """
        entity = self.graph.require_entity(entity_type)
        data = dict(data or {})
        fields = self.fields_to_generate(entity, data)
        if not fields:
            return data

        request = build_request(
            entity, fields, data=data, ancestors=ancestors, prompt=prompt, hint=hint
        )
        try:
            generated = await self.generator.generate(dict(entity.directives), request)
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(entity_type, str(exc)) from exc

        if not isinstance(generated, dict):
            raise GenerationError(
                entity_type, f"generator returned {type(generated).__name__}, expected dict"
            )
        logger.debug(f"Generated {len(generated)} fields for {entity_type}")
        return {**generated, **data}
