"""Deterministic generator that fills fields without calling a model."""

import uuid
from typing import Any

from ai_database.generation.base import GenerationRequest
from ai_database.schema.parser import ParsedField

_TEXT_TYPES = frozenset({"string", "text", "markdown", "varchar", "char"})
_INT_TYPES = frozenset({"int", "long", "bigint"})
_FLOAT_TYPES = frozenset({"number", "float", "double", "decimal"})
_MAPPING_TYPES = frozenset({"json", "object", "map", "struct"})


class PlaceholderGenerator:
    """Generator producing predictable values from the request alone.

    The first text field of an entity takes the request hint when one is
    given, so a generated entity can be found again by text matching.
    Each generate() call advances a counter used to keep values distinct.
    """

    def __init__(self) -> None:
        self._counter = 0

    def _value(self, f: ParsedField, request: GenerationRequest, index: int, use_hint: bool) -> Any:
        entity = request.entity_type
        if f.type in _TEXT_TYPES or f.prompt:
            if use_hint and request.hint:
                return request.hint
            return f"{entity} {f.name} {index}"
        if f.type in _INT_TYPES:
            return index
        if f.type in _FLOAT_TYPES:
            return float(index)
        if f.type == "boolean":
            return False
        if f.type == "date":
            return "2024-01-01"
        if f.type in ("datetime", "timestamp", "timestamptz"):
            return "2024-01-01T00:00:00Z"
        if f.type == "time":
            return "00:00:00"
        if f.type == "uuid":
            return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{entity}/{f.name}/{index}"))
        if f.type == "url":
            return f"https://example.com/{entity.lower()}/{index}"
        if f.type == "email":
            return f"{entity.lower()}{index}@example.com"
        if f.type in _MAPPING_TYPES:
            return {}
        return f"{entity} {f.name} {index}"

    async def generate(
        self, directives: dict[str, Any], request: GenerationRequest
    ) -> dict[str, Any]:
        self._counter += 1

        values: dict[str, Any] = {}
        hint_used = False
        for f in request.fields:
            use_hint = not hint_used and (f.type in _TEXT_TYPES or f.prompt is not None)
            value = self._value(f, request, self._counter, use_hint)
            hint_used = hint_used or use_hint
            values[f.name] = [value] if f.is_array else value
        return values
