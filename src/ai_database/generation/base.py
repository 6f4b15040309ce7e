"""Generation collaborator contract.

The cascade engine and resolver never talk to a model directly. They build a
GenerationRequest describing which fields to fill and hand it, together with
the target entity's directives, to a Generator.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from ai_database.schema.parser import ParsedField


@dataclass
class GenerationRequest:
    """Everything a generator needs to fill one entity's fields."""

    entity_type: str
    fields: list[ParsedField] = field(default_factory=list)
    prompt: str | None = None  # Relationship prompt that led to this entity
    hint: str | None = None  # Caller-supplied description of the wanted entity
    instructions: str | None = None
    context: str | None = None
    parent_type: str | None = None
    parent_data: dict[str, Any] | None = None
    existing: dict[str, Any] = field(default_factory=dict)  # Values already provided

    def render(self) -> str:
        """Render the request as a plain-text prompt."""
        lines = [f"Generate a {self.entity_type}."]
        if self.prompt:
            lines.append(self.prompt)
        if self.hint and self.hint != self.prompt:
            lines.append(f"Description: {self.hint}")
        if self.instructions:
            lines.append(f"Context: {self.instructions}")
        if self.context:
            lines.append(self.context)
        if self.parent_data:
            lines.append(f"Parent entity ({self.parent_type}):")
            for key, value in self.parent_data.items():
                if isinstance(value, str) and not key.startswith("$") and value:
                    lines.append(f"  {key}: {value}")
        if self.existing:
            lines.append("Known values:")
            for key, value in self.existing.items():
                if not key.startswith("$"):
                    lines.append(f"  {key}: {value}")
        lines.append("Fields:")
        for f in self.fields:
            kind = f"{f.type}[]" if f.is_array else f.type
            description = f" - {f.prompt}" if f.prompt else ""
            lines.append(f"  {f.name} ({kind}){description}")
        return "\n".join(lines)


class Generator(Protocol):
    """Produces field values for a new entity."""

    async def generate(
        self, directives: dict[str, Any], request: GenerationRequest
    ) -> dict[str, Any]:
        """Return values for the requested fields."""
        ...
