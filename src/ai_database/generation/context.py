"""Prompt context assembly and {placeholder} interpolation.

Templates may reference values that are already known when an entity is
generated:
  {name}            field of the entity being generated (provided values)
  {parent.name}     field of the entity that spawned this one
  {parent.parent.x} further up the chain
  {Company.name}    nearest ancestor of type Company

Unresolvable references are left as written.
"""

import re
from dataclasses import replace
from typing import Any

from ai_database.generation.base import GenerationRequest
from ai_database.schema.graph import ParsedEntity
from ai_database.schema.parser import ParsedField

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)\}")

type Ancestor = tuple[str, dict[str, Any]]


def build_scope(
    data: dict[str, Any] | None = None,
    ancestors: list[Ancestor] | None = None,
) -> dict[str, Any]:
    """Build the lookup scope for interpolation.

    Args:
        data: Values of the entity being generated.
        ancestors: (type, record) pairs from the root down to the direct parent.
    """
    parent_scope: dict[str, Any] | None = None
    by_type: dict[str, dict[str, Any]] = {}
    for entity_type, record in ancestors or []:
        scope = dict(record)
        if parent_scope is not None:
            scope["parent"] = parent_scope
        parent_scope = scope
        by_type[entity_type] = scope  # nearer ancestors overwrite farther ones

    scope = {**by_type, **(data or {})}
    if parent_scope is not None:
        scope["parent"] = parent_scope
    return scope


def _lookup(scope: dict[str, Any], path: str) -> Any:
    value: Any = scope
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def interpolate(template: str, scope: dict[str, Any]) -> str:
    """Replace {path} references with values from scope."""

    def _replace(match: re.Match) -> str:
        value = _lookup(scope, match.group(1))
        if value is None or isinstance(value, dict):
            return match.group(0)
        if isinstance(value, list):
            return ", ".join(str(v) for v in value)
        return str(value)

    return _PLACEHOLDER_RE.sub(_replace, template)


def _directive_text(value: Any, scope: dict[str, Any]) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = "\n".join(str(v) for v in value)
    return interpolate(str(value), scope)


def build_request(
    entity: ParsedEntity,
    fields: list[ParsedField],
    *,
    data: dict[str, Any] | None = None,
    ancestors: list[Ancestor] | None = None,
    prompt: str | None = None,
    hint: str | None = None,
) -> GenerationRequest:
    """Assemble a GenerationRequest for an entity, interpolating directives and prompts."""
    scope = build_scope(data, ancestors)
    parent_type, parent_data = ancestors[-1] if ancestors else (None, None)
    fields = [replace(f, prompt=interpolate(f.prompt, scope)) if f.prompt else f for f in fields]
    return GenerationRequest(
        entity_type=entity.name,
        fields=fields,
        prompt=interpolate(prompt, scope) if prompt else None,
        hint=interpolate(hint, scope) if hint else None,
        instructions=_directive_text(entity.directives.get("$instructions"), scope),
        context=_directive_text(entity.directives.get("$context"), scope),
        parent_type=parent_type,
        parent_data=parent_data,
        existing={k: v for k, v in (data or {}).items() if not k.startswith("$")},
    )
