"""Entity graph builder.

Parses every entity of a schema into a ParsedGraph, validates operator
references, and synthesizes inverse (backref) fields so both ends of a
relationship are navigable.

Schema shape:
  {
    "Post": {"title": "string", "author": "->User.posts"},
    "User": {"name": "string"},
    "Person": "https://schema.org/Person",      # type URI only
  }

After building, User gains a synthesized 'posts' field ('<-Post', array,
backref 'author'). A field the user declared always wins over a synthesized one.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from loguru import logger

from ai_database.errors import ParseError, SchemaError
from ai_database.schema.parser import ParsedField, invert_operator, parse_field


# --- Data Model ---


@dataclass
class ParsedEntity:
    """A parsed entity definition.

    directives holds every $-prefixed key except $type ($instructions,
    $context, $seed, $id, $fuzzyThreshold, ...). They are opaque here.
    """

    name: str
    fields: dict[str, ParsedField] = field(default_factory=dict)
    directives: dict[str, object] = field(default_factory=dict)
    type_uri: str | None = None

    def relation_fields(self) -> list[ParsedField]:
        return [f for f in self.fields.values() if f.is_relation]

    def forward_relations(self) -> list[ParsedField]:
        return [f for f in self.fields.values() if f.is_relation and f.is_forward]

    def scalar_fields(self) -> list[ParsedField]:
        return [f for f in self.fields.values() if not f.is_relation]


@dataclass
class ParsedGraph:
    """All parsed entities of a schema.

    Built once per schema and mutated only by backref synthesis; read-only
    afterwards.
    """

    entities: dict[str, ParsedEntity] = field(default_factory=dict)
    type_uris: dict[str, str] = field(default_factory=dict)

    def get_entity(self, name: str) -> ParsedEntity | None:
        return self.entities.get(name)

    def has_entity(self, name: str) -> bool:
        return name in self.entities

    def require_entity(self, name: str) -> ParsedEntity:
        entity = self.entities.get(name)
        if entity is None:
            raise SchemaError(f"Unknown entity type: {name}")
        return entity

    def entity_names(self) -> list[str]:
        return list(self.entities)

    def get_relationship_fields(self, entity_name: str) -> list[ParsedField]:
        entity = self.entities.get(entity_name)
        return entity.relation_fields() if entity else []

    def get_referencing_entities(self, target: str) -> list[tuple[str, ParsedField]]:
        """Return (entity name, field) pairs whose relations point at target."""
        references: list[tuple[str, ParsedField]] = []
        for entity in self.entities.values():
            for field_ in entity.relation_fields():
                if target in field_.target_types:
                    references.append((entity.name, field_))
        return references

    def inverse_field_name(self, entity_name: str, field_name: str) -> str | None:
        """Name of the field on the target entity that mirrors this relation.

        Uses the declared backref first, then looks for a field on the target
        pointing back at entity_name with the opposite direction.
        """
        entity = self.entities.get(entity_name)
        field_ = entity.fields.get(field_name) if entity else None
        if field_ is None or not field_.is_relation:
            return None
        if field_.backref:
            return field_.backref

        target = self.entities.get(field_.related_type or "")
        if target is None:
            return None
        for candidate in target.relation_fields():
            if candidate.direction is field_.direction:
                continue
            if entity_name not in candidate.target_types:
                continue
            if candidate.backref in (None, field_name):
                return candidate.name
        return None


# --- Building ---


def _parse_entity(name: str, definition: str | Mapping) -> tuple[ParsedEntity, str | None]:
    if isinstance(definition, str):
        # A bare string is a type URI such as 'https://schema.org/Person'
        return ParsedEntity(name=name, type_uri=definition), definition

    if not isinstance(definition, Mapping):
        raise SchemaError(
            f"Entity {name} must be a mapping of fields or a type URI, "
            f"got {type(definition).__name__}"
        )

    entity = ParsedEntity(name=name)
    for key, value in definition.items():
        if key == "$type":
            entity.type_uri = str(value)
            continue
        if key.startswith("$"):
            entity.directives[key] = value
            continue
        try:
            entity.fields[key] = parse_field(key, value)
        except ParseError as exc:
            raise exc.with_location(f"{name}.{key}") from exc
    return entity, entity.type_uri


def _validate_references(graph: ParsedGraph) -> None:
    """Reject operator references to entity types the schema does not declare.

    Implicit references such as 'Author.posts' are not checked. A union is
    checked only once one of its members is declared, and then every member
    must be.
    """
    for entity in graph.entities.values():
        for field_ in entity.relation_fields():
            if field_.is_implicit:
                continue
            targets = field_.target_types
            # Trigger: a union type such as 'Person|ExternalThing'
            # Why: a union of only external types names types defined elsewhere
            # Outcome: skip it; once any member is declared, all must be
            if field_.union_types and not any(t in graph.entities for t in targets):
                continue
            for target in targets:
                # Self references are always valid
                if target != entity.name and target not in graph.entities:
                    raise SchemaError(
                        f"{entity.name}.{field_.name} references undefined type {target!r}"
                    )


def synthesize_backrefs(graph: ParsedGraph) -> list[tuple[str, str]]:
    """Add inverse fields for every relation that declares a backref.

    For each relation field A.f -> B with backref g, B.g is added when B has
    no field named g. Existing fields always win. Running this again on the
    same graph adds nothing.

    Returns:
        The (entity, field) pairs that were synthesized.
    """
    synthesized: list[tuple[str, str]] = []
    for entity in list(graph.entities.values()):
        for field_ in list(entity.fields.values()):
            if not field_.is_relation or not field_.backref or field_.operator is None:
                continue
            target = graph.entities.get(field_.related_type or "")
            if target is None or field_.backref in target.fields:
                continue

            operator = invert_operator(field_.operator)
            inverse = parse_field(field_.backref, f"{operator.value}{entity.name}.{field_.name}[]")
            target.fields[field_.backref] = inverse
            synthesized.append((target.name, field_.backref))
            logger.debug(
                f"Synthesized backref {target.name}.{field_.backref} "
                f"({operator.value}{entity.name}) from {entity.name}.{field_.name}"
            )
    return synthesized


def build_graph(
    schema: Mapping[str, str | Mapping],
    *,
    validate_references: bool = True,
) -> ParsedGraph:
    """Parse a schema into a ParsedGraph.

    Args:
        schema: Mapping of entity name to field definitions or a type URI.
        validate_references: Reject relations to undeclared entity types.

    Returns:
        The normalized graph with backrefs synthesized.

    Raises:
        ParseError: If any field definition is malformed (with Entity.field location).
        SchemaError: If a relation references an undeclared type.
    """
    graph = ParsedGraph()
    for name, definition in schema.items():
        entity, type_uri = _parse_entity(name, definition)
        graph.entities[name] = entity
        if type_uri:
            graph.type_uris[name] = type_uri

    if validate_references:
        _validate_references(graph)

    synthesized = synthesize_backrefs(graph)
    logger.debug(
        f"Built schema graph: entities={len(graph.entities)}, "
        f"synthesized_backrefs={len(synthesized)}"
    )
    return graph
