"""Schema diff for ai-database.

Compares two parsed schema graphs to surface what changed between versions:
  - Added and removed entity types
  - Added, removed and changed fields per entity
  - Likely field renames (a removed and an added field with matching shape)
"""

from dataclasses import dataclass, field
from enum import StrEnum

from ai_database.schema.graph import ParsedEntity, ParsedGraph
from ai_database.schema.parser import ParsedField


class ChangeType(StrEnum):
    TYPE = "type"
    OPTIONAL = "optional"
    ARRAY = "array"
    RELATION = "relation"
    OPERATOR = "operator"
    MULTIPLE = "multiple"


@dataclass
class FieldChange:
    name: str
    change_type: ChangeType
    description: str
    old_field: ParsedField | None = None
    new_field: ParsedField | None = None


@dataclass
class PossibleRename:
    old_name: str
    new_name: str
    confidence: float
    reason: str


@dataclass
class EntityDiff:
    entity_name: str
    added_fields: list[ParsedField] = field(default_factory=list)
    removed_fields: list[ParsedField] = field(default_factory=list)
    changed_fields: list[FieldChange] = field(default_factory=list)
    possible_renames: list[PossibleRename] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added_fields or self.removed_fields or self.changed_fields)


@dataclass
class SchemaDiff:
    """Result of comparing an old schema graph against a new one."""

    added_entities: list[str] = field(default_factory=list)
    removed_entities: list[str] = field(default_factory=list)
    modified_entities: list[EntityDiff] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added_entities or self.removed_entities or self.modified_entities)

    @property
    def summary(self) -> str:
        if not self.has_changes:
            return "No changes detected"

        def _count(n: int, label: str) -> str:
            return f"{n} {label} entit{'y' if n == 1 else 'ies'}"

        parts = []
        if self.added_entities:
            parts.append(_count(len(self.added_entities), "added"))
        if self.removed_entities:
            parts.append(_count(len(self.removed_entities), "removed"))
        if self.modified_entities:
            parts.append(_count(len(self.modified_entities), "modified"))
        return ", ".join(parts)


def _compare_fields(old: ParsedField, new: ParsedField) -> list[FieldChange]:
    changes: list[FieldChange] = []

    def _add(change_type: ChangeType, description: str) -> None:
        changes.append(FieldChange(old.name, change_type, description, old, new))

    if old.type != new.type:
        _add(ChangeType.TYPE, f"Type changed from '{old.type}' to '{new.type}'")
    if old.is_optional != new.is_optional:
        _add(
            ChangeType.OPTIONAL,
            "Field changed from optional to required"
            if old.is_optional
            else "Field changed from required to optional",
        )
    if old.is_array != new.is_array:
        _add(
            ChangeType.ARRAY,
            "Field changed from array to single value"
            if old.is_array
            else "Field changed from single value to array",
        )
    if old.is_relation != new.is_relation:
        _add(
            ChangeType.RELATION,
            "Field changed from relation to primitive"
            if old.is_relation
            else "Field changed from primitive to relation",
        )
    if old.operator != new.operator:
        _add(
            ChangeType.OPERATOR,
            f"Operator changed from '{old.operator or 'none'}' to '{new.operator or 'none'}'",
        )
    return changes


def _detect_renames(removed: list[ParsedField], added: list[ParsedField]) -> list[PossibleRename]:
    """Pair removed and added fields whose shapes match closely enough to be renames."""
    renames: list[PossibleRename] = []
    for old in removed:
        for new in added:
            confidence = 0.0
            reasons: list[str] = []
            # Weighted shape comparison: the type carries most of the signal
            for matches, weight, reason in (
                (old.type == new.type, 0.5, "same type"),
                (old.is_relation == new.is_relation, 0.15, "same relation status"),
                (old.is_array == new.is_array, 0.15, "same array status"),
                (old.is_optional == new.is_optional, 0.1, "same optional status"),
                (old.operator == new.operator, 0.1, "same operator"),
            ):
                if matches:
                    confidence += weight
                    reasons.append(reason)
            if confidence >= 0.5:
                renames.append(
                    PossibleRename(old.name, new.name, round(confidence, 2), ", ".join(reasons))
                )
    renames.sort(key=lambda r: r.confidence, reverse=True)
    return renames


def _compare_entities(name: str, old: ParsedEntity, new: ParsedEntity) -> EntityDiff:
    result = EntityDiff(entity_name=name)
    result.added_fields = [f for n, f in new.fields.items() if n not in old.fields]
    result.removed_fields = [f for n, f in old.fields.items() if n not in new.fields]

    for field_name, old_field in old.fields.items():
        new_field = new.fields.get(field_name)
        if new_field is None:
            continue
        changes = _compare_fields(old_field, new_field)
        if len(changes) == 1:
            result.changed_fields.append(changes[0])
        elif changes:
            result.changed_fields.append(
                FieldChange(
                    field_name,
                    ChangeType.MULTIPLE,
                    "; ".join(c.description for c in changes),
                    old_field,
                    new_field,
                )
            )

    result.possible_renames = _detect_renames(result.removed_fields, result.added_fields)
    return result


def diff_graphs(old: ParsedGraph, new: ParsedGraph) -> SchemaDiff:
    """Compare two schema graphs.

    Args:
        old: The previous schema graph.
        new: The updated schema graph.

    Returns:
        A SchemaDiff listing entity- and field-level changes.
    """
    result = SchemaDiff()
    result.added_entities = [n for n in new.entities if n not in old.entities]
    result.removed_entities = [n for n in old.entities if n not in new.entities]

    for name, old_entity in old.entities.items():
        new_entity = new.entities.get(name)
        if new_entity is None:
            continue
        entity_diff = _compare_entities(name, old_entity, new_entity)
        if entity_diff.has_changes:
            result.modified_entities.append(entity_diff)
    return result


def describe_diff(diff: SchemaDiff) -> str:
    """Render a SchemaDiff as a human-readable change list."""
    if not diff.has_changes:
        return "No schema changes detected."

    lines = ["Schema Changes:", ""]
    if diff.added_entities:
        lines.append("Added Entities:")
        lines.extend(f"  + {name}" for name in diff.added_entities)
        lines.append("")
    if diff.removed_entities:
        lines.append("Removed Entities:")
        lines.extend(f"  - {name}" for name in diff.removed_entities)
        lines.append("")
    for entity_diff in diff.modified_entities:
        lines.append(f"Modified: {entity_diff.entity_name}")
        for f in entity_diff.added_fields:
            suffix = ("?" if f.is_optional else "") + ("[]" if f.is_array else "")
            lines.append(f"  + {f.name}: {f.type}{suffix}")
        for f in entity_diff.removed_fields:
            lines.append(f"  - {f.name}: {f.type}")
        for change in entity_diff.changed_fields:
            lines.append(f"  ~ {change.name}: {change.description}")
        for rename in entity_diff.possible_renames:
            lines.append(
                f"  ? {rename.old_name} -> {rename.new_name} "
                f"(confidence {rename.confidence:.0%}: {rename.reason})"
            )
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"
