"""Field grammar parser for ai-database schemas.

Parses the terse field strings used in entity schemas into immutable
ParsedField values. The grammar covers scalars, parametric types,
relationship operators and seed column mappings.

Syntax reference:
  name: 'string'                          # scalar
  name: 'string?'                         # optional
  email: 'string!#'                       # required + unique, indexed
  tags: 'string[]'  or  ['string']        # array
  price: 'decimal(10,2)'                  # parametric
  meta: 'map<string,int>'                 # generic
  author: '->Author.posts'                # forward exact relation, backref "posts"
  category: 'Pick one ~>Category(0.7)'    # prompt + forward fuzzy with threshold
  posts: '<-Post.author'                  # backward exact
  occupation: '<~Occupation'              # backward fuzzy (grounding)
  owner: 'Person|Company'                 # implicit forward relation over a union
  bio: 'Write a short biography'          # prompt field
  title: '$.title'                        # seed column mapping
"""

import math
import re
from dataclasses import dataclass, replace
from enum import StrEnum

from ai_database.errors import ParseError


# --- Operators ---


class RelationshipOperator(StrEnum):
    FORWARD_EXACT = "->"
    FORWARD_FUZZY = "~>"
    BACKWARD_EXACT = "<-"
    BACKWARD_FUZZY = "<~"


class Direction(StrEnum):
    FORWARD = "forward"
    BACKWARD = "backward"


class MatchMode(StrEnum):
    EXACT = "exact"
    FUZZY = "fuzzy"


@dataclass(frozen=True)
class OperatorSemantics:
    direction: Direction
    match_mode: MatchMode


OPERATOR_SEMANTICS: dict[RelationshipOperator, OperatorSemantics] = {
    RelationshipOperator.FORWARD_EXACT: OperatorSemantics(Direction.FORWARD, MatchMode.EXACT),
    RelationshipOperator.FORWARD_FUZZY: OperatorSemantics(Direction.FORWARD, MatchMode.FUZZY),
    RelationshipOperator.BACKWARD_EXACT: OperatorSemantics(Direction.BACKWARD, MatchMode.EXACT),
    RelationshipOperator.BACKWARD_FUZZY: OperatorSemantics(Direction.BACKWARD, MatchMode.FUZZY),
}

_INVERSE_OPERATORS = {
    RelationshipOperator.FORWARD_EXACT: RelationshipOperator.BACKWARD_EXACT,
    RelationshipOperator.BACKWARD_EXACT: RelationshipOperator.FORWARD_EXACT,
    RelationshipOperator.FORWARD_FUZZY: RelationshipOperator.BACKWARD_FUZZY,
    RelationshipOperator.BACKWARD_FUZZY: RelationshipOperator.FORWARD_FUZZY,
}


def invert_operator(operator: RelationshipOperator) -> RelationshipOperator:
    """Return the operator seen from the other end of a relationship."""
    return _INVERSE_OPERATORS[operator]


# --- Built-in types ---

PRIMITIVE_TYPES = frozenset(
    {
        "string",
        "text",
        "markdown",
        "url",
        "email",
        "number",
        "int",
        "long",
        "bigint",
        "float",
        "double",
        "decimal",
        "boolean",
        "date",
        "datetime",
        "timestamp",
        "timestamptz",
        "time",
        "uuid",
        "binary",
        "json",
        "object",
        "array",
    }
)

# Types that accept (n) or <T> parameters
PARAMETRIC_TYPES = frozenset(
    {"decimal", "varchar", "char", "fixed", "map", "struct", "enum", "ref", "list"}
)

TYPE_ALIASES = {"bool": "boolean"}


def is_primitive_type(type_name: str) -> bool:
    """True for built-in scalar and parametric type names (aliases included)."""
    resolved = TYPE_ALIASES.get(type_name, type_name)
    return resolved in PRIMITIVE_TYPES or resolved in PARAMETRIC_TYPES


# --- Data Model ---


@dataclass(frozen=True)
class ParsedField:
    """A single parsed field definition.

    Produced only by parse_field. is_relation, operator and related_type are
    either all set or all unset.
    """

    name: str
    type: str
    is_array: bool = False
    is_optional: bool = False
    is_relation: bool = False
    is_required: bool = False
    is_unique: bool = False
    is_indexed: bool = False
    related_type: str | None = None
    backref: str | None = None
    operator: RelationshipOperator | None = None
    direction: Direction | None = None
    match_mode: MatchMode | None = None
    threshold: float | None = None
    union_types: tuple[str, ...] | None = None
    prompt: str | None = None  # Free text before the operator, or the whole prompt field
    # Parametric type details
    precision: int | None = None
    scale: int | None = None
    length: int | None = None
    key_type: str | None = None
    value_type: str | None = None
    struct_name: str | None = None
    enum_name: str | None = None
    ref_target: str | None = None
    element_type: str | None = None
    source_column: str | None = None  # '$.column' seed mapping
    is_implicit: bool = False  # relation written without an operator, e.g. 'Author.posts'

    @property
    def is_forward(self) -> bool:
        return self.direction is Direction.FORWARD

    @property
    def is_backward(self) -> bool:
        return self.direction is Direction.BACKWARD

    @property
    def is_fuzzy(self) -> bool:
        return self.match_mode is MatchMode.FUZZY

    @property
    def is_prompt_field(self) -> bool:
        return self.prompt is not None and not self.is_relation

    @property
    def target_types(self) -> tuple[str, ...]:
        """All candidate target types, in declaration order."""
        if self.union_types:
            return self.union_types
        return (self.related_type,) if self.related_type else ()


@dataclass(frozen=True)
class ParsedOperator:
    """Operator portion of a relationship definition."""

    operator: RelationshipOperator
    direction: Direction
    match_mode: MatchMode
    target_types: tuple[str, ...]
    prompt: str | None = None
    backref: str | None = None
    threshold: float | None = None
    is_array: bool = False
    is_optional: bool = False
    is_required: bool = False
    is_indexed: bool = False


@dataclass(frozen=True)
class _Modifiers:
    is_array: bool = False
    is_optional: bool = False
    is_required: bool = False
    is_indexed: bool = False

    def merge(self, other: "_Modifiers") -> "_Modifiers":
        return _Modifiers(
            is_array=self.is_array or other.is_array,
            is_optional=self.is_optional or other.is_optional,
            is_required=self.is_required or other.is_required,
            is_indexed=self.is_indexed or other.is_indexed,
        )


# --- Lexical helpers ---

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_IMPLICIT_RELATION_RE = re.compile(
    r"^[A-Z][A-Za-z0-9_]*(\|[A-Z][A-Za-z0-9_]*)*(\.[A-Za-z_][A-Za-z0-9_]*)?$"
)
_THRESHOLD_RE = re.compile(r"^([^()]*)\(([^()]*)\)([^()]*)$")
_PAREN_TYPE_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\(([^()]*)\)$")
_GENERIC_TYPE_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)<(.*)>$")
# Type syntax that carries whitespace, e.g. "decimal(10, 2)", "map<string, int>" or "string ?"
_SPACED_TYPE_RE = re.compile(
    r"^(?P<base>[A-Za-z_][A-Za-z0-9_]*)(?P<params>\([^()]*\)|<.*>)?(\s*\[\s*\])?[\s?!#]*$"
)

_OPERATORS = tuple(RelationshipOperator)


def _is_spaced_type(text: str) -> bool:
    match = _SPACED_TYPE_RE.match(text)
    if match is None:
        return False
    return match.group("params") is not None or is_primitive_type(match.group("base"))


def _unexpected_character(text: str) -> str:
    for char in text:
        if not (char.isalnum() or char == "_"):
            return char
    return text[:1]


def _require_identifier(text: str, definition: object, what: str) -> str:
    text = text.strip()
    if not text:
        raise ParseError(definition, f"missing {what}")
    if not _IDENTIFIER_RE.match(text):
        raise ParseError(
            definition,
            f"unknown operator character {_unexpected_character(text)!r} in {what} {text!r}",
        )
    return text


def _strip_modifiers(text: str, definition: object) -> tuple[str, _Modifiers]:
    """Peel trailing [] ? ! # modifiers off a type expression.

    Returns the remaining text and the modifiers found.
    """
    seen: set[str] = set()
    while True:
        if text.endswith("[]"):
            token = "[]"
        elif text[-1:] in ("?", "!", "#"):
            token = text[-1]
        else:
            break
        if token in seen:
            raise ParseError(definition, f"duplicate modifier {token!r}")
        seen.add(token)
        text = text[: -len(token)].rstrip()

    modifiers = _Modifiers(
        is_array="[]" in seen,
        is_optional="?" in seen,
        is_required="!" in seen,
        is_indexed="#" in seen,
    )
    return text, modifiers


def _check_modifiers(modifiers: _Modifiers, definition: object) -> None:
    if modifiers.is_optional and modifiers.is_required:
        raise ParseError(definition, "a field cannot be both optional (?) and required (!)")


def _parse_threshold(raw: str, definition: object) -> float:
    try:
        value = float(raw.strip())
    except ValueError:
        raise ParseError(definition, f"threshold {raw.strip()!r} is not a number") from None

    # Trigger: float() accepts 'nan' and 'inf'
    # Why: those would make every comparison against a similarity score meaningless
    # Outcome: reject anything that is not a finite value in [0, 1]
    if not math.isfinite(value) or not 0.0 <= value <= 1.0:
        raise ParseError(definition, f"threshold {raw.strip()} must be between 0 and 1")
    return value


def _parse_int_param(raw: str, definition: object) -> int:
    raw = raw.strip()
    if not raw.isdigit():
        raise ParseError(definition, f"type parameter {raw!r} must be a non-negative integer")
    return int(raw)


def _split_top_level(text: str, separator: str = ",") -> list[str]:
    """Split on separator, ignoring separators nested inside <...>."""
    parts: list[str] = []
    depth = 0
    current = ""
    for char in text:
        if char == "<":
            depth += 1
        elif char == ">":
            depth -= 1
        if char == separator and depth == 0:
            parts.append(current.strip())
            current = ""
        else:
            current += char
    parts.append(current.strip())
    return parts


def _find_operator(definition: str) -> tuple[int, RelationshipOperator] | None:
    """Locate the leftmost relationship operator in a definition."""
    found: tuple[int, RelationshipOperator] | None = None
    for operator in _OPERATORS:
        index = definition.find(operator.value)
        if index >= 0 and (found is None or index < found[0]):
            found = (index, operator)
    return found


# --- Relationship parsing ---


def _parse_relation_target(
    operator: RelationshipOperator,
    target: str,
    definition: object,
    prompt: str | None = None,
) -> ParsedOperator:
    """Parse 'Type[|Type...][.backref][(threshold)]' plus trailing modifiers."""
    semantics = OPERATOR_SEMANTICS[operator]
    text, modifiers = _strip_modifiers(target.strip(), definition)

    threshold = None
    if "(" in text or ")" in text:
        match = _THRESHOLD_RE.match(text)
        if not match:
            raise ParseError(definition, "unbalanced or nested parentheses")
        if semantics.match_mode is MatchMode.EXACT:
            raise ParseError(definition, "a threshold is only valid on fuzzy operators (~>, <~)")
        before, raw_threshold, after = match.groups()
        threshold = _parse_threshold(raw_threshold, definition)
        # Modifiers may sit either side of the threshold: '~>Tag(0.8)[]' or '~>Tag[](0.8)'
        before, inner_modifiers = _strip_modifiers(before.strip(), definition)
        after, trailing_modifiers = _strip_modifiers(after.strip(), definition)
        modifiers = modifiers.merge(inner_modifiers).merge(trailing_modifiers)
        text = before + after

    _check_modifiers(modifiers, definition)

    text = text.strip()
    if not text:
        raise ParseError(definition, f"operator {operator.value!r} has no target type")

    backref = None
    if "." in text:
        text, backref_text = text.split(".", 1)
        backref = _require_identifier(backref_text, definition, "backref")

    target_types = tuple(
        _require_identifier(part, definition, "target type") for part in text.split("|")
    )

    return ParsedOperator(
        operator=operator,
        direction=semantics.direction,
        match_mode=semantics.match_mode,
        target_types=target_types,
        prompt=prompt,
        backref=backref,
        threshold=threshold,
        is_array=modifiers.is_array,
        is_optional=modifiers.is_optional,
        is_required=modifiers.is_required,
        is_indexed=modifiers.is_indexed,
    )


def parse_operator(definition: str) -> ParsedOperator | None:
    """Parse the relationship portion of a definition.

    Returns None when the definition contains no relationship operator.
    Free text before the operator is returned as the prompt.

    Examples:
        '->Author.posts'          -> FORWARD_EXACT, ('Author',), backref 'posts'
        'Best fit ~>Category(0.7)' -> FORWARD_FUZZY, prompt 'Best fit', threshold 0.7
    """
    found = _find_operator(definition)
    if found is None:
        return None
    index, operator = found
    prompt = definition[:index].strip() or None
    target = definition[index + len(operator.value) :]
    return _parse_relation_target(operator, target, definition, prompt)


def _relation_field(name: str, parsed: ParsedOperator, is_array: bool) -> ParsedField:
    related_type = parsed.target_types[0]
    return ParsedField(
        name=name,
        type=related_type,
        is_array=is_array or parsed.is_array,
        is_optional=parsed.is_optional,
        is_relation=True,
        is_required=parsed.is_required,
        is_unique=parsed.is_required,
        is_indexed=parsed.is_indexed,
        related_type=related_type,
        backref=parsed.backref,
        operator=parsed.operator,
        direction=parsed.direction,
        match_mode=parsed.match_mode,
        threshold=parsed.threshold,
        union_types=parsed.target_types if len(parsed.target_types) > 1 else None,
        prompt=parsed.prompt,
    )


# --- Scalar parsing ---


def _parse_parenthesized(base: str, params: str, definition: object) -> dict:
    type_name = TYPE_ALIASES.get(base, base)
    args = [arg.strip() for arg in params.split(",")]

    if type_name == "decimal":
        if not 1 <= len(args) <= 2:
            raise ParseError(definition, "decimal takes (precision) or (precision, scale)")
        precision = _parse_int_param(args[0], definition)
        scale = _parse_int_param(args[1], definition) if len(args) == 2 else None
        if scale is not None and scale > precision:
            raise ParseError(definition, f"decimal scale {scale} exceeds precision {precision}")
        return {"type": "decimal", "precision": precision, "scale": scale}

    if type_name in ("varchar", "char", "fixed"):
        if len(args) != 1:
            raise ParseError(definition, f"{type_name} takes exactly one length parameter")
        return {"type": type_name, "length": _parse_int_param(args[0], definition)}

    raise ParseError(definition, f"type {type_name!r} does not take (...) parameters")


def _parse_generic(base: str, params: str, definition: object) -> dict:
    args = _split_top_level(params)
    if any(not arg for arg in args):
        raise ParseError(definition, f"{base}<...> has an empty type parameter")

    if base == "map":
        if len(args) != 2:
            raise ParseError(definition, "map takes exactly two type parameters: map<K,V>")
        return {"type": "map", "key_type": args[0], "value_type": args[1]}

    if len(args) != 1:
        raise ParseError(definition, f"{base} takes exactly one type parameter")
    arg = args[0]

    if base == "list":
        return {"type": "list", "element_type": arg}

    if base in ("struct", "enum", "ref"):
        _require_identifier(arg, definition, f"{base} name")
        key = {"struct": "struct_name", "enum": "enum_name", "ref": "ref_target"}[base]
        return {"type": base, key: arg}

    raise ParseError(definition, f"type {base!r} does not take <...> parameters")


def _parse_scalar(name: str, text: str, definition: object, is_array: bool) -> ParsedField:
    text, modifiers = _strip_modifiers(text, definition)
    _check_modifiers(modifiers, definition)
    if not text:
        raise ParseError(definition, "missing type")

    flags = {
        "is_array": is_array or modifiers.is_array,
        "is_optional": modifiers.is_optional,
        "is_required": modifiers.is_required,
        "is_unique": modifiers.is_required,
        "is_indexed": modifiers.is_indexed,
    }

    # --- Parametric types ---
    paren_match = _PAREN_TYPE_RE.match(text)
    if paren_match:
        details = _parse_parenthesized(paren_match.group(1), paren_match.group(2), definition)
        return ParsedField(name=name, **details, **flags)

    generic_match = _GENERIC_TYPE_RE.match(text)
    if generic_match:
        details = _parse_generic(generic_match.group(1), generic_match.group(2), definition)
        return ParsedField(name=name, **details, **flags)

    # --- Implicit relations ---
    # Trigger: a PascalCase name that is not a built-in type, e.g. 'Author' or 'Author.posts'
    # Why: relation fields always carry an operator downstream
    # Outcome: parse as if written '->Author.posts'
    if _IMPLICIT_RELATION_RE.match(text) and not is_primitive_type(text.split(".")[0]):
        parsed = _parse_relation_target(RelationshipOperator.FORWARD_EXACT, text, definition)
        field_ = _relation_field(name, parsed, flags["is_array"])
        return replace(
            field_,
            is_implicit=True,
            is_optional=modifiers.is_optional,
            is_required=modifiers.is_required,
            is_unique=modifiers.is_required,
            is_indexed=modifiers.is_indexed,
        )

    type_name = TYPE_ALIASES.get(text, text)
    if not _IDENTIFIER_RE.match(type_name):
        raise ParseError(
            definition,
            f"unknown operator character {_unexpected_character(type_name)!r} in {type_name!r}",
        )
    return ParsedField(name=name, type=type_name, **flags)


# --- Main Parser ---


def parse_field(name: str, definition: str | list[str] | tuple[str, ...]) -> ParsedField:
    """Parse a single field definition into a ParsedField.

    Args:
        name: The field name the definition belongs to.
        definition: A field string, or a one-element list wrapping one to mark
            an array (['->Tag'] is equivalent to '->Tag[]').

    Returns:
        The parsed field. Parsing is pure: the same input always yields an
        equal ParsedField.

    Raises:
        ParseError: If the definition does not match the field grammar.
    """
    is_array = False
    if isinstance(definition, (list, tuple)):
        if len(definition) != 1 or not isinstance(definition[0], str):
            raise ParseError(definition, "array definitions must wrap exactly one field string")
        is_array = True
        text = definition[0]
    elif isinstance(definition, str):
        text = definition
    else:
        raise ParseError(definition, f"expected a string, got {type(definition).__name__}")

    text = text.strip()
    if not text:
        raise ParseError(definition, "empty field definition")

    # --- Relationship operators ---
    parsed = parse_operator(text)
    if parsed is not None:
        return _relation_field(name, parsed, is_array)

    # --- Prompt fields ---
    # Free text is a generation prompt; its punctuation is not grammar
    if any(char.isspace() for char in text):
        if not _is_spaced_type(text):
            return ParsedField(name=name, type="string", is_array=is_array, prompt=text)
        text = "".join(text.split())

    # --- Seed column mapping ---
    if text.startswith("$."):
        column = text[2:]
        if not column:
            raise ParseError(definition, "seed mapping '$.' needs a column name")
        return ParsedField(name=name, type="string", is_array=is_array, source_column=column)

    # --- Type URIs ---
    if text.startswith(("http://", "https://")):
        return ParsedField(name=name, type=text, is_array=is_array)

    return _parse_scalar(name, text, definition, is_array)
