"""Schema grammar, graph building and schema analysis for ai-database."""

from ai_database.schema.dependency import (
    DependencyGraph,
    build_dependency_graph,
    detect_cycles,
    get_all_dependencies,
    get_parallel_groups,
    has_cycles,
    topological_sort,
    visualize_graph,
)
from ai_database.schema.diff import SchemaDiff, describe_diff, diff_graphs
from ai_database.schema.graph import (
    ParsedEntity,
    ParsedGraph,
    build_graph,
    synthesize_backrefs,
)
from ai_database.schema.parser import (
    OPERATOR_SEMANTICS,
    PRIMITIVE_TYPES,
    Direction,
    MatchMode,
    ParsedField,
    ParsedOperator,
    RelationshipOperator,
    invert_operator,
    is_primitive_type,
    parse_field,
    parse_operator,
)

__all__ = [
    # Parser
    "OPERATOR_SEMANTICS",
    "PRIMITIVE_TYPES",
    "Direction",
    "MatchMode",
    "ParsedField",
    "ParsedOperator",
    "RelationshipOperator",
    "invert_operator",
    "is_primitive_type",
    "parse_field",
    "parse_operator",
    # Graph
    "ParsedEntity",
    "ParsedGraph",
    "build_graph",
    "synthesize_backrefs",
    # Dependencies
    "DependencyGraph",
    "build_dependency_graph",
    "detect_cycles",
    "get_all_dependencies",
    "get_parallel_groups",
    "has_cycles",
    "topological_sort",
    "visualize_graph",
    # Diff
    "SchemaDiff",
    "describe_diff",
    "diff_graphs",
]
