"""Generation-order dependencies between entity types.

A forward exact, non-optional relation (Post.author: '->User') is a hard
dependency: a User must exist before the Post that points at it. Fuzzy
relations and optional fields are soft dependencies (they can be matched or
filled later). Backward relations never create a dependency.
"""

from dataclasses import dataclass, field

from ai_database.errors import CircularDependencyError
from ai_database.schema.graph import ParsedGraph
from ai_database.schema.parser import RelationshipOperator, is_primitive_type


@dataclass
class DependencyNode:
    name: str
    depends_on: list[str] = field(default_factory=list)
    depended_on_by: list[str] = field(default_factory=list)
    soft_depends_on: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DependencyEdge:
    source: str
    target: str
    field_name: str
    operator: RelationshipOperator
    is_array: bool = False
    is_optional: bool = False


@dataclass
class DependencyGraph:
    nodes: dict[str, DependencyNode] = field(default_factory=dict)
    edges: list[DependencyEdge] = field(default_factory=list)

    def node(self, name: str) -> DependencyNode:
        if name not in self.nodes:
            self.nodes[name] = DependencyNode(name=name)
        return self.nodes[name]

    def _is_optional_edge(self, source: str, target: str) -> bool:
        edges = [e for e in self.edges if e.source == source and e.target == target]
        return bool(edges) and all(e.is_optional for e in edges)


def build_dependency_graph(graph: ParsedGraph) -> DependencyGraph:
    """Derive hard and soft dependencies from a parsed schema graph."""
    deps = DependencyGraph()
    for name in graph.entities:
        deps.node(name)

    for name, entity in graph.entities.items():
        for field_ in entity.relation_fields():
            target = field_.related_type
            if not target or is_primitive_type(target) or field_.operator is None:
                continue

            deps.edges.append(
                DependencyEdge(
                    source=name,
                    target=target,
                    field_name=field_.name,
                    operator=field_.operator,
                    is_array=field_.is_array,
                    is_optional=field_.is_optional,
                )
            )
            source_node = deps.node(name)
            target_node = deps.node(target)

            if field_.is_fuzzy or field_.is_optional:
                if target not in source_node.soft_depends_on:
                    source_node.soft_depends_on.append(target)
            elif field_.is_forward:
                if target not in source_node.depends_on:
                    source_node.depends_on.append(target)
                if name not in target_node.depended_on_by:
                    target_node.depended_on_by.append(name)
    return deps


def topological_sort(
    deps: DependencyGraph, root: str, ignore_optional: bool = False
) -> list[str]:
    """Order root and its hard dependencies so dependencies come first.

    Raises:
        CircularDependencyError: If the hard dependencies of root form a cycle.
    """
    visited: set[str] = set()
    visiting: set[str] = set()
    order: list[str] = []

    def visit(name: str, path: list[str]) -> None:
        if name in visited:
            return
        if name in visiting:
            start = path.index(name)
            raise CircularDependencyError(path[start:] + [name])

        visiting.add(name)
        node = deps.nodes.get(name)
        for dep in node.depends_on if node else []:
            if ignore_optional and deps._is_optional_edge(name, dep):
                continue
            visit(dep, path + [name])
        visiting.discard(name)
        visited.add(name)
        order.append(name)

    visit(root, [])
    return order


def detect_cycles(deps: DependencyGraph, ignore_optional: bool = False) -> list[list[str]]:
    """Return every hard-dependency cycle found, each as a closed path."""
    cycles: list[list[str]] = []
    visited: set[str] = set()
    stack: set[str] = set()

    def dfs(name: str, path: list[str]) -> None:
        if name in stack:
            start = path.index(name)
            cycles.append(path[start:] + [name])
            return
        if name in visited:
            return
        visited.add(name)
        stack.add(name)
        node = deps.nodes.get(name)
        for dep in node.depends_on if node else []:
            if ignore_optional and deps._is_optional_edge(name, dep):
                continue
            dfs(dep, path + [name])
        stack.discard(name)

    for name in list(deps.nodes):
        dfs(name, [])
    return cycles


def has_cycles(deps: DependencyGraph) -> bool:
    return bool(detect_cycles(deps))


def get_all_dependencies(deps: DependencyGraph, name: str) -> set[str]:
    """Transitive hard dependencies of an entity type."""
    collected: set[str] = set()
    pending = list(deps.nodes[name].depends_on) if name in deps.nodes else []
    while pending:
        dep = pending.pop()
        if dep in collected:
            continue
        collected.add(dep)
        if dep in deps.nodes:
            pending.extend(deps.nodes[dep].depends_on)
    return collected


def get_parallel_groups(deps: DependencyGraph, root: str) -> list[list[str]]:
    """Group root's dependency closure into batches that can be generated together.

    Each group only depends on types from earlier groups. Types caught in a
    cycle are left out.
    """
    relevant = {root} | get_all_dependencies(deps, root)
    in_degree = {
        name: sum(1 for dep in deps.nodes[name].depends_on if dep in relevant)
        if name in deps.nodes
        else 0
        for name in relevant
    }

    groups: list[list[str]] = []
    while in_degree:
        group = sorted(name for name, degree in in_degree.items() if degree == 0)
        if not group:
            break
        groups.append(group)
        for name in group:
            del in_degree[name]
            for dependent in deps.nodes[name].depended_on_by if name in deps.nodes else []:
                if dependent in in_degree:
                    in_degree[dependent] -= 1
    return groups


def visualize_graph(deps: DependencyGraph) -> str:
    """Render the dependency graph as indented text for debugging."""
    lines = ["Dependency Graph:", ""]
    for name, node in deps.nodes.items():
        lines.append(f"{name}:")
        if node.depends_on:
            lines.append(f"  -> {', '.join(node.depends_on)} (hard deps)")
        if node.soft_depends_on:
            lines.append(f"  ~> {', '.join(node.soft_depends_on)} (soft deps)")
        if node.depended_on_by:
            lines.append(f"  <- {', '.join(node.depended_on_by)} (depended on by)")
        if not node.depends_on and not node.soft_depends_on:
            lines.append("  (no dependencies)")
        lines.append("")
    return "\n".join(lines)
