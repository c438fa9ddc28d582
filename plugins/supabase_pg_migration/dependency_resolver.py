"""
Foreign Key Dependency Resolution

Builds a dependency graph over the extracted tables and orders them so that
referenced (parent) tables come before the tables that reference them. The
order is used for table creation in the schema stage and for table transfer
in the data stage.

Cycles are not fatal. When the traversal meets a table that is still being
visited, the table under visit is emitted right away. Every table appears in
the output exactly once, but tables on a cycle have no defined order relative
to each other.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Set, Tuple, TypeVar
import logging
import warnings

from supabase_pg_migration.descriptors import TableDescriptor
from supabase_pg_migration.errors import DependencyCycleWarning

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=TableDescriptor)


@dataclass
class DependencyGraph:
    """Directed graph of child -> parent foreign key references."""
    nodes: List[str] = field(default_factory=list)
    edges: Dict[str, Set[str]] = field(default_factory=dict)

    def add_edge(self, child: str, parent: str) -> None:
        if child not in self.edges:
            self.edges[child] = set()
        self.edges[child].add(parent)

    def parents_of(self, table: str) -> List[str]:
        # Sorted so the traversal is deterministic
        return sorted(self.edges.get(table, ()))

    def edge_list(self) -> List[Tuple[str, str]]:
        return [(child, parent) for child in sorted(self.edges) for parent in sorted(self.edges[child])]


def build_dependency_graph(
    tables: Sequence[TableDescriptor],
    foreign_keys: Iterable[Tuple[str, str]],
) -> DependencyGraph:
    """
    Build the dependency graph for a table set.

    Args:
        tables: Extracted tables
        foreign_keys: (child, parent) pairs of qualified table names

    Returns:
        DependencyGraph containing only edges between tables of the set.
        References to excluded tables or to other schemas are dropped.
        Self references are dropped as well.
    """
    graph = DependencyGraph(nodes=[t.qualified_name for t in tables])
    known = set(graph.nodes)

    for child, parent in foreign_keys:
        if child not in known or parent not in known:
            logger.debug(f"Ignoring FK reference {child} -> {parent} (outside table set)")
            continue
        if child == parent:
            continue
        graph.add_edge(child, parent)

    return graph


def sort_by_dependency(tables: Sequence[T], graph: DependencyGraph) -> List[T]:
    """
    Order tables so parents precede children.

    Args:
        tables: Tables to order
        graph: Dependency graph built from the same table set

    Returns:
        A permutation of ``tables``
    """
    by_name: Dict[str, T] = {t.qualified_name: t for t in tables}
    ordered: List[T] = []
    visited: Set[str] = set()
    visiting: Set[str] = set()
    cycles: List[Tuple[str, str]] = []

    def visit(name: str) -> None:
        if name in visited:
            return
        visiting.add(name)

        for parent in graph.parents_of(name):
            if parent in visited or parent not in by_name:
                continue
            if parent in visiting:
                # Cycle: emit the current table without waiting for the parent
                cycles.append((name, parent))
                visiting.discard(name)
                visited.add(name)
                ordered.append(by_name[name])
                return
            visit(parent)

        visiting.discard(name)
        visited.add(name)
        ordered.append(by_name[name])

    for table in tables:
        visit(table.qualified_name)

    if cycles:
        description = ', '.join(f"{child} -> {parent}" for child, parent in cycles)
        message = f"Foreign key cycle detected; ordering is best effort for: {description}"
        logger.warning(message)
        warnings.warn(message, DependencyCycleWarning, stacklevel=2)

    return ordered


def resolve_table_order(
    tables: Sequence[T],
    foreign_keys: Iterable[Tuple[str, str]],
) -> List[T]:
    """Convenience wrapper: build the graph and sort in one call."""
    graph = build_dependency_graph(tables, foreign_keys)
    return sort_by_dependency(tables, graph)
