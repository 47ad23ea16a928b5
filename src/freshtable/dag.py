"""DAG resolution for raw and dynamic table dependencies.

Builds a dependency graph from table definitions and provides:
- Topological sort for correct refresh order
- Cycle, missing-upstream and duplicate-name detection
- Upstream/downstream dependency queries
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import freshtable.errors as errors

if TYPE_CHECKING:
    import freshtable.core as core


@dataclass
class DAGNode:
    """A node in the table dependency graph."""

    name: str
    table: core.RawTable | core.DynamicTable
    upstream: list[str] = field(default_factory=list)
    downstream: list[str] = field(default_factory=list)


class DAG:
    """Dependency graph for refresh ordering.

    Edges point from a source relation to the dynamic tables reading it.

    Example:
        dag = DAG()
        dag.add_tables([transactions_raw, transactions_clean, daily_summary])
        order = dag.topological_sort()
        # ["transactions_raw", "transactions_clean", "daily_summary"]
    """

    def __init__(self) -> None:
        self._nodes: dict[str, DAGNode] = {}

    def add_table(self, table: core.RawTable | core.DynamicTable) -> None:
        """Add a single table to the DAG.

        Raises:
            DefinitionError: If a different table with the same name exists.
        """
        existing = self._nodes.get(table.name)
        if existing is not None and existing.table is not table:
            raise errors.DefinitionError(
                context=f"Registering table '{table.name}'",
                cause="Two different definitions share this name",
                fix="Rename one of the tables; names are unique across raw and dynamic tables.",
            )

        upstream = list(table.upstream_names)
        node = DAGNode(name=table.name, table=table, upstream=upstream)
        if existing is not None:
            node.downstream = existing.downstream
        self._nodes[table.name] = node

        for dep_name in upstream:
            if dep_name in self._nodes:
                if table.name not in self._nodes[dep_name].downstream:
                    self._nodes[dep_name].downstream.append(table.name)

    def add_tables(self, tables: list[core.RawTable | core.DynamicTable]) -> None:
        """Add tables, pulling in upstream definitions they reference.

        A second pass resolves downstream references regardless of the
        order the tables were given in.
        """
        import freshtable.core as core

        for table in tables:
            self.add_table(table)
            source = getattr(table, "source", None)
            while isinstance(source, (core.RawTable, core.DynamicTable)):
                if source.name not in self._nodes:
                    self.add_table(source)
                source = getattr(source, "source", None)

        for node in self._nodes.values():
            for dep_name in node.upstream:
                if dep_name in self._nodes:
                    if node.name not in self._nodes[dep_name].downstream:
                        self._nodes[dep_name].downstream.append(node.name)

    def validate(self) -> None:
        """Check every upstream reference resolves and the graph is acyclic.

        Raises:
            DependencyError: On a missing upstream or a cycle.
        """
        for node in self._nodes.values():
            missing = [dep for dep in node.upstream if dep not in self._nodes]
            if missing:
                raise errors.DependencyError(
                    context=f"Resolving dependencies of '{node.name}'",
                    cause=f"Upstream table(s) not registered: {', '.join(missing)}",
                    fix="Register the upstream definitions together with their dependants.",
                )
        self.topological_sort()

    def topological_sort(self) -> list[str]:
        """Return table names in refresh order (dependencies first).

        Uses Kahn's algorithm for deterministic ordering.

        Raises:
            DependencyError: If a cycle is detected.
        """
        in_degree: dict[str, int] = {}
        for name, node in self._nodes.items():
            in_degree[name] = sum(1 for dep in node.upstream if dep in self._nodes)

        queue = sorted(name for name, degree in in_degree.items() if degree == 0)
        result: list[str] = []

        while queue:
            name = queue.pop(0)
            result.append(name)

            for downstream in sorted(self._nodes[name].downstream):
                if downstream in in_degree:
                    in_degree[downstream] -= 1
                    if in_degree[downstream] == 0:
                        queue.append(downstream)

        if len(result) != len(self._nodes):
            remaining = set(self._nodes.keys()) - set(result)
            raise errors.DependencyError(
                context="Building DAG refresh order",
                cause=f"Cycle detected involving tables: {', '.join(sorted(remaining))}",
                fix="Remove circular dependencies between dynamic tables.",
            )

        return result

    def get_upstream(self, table_name: str, *, include_self: bool = True) -> list[str]:
        """Return all upstream dependencies in topological order."""
        self._require(table_name)

        visited: set[str] = set()
        result: list[str] = []

        def _visit(name: str) -> None:
            if name in visited:
                return
            visited.add(name)
            if name in self._nodes:
                for upstream in self._nodes[name].upstream:
                    _visit(upstream)
            result.append(name)

        _visit(table_name)

        if not include_self:
            result.remove(table_name)

        return result

    def get_downstream(
        self, table_name: str, *, include_self: bool = True
    ) -> list[str]:
        """Return all downstream dependants, nearest first."""
        self._require(table_name)

        visited: set[str] = set()
        result: list[str] = []

        def _visit(name: str) -> None:
            if name in visited:
                return
            visited.add(name)
            result.append(name)
            if name in self._nodes:
                for downstream in self._nodes[name].downstream:
                    _visit(downstream)

        _visit(table_name)

        if not include_self:
            result.remove(table_name)

        return result

    def get_table(self, name: str) -> core.RawTable | core.DynamicTable:
        """Retrieve a table definition by name."""
        self._require(name)
        return self._nodes[name].table

    def dynamic_tables(self) -> list[core.DynamicTable]:
        """Dynamic tables in refresh order."""
        import freshtable.core as core

        return [
            table
            for name in self.topological_sort()
            if isinstance(table := self._nodes[name].table, core.DynamicTable)
        ]

    def _require(self, name: str) -> None:
        if name not in self._nodes:
            raise errors.TableNotFoundError(name, list(self._nodes))

    @property
    def nodes(self) -> dict[str, DAGNode]:
        """Read-only access to the internal nodes dictionary."""
        return dict(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, name: str) -> bool:
        return name in self._nodes
