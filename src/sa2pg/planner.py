"""
Dependency planning: foreign keys -> ordered migration phases
"""

from typing import Dict, List, Sequence, Set, Tuple

import structlog

from .errors import PlanningError
from .models import ForeignKeyEdge, MigrationPhase, MigrationPlan, PhaseKind, TableDescriptor

logger = structlog.get_logger()


def strongly_connected_components(nodes: Sequence[str], parents: Dict[str, Set[str]]) -> List[List[str]]:
    """Tarjan's algorithm, iterative so deep FK chains do not hit the recursion limit"""
    index: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[List[str]] = []
    counter = 0

    for root in nodes:
        if root in index:
            continue
        work = [(root, iter(sorted(parents[root])))]
        index[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)

        while work:
            node, successors = work[-1]
            advanced = False
            for succ in successors:
                if succ not in index:
                    index[succ] = lowlink[succ] = counter
                    counter += 1
                    stack.append(succ)
                    on_stack.add(succ)
                    work.append((succ, iter(sorted(parents[succ]))))
                    advanced = True
                    break
                if succ in on_stack:
                    lowlink[node] = min(lowlink[node], index[succ])
            if advanced:
                continue

            work.pop()
            if work:
                caller = work[-1][0]
                lowlink[caller] = min(lowlink[caller], lowlink[node])
            if lowlink[node] == index[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(sorted(component))

    return components


class DependencyPlanner:
    """Orders tables so every parent is loaded and validated before its children"""

    def __init__(self, defer_cycles: bool = True):
        self.defer_cycles = defer_cycles

    def plan(self, tables: Sequence[TableDescriptor], edges: Sequence[ForeignKeyEdge]) -> MigrationPlan:
        by_name = self._index_tables(tables)
        self._check_edges(by_name, edges)

        names = sorted(by_name)
        parents: Dict[str, Set[str]] = {name: set() for name in names}
        for edge in edges:
            parents[edge.child_table].add(edge.parent_table)

        components = strongly_connected_components(names, parents)
        component_of = {name: i for i, members in enumerate(components) for name in members}

        cyclic = {
            i for i, members in enumerate(components)
            if len(members) > 1 or members[0] in parents[members[0]]
        }
        if cyclic and not self.defer_cycles:
            groups = [components[i] for i in sorted(cyclic)]
            raise PlanningError(f"Foreign key cycles found and cycle deferral is disabled: {groups}")

        levels = self._levels(components, component_of, parents)

        deferred_edges = [
            edge for edge in edges
            if component_of[edge.child_table] == component_of[edge.parent_table]
            and component_of[edge.child_table] in cyclic
        ]
        deferred_set = set(deferred_edges)
        inline_edges = [edge for edge in edges if edge not in deferred_set]

        phases: List[MigrationPhase] = []
        for level in sorted(set(levels.values())):
            at_level = [i for i in range(len(components)) if levels[i] == level]

            standard = sorted(components[i][0] for i in at_level if i not in cyclic)
            if standard:
                phases.append(MigrationPhase(index=len(phases), kind=PhaseKind.STANDARD, tables=tuple(standard)))

            groups = sorted(tuple(components[i]) for i in at_level if i in cyclic)
            if groups:
                members = {name for group in groups for name in group}
                phases.append(MigrationPhase(
                    index=len(phases),
                    kind=PhaseKind.DEFERRED_CONSTRAINT,
                    tables=tuple(sorted(members)),
                    cycle_groups=tuple(groups),
                    deferred_edges=tuple(_sorted_edges(e for e in deferred_edges if e.child_table in members)),
                ))

        plan = MigrationPlan(phases=tuple(phases), inline_edges=tuple(_sorted_edges(inline_edges)))
        verify_plan(plan, edges)

        logger.info(
            "Migration plan built",
            tables=len(names),
            phases=len(phases),
            cycle_groups=sum(len(phase.cycle_groups) for phase in phases),
            deferred_edges=len(deferred_edges),
        )
        return plan

    def _index_tables(self, tables: Sequence[TableDescriptor]) -> Dict[str, TableDescriptor]:
        by_name: Dict[str, TableDescriptor] = {}
        for table in tables:
            if table.name in by_name:
                raise PlanningError(f"Duplicate table name {table.name}")
            by_name[table.name] = table
        return by_name

    def _check_edges(self, by_name: Dict[str, TableDescriptor], edges: Sequence[ForeignKeyEdge]):
        for edge in edges:
            for role, table in (("child", edge.child_table), ("parent", edge.parent_table)):
                if table not in by_name:
                    raise PlanningError(f"Foreign key {edge.name or ''} references unknown {role} table {table}")
            if not edge.child_columns or len(edge.child_columns) != len(edge.parent_columns):
                raise PlanningError(f"Foreign key {edge.child_table} -> {edge.parent_table} has mismatched columns")
            for table, columns in ((edge.child_table, edge.child_columns), (edge.parent_table, edge.parent_columns)):
                unknown = [col for col in columns if col not in by_name[table].column_names]
                if unknown:
                    raise PlanningError(f"Foreign key {edge.child_table} -> {edge.parent_table} "
                                        f"references unknown columns {table}{unknown}")

    def _levels(self, components: List[List[str]], component_of: Dict[str, int],
                parents: Dict[str, Set[str]]) -> Dict[int, int]:
        """Level of each component in the condensed graph: 1 + deepest parent level"""
        parent_components: Dict[int, Set[int]] = {i: set() for i in range(len(components))}
        for child, table_parents in parents.items():
            for parent in table_parents:
                if component_of[parent] != component_of[child]:
                    parent_components[component_of[child]].add(component_of[parent])

        levels: Dict[int, int] = {}
        pending = dict(parent_components)
        while pending:
            ready = [i for i, deps in pending.items() if all(dep in levels for dep in deps)]
            if not ready:
                raise PlanningError("Dependency graph could not be ordered")
            for i in ready:
                deps = pending.pop(i)
                levels[i] = 1 + max((levels[dep] for dep in deps), default=-1)
        return levels


def _sorted_edges(edges) -> List[ForeignKeyEdge]:
    return sorted(edges, key=lambda e: (e.child_table, e.parent_table, e.child_columns, e.name or ""))


def verify_plan(plan: MigrationPlan, edges: Sequence[ForeignKeyEdge]):
    """Every edge either points to an earlier phase or is deferred inside one phase"""
    phase_of: Dict[str, int] = {}
    for phase in plan.phases:
        for table in phase.tables:
            if table in phase_of:
                raise PlanningError(f"Table {table} is planned twice")
            phase_of[table] = phase.index

    deferred: Set[Tuple[str, str]] = set()
    for phase in plan.phases:
        for edge in phase.deferred_edges:
            if phase_of.get(edge.child_table) != phase.index or phase_of.get(edge.parent_table) != phase.index:
                raise PlanningError(f"Deferred edge {edge.child_table} -> {edge.parent_table} spans phases")
            deferred.add((edge.child_table, edge.parent_table))

    for edge in edges:
        if (edge.child_table, edge.parent_table) in deferred:
            continue
        if phase_of[edge.parent_table] >= phase_of[edge.child_table]:
            raise PlanningError(f"Parent {edge.parent_table} is not planned before child {edge.child_table}")
