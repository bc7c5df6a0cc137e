"""
Dependency planning: phase order, cycle isolation, plan verification
"""

import random

import pytest

from sa2pg.errors import PlanningError
from sa2pg.models import ColumnDescriptor, ForeignKeyEdge, PhaseKind, TableDescriptor
from sa2pg.planner import DependencyPlanner, strongly_connected_components, verify_plan


def tables(*names, extra_columns=("parent_id",)):
    columns = (ColumnDescriptor("id", "integer", nullable=False),) + tuple(
        ColumnDescriptor(name, "integer") for name in extra_columns
    )
    return [TableDescriptor(name=name, owner="DBA", columns=columns, primary_key=("id",)) for name in names]


def edge(child, parent, column="parent_id"):
    return ForeignKeyEdge(child, parent, (column,), ("id",))


def test_chain_loads_parents_first():
    plan = DependencyPlanner().plan(tables("a", "b", "c"), [edge("b", "a"), edge("c", "b")])

    assert [phase.tables for phase in plan.phases] == [("a",), ("b",), ("c",)]
    assert all(phase.kind is PhaseKind.STANDARD for phase in plan.phases)
    assert len(plan.inline_edges) == 2
    assert plan.deferred_edges == []


def test_independent_tables_share_a_phase():
    plan = DependencyPlanner().plan(tables("x", "y", "z"), [edge("z", "x")])

    assert plan.phases[0].tables == ("x", "y")
    assert plan.phases[1].tables == ("z",)


def test_cycle_becomes_deferred_constraint_phase():
    edges = [edge("dept", "employee"), edge("employee", "dept"), edge("project", "dept")]
    plan = DependencyPlanner().plan(tables("dept", "employee", "project"), edges)

    assert [phase.kind for phase in plan.phases] == [PhaseKind.DEFERRED_CONSTRAINT, PhaseKind.STANDARD]
    cyclic = plan.phases[0]
    assert cyclic.tables == ("dept", "employee")
    assert cyclic.cycle_groups == (("dept", "employee"),)
    assert set(cyclic.deferred_edges) == {edges[0], edges[1]}
    assert plan.inline_edges == (edges[2],)


def test_self_reference_is_deferred():
    self_edge = edge("employee", "employee")
    plan = DependencyPlanner().plan(tables("employee"), [self_edge])

    assert plan.phases[0].kind is PhaseKind.DEFERRED_CONSTRAINT
    assert plan.phases[0].deferred_edges == (self_edge,)


def test_acyclic_and_cyclic_tables_at_same_level_get_separate_phases():
    edges = [edge("a", "b"), edge("b", "a")]
    plan = DependencyPlanner().plan(tables("a", "b", "c"), edges)

    assert [(phase.kind, phase.tables) for phase in plan.phases] == [
        (PhaseKind.STANDARD, ("c",)),
        (PhaseKind.DEFERRED_CONSTRAINT, ("a", "b")),
    ]


def test_cycles_rejected_when_deferral_disabled():
    with pytest.raises(PlanningError, match="cycle"):
        DependencyPlanner(defer_cycles=False).plan(tables("a", "b"), [edge("a", "b"), edge("b", "a")])


@pytest.mark.parametrize("bad_edge", [
    ForeignKeyEdge("a", "missing", ("parent_id",), ("id",)),
    ForeignKeyEdge("a", "b", ("nope",), ("id",)),
    ForeignKeyEdge("a", "b", ("parent_id",), ("id", "parent_id")),
])
def test_malformed_edges_are_rejected(bad_edge):
    with pytest.raises(PlanningError):
        DependencyPlanner().plan(tables("a", "b"), [bad_edge])


def test_duplicate_tables_are_rejected():
    with pytest.raises(PlanningError, match="Duplicate"):
        DependencyPlanner().plan(tables("a", "a"), [])


def test_verify_plan_catches_parent_after_child():
    plan = DependencyPlanner().plan(tables("a", "b"), [edge("b", "a")])
    with pytest.raises(PlanningError):
        verify_plan(plan, [edge("a", "b")])


def test_tarjan_handles_deep_chains():
    names = [f"t{i:05d}" for i in range(5000)]
    parents = {name: set() for name in names}
    for child, parent in zip(names[1:], names):
        parents[child].add(parent)

    components = strongly_connected_components(names, parents)

    assert len(components) == len(names)


@pytest.mark.parametrize("seed", range(20))
def test_random_graphs_respect_edge_order(seed):
    rng = random.Random(seed)
    names = [f"t{i:02d}" for i in range(rng.randint(2, 25))]
    edges = []
    for i, child in enumerate(names):
        for parent in names[:i]:
            if rng.random() < 0.15:
                edges.append(edge(child, parent))
    # Occasionally close a cycle or add a self reference
    if rng.random() < 0.5 and len(names) > 3:
        edges.append(edge(names[1], names[-1]))
    if rng.random() < 0.3:
        edges.append(edge(names[0], names[0]))

    plan = DependencyPlanner().plan(tables(*names), edges)

    phase_of = {table: phase for phase in plan.phases for table in phase.tables}
    assert sorted(phase_of) == sorted(names)
    deferred = set(plan.deferred_edges)
    for e in edges:
        child, parent = phase_of[e.child_table], phase_of[e.parent_table]
        if e in deferred:
            assert child is parent
            assert child.kind is PhaseKind.DEFERRED_CONSTRAINT
        else:
            assert parent.index < child.index
