import pytest

from kestrel.assets.errors import CyclicDependencyError
from kestrel.assets.graph import DependencyEdge, DependencyGraph
from kestrel.assets.handle import AssetId

A, B, C, D = (AssetId(i) for i in range(1, 5))


def test_edges_are_tracked_both_ways():
    graph = DependencyGraph()
    graph.add_edge(A, B)
    graph.add_edge(A, C)

    assert graph.dependencies_of(A) == {B, C}
    assert graph.dependents_of(B) == {A}
    assert len(graph) == 2


def test_cycle_is_rejected():
    graph = DependencyGraph()
    graph.add_edge(A, B)
    graph.add_edge(B, C)

    with pytest.raises(CyclicDependencyError) as info:
        graph.add_edge(C, A)

    assert info.value.cycle == (C, A, B, C)
    assert graph.dependencies_of(C) == set()


def test_self_edge_is_a_cycle():
    with pytest.raises(CyclicDependencyError):
        DependencyGraph().add_edge(A, A)


def test_set_dependencies_is_all_or_nothing():
    graph = DependencyGraph()
    graph.add_edge(A, B)
    graph.add_edge(C, D)

    with pytest.raises(CyclicDependencyError):
        graph.set_dependencies(B, [DependencyEdge(B, D), DependencyEdge(B, A)])

    assert graph.dependencies_of(B) == set()
    assert graph.dependents_of(D) == {C}

    graph.set_dependencies(A, [DependencyEdge(A, C)])
    assert graph.dependencies_of(A) == {C}
    assert graph.dependents_of(B) == set()


def test_transitive_dependents():
    graph = DependencyGraph()
    graph.add_edge(A, B)
    graph.add_edge(B, C)
    graph.add_edge(D, C)

    assert graph.transitive_dependents([C]) == {A, B, D}
    assert graph.transitive_dependents([A]) == set()


def test_reload_order_puts_dependencies_first():
    graph = DependencyGraph()
    graph.add_edge(A, B)
    graph.add_edge(A, C)
    graph.add_edge(B, D)
    graph.add_edge(C, D)

    order = graph.reload_order([A, B, C, D])

    assert order[0] == D
    assert order[-1] == A
    assert set(order) == {A, B, C, D}


def test_remove_node_drops_incoming_and_outgoing():
    graph = DependencyGraph()
    graph.add_edge(A, B)
    graph.add_edge(B, C)

    graph.remove_node(B)

    assert B not in graph
    assert graph.dependencies_of(A) == set()
    assert graph.dependents_of(C) == set()
    assert len(graph) == 0
