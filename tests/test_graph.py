import pytest

from sapcore.graph import CliquePair, ContactProblemGraph


def _build_graph() -> ContactProblemGraph:
    graph = ContactProblemGraph(6)
    graph.add_constraint((3, 1), 3)
    graph.add_constraint((4,), 2)
    graph.add_constraint((1, 3), 1)
    graph.add_constraint((4, 4), 4)
    graph.add_constraint((0, 3), 3)
    return graph


def test_clique_pair_is_normalized() -> None:
    assert CliquePair.normalized(5, 2) == CliquePair(first=2, second=5)
    assert CliquePair.normalized(3) == CliquePair(first=3, second=3)
    assert CliquePair.normalized(3).is_self_pair()
    assert CliquePair.normalized(3).cliques() == (3,)
    assert CliquePair.normalized(2, 5).cliques() == (2, 5)


def test_graph_clusters_in_first_seen_order() -> None:
    graph = _build_graph()

    assert graph.num_cliques() == 6
    assert graph.num_constraints() == 5
    assert graph.num_constraint_equations() == 13
    assert graph.num_clusters() == 3

    clusters = graph.clusters()
    assert [c.cliques for c in clusters] == [CliquePair(1, 3), CliquePair(4, 4), CliquePair(0, 3)]
    assert [c.constraint_index for c in clusters] == [[0, 2], [1, 3], [4]]
    assert [c.num_total_constraint_equations() for c in clusters] == [4, 6, 3]
    assert graph.constraints_order() == [0, 2, 1, 3, 4]

    # Every constraint belongs to exactly one cluster.
    assert sorted(graph.constraints_order()) == list(range(graph.num_constraints()))


def test_graph_participating_cliques() -> None:
    graph = _build_graph()

    participating = graph.participating_cliques()

    assert participating.domain_size() == 6
    assert participating.permuted_domain_size() == 4
    assert participating.permuted_indices() == [1, 3, 4, 0]
    assert not participating.participates(2)
    assert not participating.participates(5)


def test_graph_of_participating_cliques() -> None:
    graph = _build_graph().make_graph_of_participating_cliques()

    assert graph.num_cliques() == 4
    assert graph.num_constraints() == 5
    assert graph.num_constraint_equations() == 13
    assert [c.cliques for c in graph.clusters()] == [CliquePair(0, 1), CliquePair(2, 2), CliquePair(1, 3)]
    assert [c.constraint_index for c in graph.clusters()] == [[0, 2], [1, 3], [4]]
    assert graph.participating_cliques().permuted_indices() == [0, 1, 2, 3]


def test_graph_rejects_invalid_constraints() -> None:
    graph = ContactProblemGraph(2)
    with pytest.raises(ValueError):
        graph.add_constraint((0, 2), 1)
    with pytest.raises(ValueError):
        graph.add_constraint((0,), 0)
    with pytest.raises(ValueError):
        graph.add_constraint((0, 1, 1), 1)
    assert graph.num_constraints() == 0
