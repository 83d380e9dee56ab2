from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from sapcore.permutation import PartialPermutation


@dataclass(frozen=True)
class CliquePair:
    first: int
    second: int

    @staticmethod
    def normalized(first: int, second: int | None = None) -> CliquePair:
        if second is None:
            second = first
        return CliquePair(first=min(int(first), int(second)), second=max(int(first), int(second)))

    def is_self_pair(self) -> bool:
        return self.first == self.second

    def cliques(self) -> tuple[int, ...]:
        if self.is_self_pair():
            return (self.first,)
        return (self.first, self.second)


@dataclass
class ConstraintCluster:
    """Constraints that couple the same pair of cliques."""

    cliques: CliquePair
    constraint_index: list[int] = field(default_factory=list)
    constraint_equations: list[int] = field(default_factory=list)

    def add_constraint(self, index: int, num_equations: int) -> None:
        self.constraint_index.append(int(index))
        self.constraint_equations.append(int(num_equations))

    def num_constraints(self) -> int:
        return len(self.constraint_index)

    def num_total_constraint_equations(self) -> int:
        return sum(self.constraint_equations)


class ContactProblemGraph:
    """Clusters constraints by the unordered pair of cliques they couple.

    Clusters are kept in the order their clique pair is first seen. Within a
    cluster, constraints are kept in the order they were added.
    """

    def __init__(self, num_cliques: int) -> None:
        if num_cliques < 0:
            raise ValueError(f"num_cliques must be non-negative, got {num_cliques}")
        self._num_cliques = int(num_cliques)
        self._clusters: list[ConstraintCluster] = []
        # Insertion ordered; iteration order is never used for the cluster ordering.
        self._cluster_of_pair: dict[CliquePair, int] = {}
        self._num_constraints = 0
        self._num_constraint_equations = 0

    def add_constraint(self, cliques: CliquePair | Sequence[int], num_equations: int) -> int:
        if not isinstance(cliques, CliquePair):
            if len(cliques) not in (1, 2):
                raise ValueError(f"A constraint couples one or two cliques, got {len(cliques)}")
            cliques = CliquePair.normalized(*cliques)
        for c in (cliques.first, cliques.second):
            if c < 0 or c >= self._num_cliques:
                raise ValueError(f"Clique index {c} out of range [0, {self._num_cliques})")
        if num_equations <= 0:
            raise ValueError(f"num_equations must be positive, got {num_equations}")

        cluster_index = self._cluster_of_pair.get(cliques)
        if cluster_index is None:
            cluster_index = len(self._clusters)
            self._cluster_of_pair[cliques] = cluster_index
            self._clusters.append(ConstraintCluster(cliques=cliques))

        constraint_index = self._num_constraints
        self._clusters[cluster_index].add_constraint(constraint_index, num_equations)
        self._num_constraints += 1
        self._num_constraint_equations += int(num_equations)
        return constraint_index

    def num_cliques(self) -> int:
        return self._num_cliques

    def num_clusters(self) -> int:
        return len(self._clusters)

    def num_constraints(self) -> int:
        return self._num_constraints

    def num_constraint_equations(self) -> int:
        return self._num_constraint_equations

    def clusters(self) -> list[ConstraintCluster]:
        return self._clusters

    def get_cluster(self, i: int) -> ConstraintCluster:
        return self._clusters[i]

    def constraints_order(self) -> list[int]:
        """Constraint indices in cluster order."""
        return [i for cluster in self._clusters for i in cluster.constraint_index]

    def participating_cliques(self) -> PartialPermutation:
        permutation = PartialPermutation.empty(self._num_cliques)
        for cluster in self._clusters:
            for c in cluster.cliques.cliques():
                permutation.push(c)
        return permutation

    def make_graph_of_participating_cliques(self) -> ContactProblemGraph:
        """Same clusters with clique indices remapped to the participating domain."""
        cliques_permutation = self.participating_cliques()
        graph = ContactProblemGraph(cliques_permutation.permuted_domain_size())
        graph._num_constraints = self._num_constraints
        graph._num_constraint_equations = self._num_constraint_equations
        for cluster in self._clusters:
            pair = CliquePair.normalized(
                cliques_permutation.permuted_index(cluster.cliques.first),
                cliques_permutation.permuted_index(cluster.cliques.second),
            )
            graph._cluster_of_pair[pair] = len(graph._clusters)
            graph._clusters.append(
                ConstraintCluster(
                    cliques=pair,
                    constraint_index=list(cluster.constraint_index),
                    constraint_equations=list(cluster.constraint_equations),
                )
            )
        return graph
