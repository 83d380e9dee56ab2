from __future__ import annotations

from typing import Any, Sequence

import torch

from sapcore.constraints.constraint import SapConstraint
from sapcore.graph import ContactProblemGraph


def _as_square(value: Any, *, clique: int, dtype: torch.dtype, device: torch.device) -> torch.Tensor:
    if not isinstance(value, torch.Tensor):
        value = torch.as_tensor(value, device=device, dtype=dtype)
    else:
        value = value.to(device=device, dtype=dtype)
    if value.ndim != 2 or int(value.shape[0]) != int(value.shape[1]):
        raise ValueError(f"Dynamics matrix of clique {clique} must be square, got shape={tuple(value.shape)}")
    return value


class ContactProblem:
    """Contact problem for a single time step.

    Holds the per-clique dynamics matrices A, the free-motion velocities v*
    for all cliques (participating or not) and the constraints, in the order
    they were added.
    """

    def __init__(self, time_step: float, dynamics_matrix: Sequence[Any], v_star: Any) -> None:
        if not time_step > 0.0:
            raise ValueError(f"time_step must be positive, got {time_step}")

        if not isinstance(v_star, torch.Tensor):
            v_star = torch.as_tensor(v_star, dtype=torch.float64)
        if v_star.ndim != 1:
            raise ValueError(f"v_star must be rank-1, got shape={tuple(v_star.shape)}")

        self._time_step = float(time_step)
        self._v_star = v_star
        self._A = [
            _as_square(A, clique=c, dtype=v_star.dtype, device=v_star.device) for c, A in enumerate(dynamics_matrix)
        ]

        self._velocity_offsets = [0]
        for A in self._A:
            self._velocity_offsets.append(self._velocity_offsets[-1] + int(A.shape[0]))
        if self._velocity_offsets[-1] != int(v_star.shape[0]):
            raise ValueError(
                f"v_star has wrong length: expected {self._velocity_offsets[-1]}, got {int(v_star.shape[0])}"
            )

        self._constraints: list[SapConstraint] = []
        self._num_constraint_equations = 0

    @property
    def dtype(self) -> torch.dtype:
        return self._v_star.dtype

    @property
    def device(self) -> torch.device:
        return self._v_star.device

    def add_constraint(self, constraint: SapConstraint) -> int:
        """Adds `constraint` to the problem, which takes ownership. Returns its index.

        The constraint data are moved to the problem's device and dtype.
        """
        for clique, J in zip(constraint.cliques(), constraint.jacobians()):
            if clique >= self.num_cliques():
                raise ValueError(f"Constraint references clique {clique}, but the problem has {self.num_cliques()}")
            nv = self.num_velocities(clique)
            if int(J.shape[1]) != nv:
                raise ValueError(
                    f"Jacobian for clique {clique} has {int(J.shape[1])} columns, expected the clique size {nv}"
                )
        constraint.to(device=self.device, dtype=self.dtype)
        self._constraints.append(constraint)
        self._num_constraint_equations += constraint.num_constraint_equations
        return len(self._constraints) - 1

    def time_step(self) -> float:
        return self._time_step

    def num_cliques(self) -> int:
        return len(self._A)

    def num_velocities(self, clique: int | None = None) -> int:
        if clique is None:
            return self._velocity_offsets[-1]
        return int(self._A[clique].shape[0])

    def velocity_offset(self, clique: int) -> int:
        return self._velocity_offsets[clique]

    def num_constraints(self) -> int:
        return len(self._constraints)

    def num_constraint_equations(self) -> int:
        return self._num_constraint_equations

    def get_constraint(self, i: int) -> SapConstraint:
        return self._constraints[i]

    def constraints(self) -> list[SapConstraint]:
        return self._constraints

    def dynamics_matrix(self) -> list[torch.Tensor]:
        return self._A

    def v_star(self) -> torch.Tensor:
        return self._v_star

    def graph(self) -> ContactProblemGraph:
        graph = ContactProblemGraph(self.num_cliques())
        for constraint in self._constraints:
            graph.add_constraint(constraint.cliques(), constraint.num_constraint_equations)
        return graph
