from __future__ import annotations

from typing import TYPE_CHECKING

import torch

from sapcore.block_sparse import BlockSparseMatrix
from sapcore.constraints.constraint import SapConstraint

if TYPE_CHECKING:
    from sapcore.problem import ContactProblem


class SapConstraintBundle:
    """All constraints of a problem stacked in cluster order.

    Row block i of the Jacobian J corresponds to the i-th constraint in cluster
    order. Column blocks correspond to the participating cliques, in the order
    given by `ContactProblemGraph.participating_cliques()`.
    """

    def __init__(self, problem: ContactProblem, delassus_diagonal: torch.Tensor) -> None:
        graph = problem.graph()
        cliques_permutation = graph.participating_cliques()
        order = graph.constraints_order()
        if int(delassus_diagonal.shape[0]) != len(order):
            raise ValueError(
                f"Expected one Delassus estimate per constraint ({len(order)}), got {int(delassus_diagonal.shape[0])}"
            )

        self._constraints: list[SapConstraint] = [problem.get_constraint(i) for i in order]
        clique_sizes = [problem.num_velocities(c) for c in cliques_permutation.permuted_indices()]
        row_sizes = [c.num_constraint_equations for c in self._constraints]

        self._J = BlockSparseMatrix(row_sizes, clique_sizes, device=problem.device, dtype=problem.dtype)
        R_blocks: list[torch.Tensor] = []
        v_hat_blocks: list[torch.Tensor] = []
        time_step = problem.time_step()
        for i, constraint in enumerate(self._constraints):
            for clique, J in zip(constraint.cliques(), constraint.jacobians()):
                self._J.add_block(i, cliques_permutation.permuted_index(clique), J)
            wi = delassus_diagonal[i]
            R_blocks.append(constraint.regularization(time_step, wi))
            v_hat_blocks.append(constraint.bias(time_step, wi))

        self._R = torch.cat(R_blocks) if R_blocks else torch.zeros((0,), device=problem.device, dtype=problem.dtype)
        self._v_hat = (
            torch.cat(v_hat_blocks) if v_hat_blocks else torch.zeros((0,), device=problem.device, dtype=problem.dtype)
        )
        self._Rinv = 1.0 / self._R

    def num_constraints(self) -> int:
        return len(self._constraints)

    def num_constraint_equations(self) -> int:
        return self._J.rows()

    def constraint(self, i: int) -> SapConstraint:
        return self._constraints[i]

    def J(self) -> BlockSparseMatrix:
        return self._J

    def R(self) -> torch.Tensor:
        return self._R

    def Rinv(self) -> torch.Tensor:
        return self._Rinv

    def v_hat(self) -> torch.Tensor:
        return self._v_hat

    def constraint_offsets(self) -> list[int]:
        return [self._J.row_offset(i) for i in range(self.num_constraints())]

    def unprojected_impulses(self, vc: torch.Tensor) -> torch.Tensor:
        """y = -R⁻¹⋅(vc - v̂)."""
        if vc.ndim != 1 or int(vc.shape[0]) != self.num_constraint_equations():
            raise ValueError(
                f"Expected constraint velocities of size {self.num_constraint_equations()}, got {tuple(vc.shape)}"
            )
        return -self._Rinv * (vc - self._v_hat)

    def project_impulses(self, y: torch.Tensor) -> torch.Tensor:
        gamma, _ = self._project(y, with_hessian=False)
        return gamma

    def project_impulses_and_calc_constraints_hessian(
        self, y: torch.Tensor
    ) -> tuple[torch.Tensor, list[torch.Tensor]]:
        """Returns γ = P(y) and G, with G_i = dP_i/dy_i⋅R_i⁻¹ for each constraint."""
        return self._project(y, with_hessian=True)

    def _project(self, y: torch.Tensor, *, with_hessian: bool) -> tuple[torch.Tensor, list[torch.Tensor]]:
        if y.ndim != 1 or int(y.shape[0]) != self.num_constraint_equations():
            raise ValueError(f"Expected impulses of size {self.num_constraint_equations()}, got {tuple(y.shape)}")

        gamma_blocks: list[torch.Tensor] = []
        G: list[torch.Tensor] = []
        for i, constraint in enumerate(self._constraints):
            rows = self._J.row_slice(i)
            ni = constraint.num_constraint_equations
            gamma_i, dPdy = constraint.project(y[rows], self._R[rows], with_jacobian=with_hessian)
            if tuple(gamma_i.shape) != (ni,):
                raise ValueError(f"Projection of constraint {i} returned shape {tuple(gamma_i.shape)}, expected ({ni},)")
            gamma_blocks.append(gamma_i)
            if with_hessian:
                if dPdy is None or tuple(dPdy.shape) != (ni, ni):
                    raise ValueError(f"Projection of constraint {i} must return a {ni}x{ni} Jacobian")
                G.append(dPdy * self._Rinv[rows].unsqueeze(0))

        if not gamma_blocks:
            return y.new_zeros((0,)), G
        return torch.cat(gamma_blocks), G
