from __future__ import annotations

import logging
from typing import Any, Callable

import torch

from sapcore.constraints.bundle import SapConstraintBundle
from sapcore.graph import ContactProblemGraph
from sapcore.permutation import PartialPermutation
from sapcore.problem import ContactProblem
from sapcore.state import CacheIndex, ModelState

logger = logging.getLogger(__name__)


class SapModel:
    """Reduced SAP model of a `ContactProblem`.

    Only cliques with at least one constraint participate. Given generalized
    velocities v of the participating cliques, the model evaluates the cost

        ℓ(v) = ½‖v − v*‖²_A + ½γᵀRγ,   γ = P(−R⁻¹(J⋅v − v̂)),

    its gradient ∇ℓ = A⋅(v − v*) − Jᵀ⋅γ and the Hessian approximation
    H = A + Jᵀ⋅G⋅J, with G block diagonal. Constraints are ordered by cluster
    (see `ContactProblemGraph`) and by problem index within a cluster.

    Evaluations are out-of-place torch operations, so velocities may be plain,
    dual (forward AD) or autograd tensors.
    """

    def __init__(self, problem: ContactProblem) -> None:
        self._problem = problem
        graph = problem.graph()
        self._graph = graph
        self._cliques_permutation = graph.participating_cliques()

        self._A = self._cliques_permutation.apply(problem.dynamics_matrix())
        self._clique_offsets = [0]
        for A in self._A:
            self._clique_offsets.append(self._clique_offsets[-1] + int(A.shape[0]))

        self._velocities_permutation = self._make_velocities_permutation()
        self._impulses_permutation = self._make_impulses_permutation(graph)
        self._v_star = self._velocities_permutation.apply(problem.v_star())
        self._p_star = self.multiply_by_dynamics_matrix(self._v_star)

        factors = self._factorize_dynamics_matrix()
        self._inv_sqrt_A = self._calc_inv_sqrt_dynamics_matrix()
        self._delassus_diagonal = self._calc_delassus_diagonal_approximation(factors)
        self._bundle = SapConstraintBundle(problem, self._delassus_diagonal)

        logger.debug(
            "SapModel: %d/%d cliques, %d/%d velocities, %d constraints in %d clusters, %d equations",
            self.num_cliques(),
            problem.num_cliques(),
            self.num_velocities(),
            problem.num_velocities(),
            self.num_constraints(),
            graph.num_clusters(),
            self.num_constraint_equations(),
        )

    def problem(self) -> ContactProblem:
        return self._problem

    def graph(self) -> ContactProblemGraph:
        return self._graph

    def time_step(self) -> float:
        return self._problem.time_step()

    def num_cliques(self) -> int:
        return len(self._A)

    def num_velocities(self, clique: int | None = None) -> int:
        if clique is None:
            return self._clique_offsets[-1]
        return int(self._A[clique].shape[0])

    def num_constraints(self) -> int:
        return self._bundle.num_constraints()

    def num_constraint_equations(self) -> int:
        return self._bundle.num_constraint_equations()

    def dynamics_matrix(self) -> list[torch.Tensor]:
        return self._A

    def v_star(self) -> torch.Tensor:
        return self._v_star

    def p_star(self) -> torch.Tensor:
        return self._p_star

    def inv_sqrt_dynamics_matrix(self) -> torch.Tensor:
        """diag(A)^(-1/2), for the participating velocities."""
        return self._inv_sqrt_A

    def delassus_diagonal(self) -> torch.Tensor:
        return self._delassus_diagonal

    def constraints_bundle(self) -> SapConstraintBundle:
        return self._bundle

    def cliques_permutation(self) -> PartialPermutation:
        return self._cliques_permutation

    def velocities_permutation(self) -> PartialPermutation:
        """Maps velocities of the full problem to the model's velocities."""
        return self._velocities_permutation

    def impulses_permutation(self) -> PartialPermutation:
        """Maps constraint equations in problem order to the model's (cluster) order."""
        return self._impulses_permutation

    def multiply_by_dynamics_matrix(self, v: torch.Tensor) -> torch.Tensor:
        if v.ndim != 1 or int(v.shape[0]) != self.num_velocities():
            raise ValueError(f"Expected a vector of size {self.num_velocities()}, got shape={tuple(v.shape)}")
        blocks = [A @ v[self._clique_slice(c)] for c, A in enumerate(self._A)]
        if not blocks:
            return v.new_zeros((0,))
        return torch.cat(blocks)

    def make_state(self) -> ModelState:
        return ModelState(self.num_velocities())

    def set_velocities(self, state: ModelState, v: torch.Tensor) -> None:
        self._check_state(state, require_velocities=False)
        state.set_v(v)

    def get_velocities(self, state: ModelState) -> torch.Tensor:
        """Returns a copy; use `set_velocities` to change them."""
        self._check_state(state)
        return state.v.clone()

    def eval_constraint_velocities(self, state: ModelState) -> torch.Tensor:
        return self._eval(state, CacheIndex.CONSTRAINT_VELOCITIES, lambda s: self._bundle.J().multiply(s.v))

    def eval_momentum(self, state: ModelState) -> torch.Tensor:
        return self._eval(state, CacheIndex.MOMENTUM, lambda s: self.multiply_by_dynamics_matrix(s.v))

    def eval_momentum_gain(self, state: ModelState) -> torch.Tensor:
        return self._eval(state, CacheIndex.MOMENTUM_GAIN, lambda s: self.eval_momentum(s) - self._p_star)

    def eval_momentum_cost(self, state: ModelState) -> torch.Tensor:
        def calc(s: ModelState) -> torch.Tensor:
            dv = s.v - self._v_star
            return 0.5 * (dv * self.eval_momentum_gain(s)).sum()

        return self._eval(state, CacheIndex.MOMENTUM_COST, calc)

    def eval_unprojected_impulses(self, state: ModelState) -> torch.Tensor:
        return self._eval(
            state,
            CacheIndex.UNPROJECTED_IMPULSES,
            lambda s: self._bundle.unprojected_impulses(self.eval_constraint_velocities(s)),
        )

    def eval_impulses(self, state: ModelState) -> torch.Tensor:
        return self._eval(
            state,
            CacheIndex.IMPULSES,
            lambda s: self._bundle.project_impulses(self.eval_unprojected_impulses(s)),
        )

    def eval_constraints_hessian(self, state: ModelState) -> list[torch.Tensor]:
        """Per-constraint blocks G_i = dP_i/dy_i⋅R_i⁻¹, computed jointly with the impulses."""
        self._check_state(state)
        entry = state.entry(CacheIndex.CONSTRAINTS_HESSIAN)
        if not entry.valid:
            y = self.eval_unprojected_impulses(state)
            gamma, G = self._bundle.project_impulses_and_calc_constraints_hessian(y)
            impulses = state.entry(CacheIndex.IMPULSES)
            if not impulses.valid:
                impulses.set(gamma)
            entry.set(G)
        return entry.value

    def eval_regularizer_cost(self, state: ModelState) -> torch.Tensor:
        def calc(s: ModelState) -> torch.Tensor:
            gamma = self.eval_impulses(s)
            return 0.5 * (gamma * self._bundle.R() * gamma).sum()

        return self._eval(state, CacheIndex.REGULARIZER_COST, calc)

    def eval_cost(self, state: ModelState) -> torch.Tensor:
        return self._eval(
            state,
            CacheIndex.COST,
            lambda s: self.eval_momentum_cost(s) + self.eval_regularizer_cost(s),
        )

    def eval_cost_gradient(self, state: ModelState) -> torch.Tensor:
        return self._eval(
            state,
            CacheIndex.COST_GRADIENT,
            lambda s: self.eval_momentum_gain(s) - self._bundle.J().transpose_multiply(self.eval_impulses(s)),
        )

    def eval_hessian(self, state: ModelState) -> torch.Tensor:
        """Dense H = A + Jᵀ⋅G⋅J."""
        return self._eval(state, CacheIndex.HESSIAN, self._calc_hessian)

    def multiply_by_hessian(self, state: ModelState, w: torch.Tensor) -> torch.Tensor:
        """Computes H⋅w without forming H."""
        G = self.eval_constraints_hessian(state)
        J = self._bundle.J()
        Jw = J.multiply(w)
        GJw = [G_i @ Jw[J.row_slice(i)] for i, G_i in enumerate(G)]
        JtGJw = J.transpose_multiply(torch.cat(GJw)) if GJw else torch.zeros_like(w)
        return self.multiply_by_dynamics_matrix(w) + JtGJw

    def _calc_hessian(self, state: ModelState) -> torch.Tensor:
        G = self.eval_constraints_hessian(state)
        J = self._bundle.J()
        n = self.num_cliques()
        blocks: list[list[torch.Tensor | None]] = [[None] * n for _ in range(n)]
        for c, A in enumerate(self._A):
            blocks[c][c] = A

        for i, G_i in enumerate(G):
            row = J.block_row(i)
            for a, J_a in row:
                GJ_a = G_i @ J_a
                for b, J_b in row:
                    contribution = J_b.transpose(0, 1) @ GJ_a
                    blocks[b][a] = contribution if blocks[b][a] is None else blocks[b][a] + contribution

        dtype = G[0].dtype if G else self._problem.dtype
        device = self._problem.device
        rows = []
        for b in range(n):
            row = []
            for a, block in enumerate(blocks[b]):
                if block is None:
                    block = torch.zeros((self.num_velocities(b), self.num_velocities(a)), device=device, dtype=dtype)
                row.append(block)
            rows.append(torch.cat(row, dim=1))
        if not rows:
            return torch.zeros((0, 0), device=device, dtype=dtype)
        return torch.cat(rows, dim=0)

    def _eval(self, state: ModelState, index: CacheIndex, calc: Callable[[ModelState], Any]) -> Any:
        self._check_state(state)
        entry = state.entry(index)
        if not entry.valid:
            entry.set(calc(state))
        return entry.value

    def _check_state(self, state: ModelState, *, require_velocities: bool = True) -> None:
        if state.num_velocities != self.num_velocities():
            raise ValueError(
                f"State has {state.num_velocities} velocities but the model has {self.num_velocities()}"
            )
        if require_velocities and not state.has_velocities():
            raise RuntimeError("Velocities must be set with set_velocities() before evaluating the model")

    def _clique_slice(self, c: int) -> slice:
        return slice(self._clique_offsets[c], self._clique_offsets[c + 1])

    def _make_velocities_permutation(self) -> PartialPermutation:
        permutation = PartialPermutation.empty(self._problem.num_velocities())
        for c in self._cliques_permutation.permuted_indices():
            offset = self._problem.velocity_offset(c)
            for k in range(self._problem.num_velocities(c)):
                permutation.push(offset + k)
        return permutation

    def _make_impulses_permutation(self, graph: ContactProblemGraph) -> PartialPermutation:
        offsets = [0]
        for constraint in self._problem.constraints():
            offsets.append(offsets[-1] + constraint.num_constraint_equations)
        permutation = PartialPermutation.empty(offsets[-1])
        for i in graph.constraints_order():
            for k in range(offsets[i], offsets[i + 1]):
                permutation.push(k)
        return permutation

    def _factorize_dynamics_matrix(self) -> list[torch.Tensor]:
        factors = []
        for c, A in enumerate(self._A):
            clique = self._cliques_permutation.domain_index(c)
            if not torch.allclose(A, A.transpose(0, 1)):
                raise ValueError(f"Dynamics matrix of clique {clique} is not symmetric")
            L, info = torch.linalg.cholesky_ex(A)
            if int(info.item()) != 0:
                raise ValueError(f"Dynamics matrix of clique {clique} is not positive definite")
            factors.append(L)
        return factors

    def _calc_inv_sqrt_dynamics_matrix(self) -> torch.Tensor:
        if not self._A:
            return self._v_star.new_zeros((0,))
        diagonal = torch.cat([torch.diagonal(A) for A in self._A])
        return 1.0 / torch.sqrt(diagonal)

    def _calc_delassus_diagonal_approximation(self, factors: list[torch.Tensor]) -> torch.Tensor:
        """Estimates W_ii ≈ ‖Σ_c J_c⋅A_c⁻¹⋅J_cᵀ‖ / n_i per constraint, in cluster order."""
        estimates: list[torch.Tensor] = []
        for i in self._graph.constraints_order():
            constraint = self._problem.get_constraint(i)
            ni = constraint.num_constraint_equations
            W = torch.zeros((ni, ni), device=self._problem.device, dtype=self._problem.dtype)
            for clique, J in zip(constraint.cliques(), constraint.jacobians()):
                L = factors[self._cliques_permutation.permuted_index(clique)]
                W = W + J @ torch.cholesky_solve(J.transpose(0, 1), L)
            estimates.append(torch.linalg.matrix_norm(W) / ni)
        if not estimates:
            return self._v_star.new_zeros((0,))
        return torch.stack(estimates)
