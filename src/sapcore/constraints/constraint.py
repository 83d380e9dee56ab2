from __future__ import annotations

from typing import Any

import torch


def _as_matrix(value: Any, *, rows: int | None = None, device: torch.device, dtype: torch.dtype) -> torch.Tensor:
    if not isinstance(value, torch.Tensor):
        value = torch.as_tensor(value, device=device, dtype=dtype)
    else:
        value = value.to(device=device, dtype=dtype)
    if value.ndim != 2:
        raise ValueError(f"Constraint Jacobian must be rank-2, got shape={tuple(value.shape)}")
    if rows is not None and int(value.shape[0]) != int(rows):
        raise ValueError(f"Constraint Jacobian has wrong height: expected {rows}, got {int(value.shape[0])}")
    return value


def _as_vector(
    value: Any, *, name: str, device: torch.device | None = None, dtype: torch.dtype | None = None
) -> torch.Tensor:
    if not isinstance(value, torch.Tensor):
        value = torch.as_tensor(value, device=device, dtype=dtype if dtype is not None else torch.float64)
    elif device is not None or dtype is not None:
        value = value.to(device=device, dtype=dtype)
    if value.ndim != 1:
        raise ValueError(f"{name} must be rank-1, got shape={tuple(value.shape)}")
    return value


class SapConstraint:
    """Constraint on one or two cliques, with its bias, regularization and projection.

    The constraint stores one Jacobian block per clique it couples and the value
    of the constraint function g at construction. Concrete families implement
    `calc_bias_term`, `calc_diagonal_regularization` and `project`.

    `project` must act as a proximal operator: continuous, idempotent on
    feasible impulses and with a positive semi-definite Jacobian dP/dy. The
    last property keeps the model cost convex and is not checked here.
    """

    def __init__(
        self,
        constraint_function: Any,
        first_clique: int,
        first_jacobian: Any,
        second_clique: int | None = None,
        second_jacobian: Any = None,
    ) -> None:
        g = _as_vector(constraint_function, name="Constraint function")
        num_equations = int(g.shape[0])
        if num_equations == 0:
            raise ValueError("Constraint must have at least one equation")
        if first_clique < 0:
            raise ValueError(f"Clique index must be non-negative, got {first_clique}")

        self._g = g
        self._cliques: tuple[int, ...] = (int(first_clique),)
        first = _as_matrix(first_jacobian, rows=num_equations, device=g.device, dtype=g.dtype)
        self._jacobians: tuple[torch.Tensor, ...] = (first,)

        if second_clique is not None or second_jacobian is not None:
            if second_clique is None or second_jacobian is None:
                raise ValueError("The second clique and its Jacobian must be given together")
            if second_clique < 0:
                raise ValueError(f"Clique index must be non-negative, got {second_clique}")
            if int(second_clique) == int(first_clique):
                raise ValueError(f"A constraint cannot couple clique {first_clique} with itself")
            self._cliques = (int(first_clique), int(second_clique))
            second = _as_matrix(second_jacobian, rows=num_equations, device=g.device, dtype=g.dtype)
            self._jacobians = (first, second)

    @property
    def num_constraint_equations(self) -> int:
        return int(self._g.shape[0])

    def num_cliques(self) -> int:
        return len(self._cliques)

    def cliques(self) -> tuple[int, ...]:
        return self._cliques

    def jacobians(self) -> tuple[torch.Tensor, ...]:
        return self._jacobians

    def first_clique(self) -> int:
        return self._cliques[0]

    def second_clique(self) -> int:
        if len(self._cliques) < 2:
            raise ValueError("This constraint only couples one clique")
        return self._cliques[1]

    def first_clique_jacobian(self) -> torch.Tensor:
        return self._jacobians[0]

    def second_clique_jacobian(self) -> torch.Tensor:
        if len(self._jacobians) < 2:
            raise ValueError("This constraint only couples one clique")
        return self._jacobians[1]

    def constraint_function(self) -> torch.Tensor:
        return self._g

    def to(self, *, device: torch.device, dtype: torch.dtype) -> SapConstraint:
        """Moves the constraint function and the Jacobians to `device` and `dtype`, in place."""
        self._g = self._g.to(device=device, dtype=dtype)
        self._jacobians = tuple(J.to(device=device, dtype=dtype) for J in self._jacobians)
        return self

    def calc_bias_term(self, time_step: float, wi: torch.Tensor) -> torch.Tensor:
        """Returns the bias v̂. `wi` is the Delassus diagonal estimate of this constraint."""
        raise NotImplementedError

    def calc_diagonal_regularization(self, time_step: float, wi: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def project(
        self, y: torch.Tensor, R: torch.Tensor, with_jacobian: bool = False
    ) -> tuple[torch.Tensor, torch.Tensor | None]:
        """Projects y onto the feasible impulses, returns γ = P(y) and optionally dP/dy."""
        raise NotImplementedError

    def bias(self, time_step: float, wi: torch.Tensor) -> torch.Tensor:
        v_hat = _as_vector(
            self.calc_bias_term(time_step, wi), name="Bias term", device=self._g.device, dtype=self._g.dtype
        )
        if int(v_hat.shape[0]) != self.num_constraint_equations:
            raise ValueError(
                f"Bias term has wrong length: expected {self.num_constraint_equations}, got {int(v_hat.shape[0])}"
            )
        return v_hat

    def regularization(self, time_step: float, wi: torch.Tensor) -> torch.Tensor:
        R = _as_vector(
            self.calc_diagonal_regularization(time_step, wi),
            name="Regularization",
            device=self._g.device,
            dtype=self._g.dtype,
        )
        if int(R.shape[0]) != self.num_constraint_equations:
            raise ValueError(
                f"Regularization has wrong length: expected {self.num_constraint_equations}, got {int(R.shape[0])}"
            )
        if not bool((R > 0.0).all().item()):
            raise ValueError(f"Regularization must be strictly positive, got {R.tolist()}")
        return R
