from __future__ import annotations

from dataclasses import dataclass

import torch

from sapcore.constraints.constraint import SapConstraint
from sapcore.problem import ContactProblem


class SpringConstraint(SapConstraint):
    """Spring-damper between a 3D particle and the origin.

    With an identity projection, γ = y = −δt⋅(k⋅x + d⋅v) where d = τ_d⋅k. The
    Jacobian is the identity and the constraint function is the position x.
    """

    def __init__(self, clique: int, x: torch.Tensor, stiffness: float, dissipation_time_scale: float) -> None:
        if stiffness <= 0.0:
            raise ValueError(f"stiffness must be positive, got {stiffness}")
        if dissipation_time_scale < 0.0:
            raise ValueError(f"dissipation_time_scale must be non-negative, got {dissipation_time_scale}")
        super().__init__(x, clique, torch.eye(3, device=x.device, dtype=x.dtype))
        self.stiffness = float(stiffness)
        self.dissipation_time_scale = float(dissipation_time_scale)

    def calc_bias_term(self, time_step: float, wi: torch.Tensor) -> torch.Tensor:
        return -self.constraint_function() / (time_step + self.dissipation_time_scale)

    def calc_diagonal_regularization(self, time_step: float, wi: torch.Tensor) -> torch.Tensor:
        R = 1.0 / (time_step * (time_step + self.dissipation_time_scale) * self.stiffness)
        g = self.constraint_function()
        return torch.full((3,), R, device=g.device, dtype=g.dtype)

    def project(
        self, y: torch.Tensor, R: torch.Tensor, with_jacobian: bool = False
    ) -> tuple[torch.Tensor, torch.Tensor | None]:
        dPdy = torch.eye(3, device=y.device, dtype=y.dtype) if with_jacobian else None
        return y, dPdy


@dataclass(frozen=True)
class SpringMassConfig:
    """Two 3D particles; the first is tied to the origin by a spring, the second is free."""

    mass1: float = 1.5
    mass2: float = 3.0
    stiffness: float = 100.0
    dissipation_time_scale: float = 0.1
    time_step: float = 1.0e-3
    gravity: float = 10.0
    gravity_axis: int = 2


def make_spring_mass_problem(
    config: SpringMassConfig,
    q: torch.Tensor | None = None,
    v: torch.Tensor | None = None,
    *,
    device: torch.device | None = None,
    dtype: torch.dtype = torch.float64,
) -> ContactProblem:
    """Builds the problem at positions q and velocities v, both of size 6.

    q[:3], v[:3] belong to the first mass and q[3:], v[3:] to the second. Each
    mass is its own clique.
    """
    if q is None:
        q = torch.zeros((6,), device=device, dtype=dtype)
    if v is None:
        v = torch.zeros((6,), device=device, dtype=dtype)
    if tuple(q.shape) != (6,) or tuple(v.shape) != (6,):
        raise ValueError(f"Expected q and v of shape (6,), got {tuple(q.shape)} and {tuple(v.shape)}")
    if not 0 <= config.gravity_axis < 3:
        raise ValueError(f"gravity_axis must be 0, 1 or 2, got {config.gravity_axis}")

    eye = torch.eye(3, device=q.device, dtype=q.dtype)
    A = [config.mass1 * eye, config.mass2 * eye]

    g = torch.zeros((6,), device=q.device, dtype=q.dtype)
    g[config.gravity_axis] = config.gravity
    g[3 + config.gravity_axis] = config.gravity
    v_star = v - config.time_step * g

    problem = ContactProblem(config.time_step, A, v_star)
    problem.add_constraint(SpringConstraint(0, q[:3], config.stiffness, config.dissipation_time_scale))
    return problem
