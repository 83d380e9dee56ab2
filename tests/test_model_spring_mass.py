import math

import pytest
import torch

from sapcore.model import SapModel
from sapcore.problem import ContactProblem
from sapcore.systems.spring_mass import SpringMassConfig, make_spring_mass_problem


def _build_model(
    *, q: torch.Tensor | None = None, v: torch.Tensor | None = None
) -> tuple[SpringMassConfig, ContactProblem, SapModel]:
    config = SpringMassConfig()
    problem = make_spring_mass_problem(config, q, v)
    return config, problem, SapModel(problem)


def test_spring_mass_problem_sizes() -> None:
    _, problem, model = _build_model()

    assert problem.num_cliques() == 2
    assert problem.num_velocities() == 6
    assert problem.num_constraints() == 1
    assert problem.num_constraint_equations() == 3

    # Only the first mass is constrained.
    assert model.num_cliques() == 1
    assert model.num_velocities() == 3
    assert model.num_constraints() == 1
    assert model.num_constraint_equations() == 3


def test_spring_mass_velocities_permutation() -> None:
    _, _, model = _build_model()
    v = torch.linspace(1.0, 6.0, 6, dtype=torch.float64)

    v1 = model.velocities_permutation().apply(v)

    assert torch.equal(v1, torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64))
    restored = model.velocities_permutation().apply_inverse(v1, torch.zeros_like(v))
    assert torch.equal(restored[:3], v[:3])
    assert torch.equal(model.impulses_permutation().apply(v[:3]), v[:3])


def test_spring_mass_problem_data() -> None:
    v1 = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)
    v2 = torch.tensor([4.0, 5.0, 6.0], dtype=torch.float64)
    config, problem, model = _build_model(v=torch.cat([v1, v2]))

    assert model.time_step() == problem.time_step()
    assert len(model.dynamics_matrix()) == 1
    assert torch.equal(model.dynamics_matrix()[0], config.mass1 * torch.eye(3, dtype=torch.float64))

    v_star = v1 - config.time_step * config.gravity * torch.tensor([0.0, 0.0, 1.0], dtype=torch.float64)
    assert torch.equal(model.v_star(), v_star)
    assert torch.allclose(model.p_star(), config.mass1 * v_star, rtol=1e-15, atol=0.0)

    inv_sqrt = torch.full((3,), 1.0 / math.sqrt(config.mass1), dtype=torch.float64)
    assert torch.allclose(model.inv_sqrt_dynamics_matrix(), inv_sqrt, rtol=1e-15, atol=0.0)

    # J = I₃ and A = m₁⋅I₃, so W = I₃/m₁ and ‖W‖/3 = 1/(m₁⋅√3).
    W_diag = model.delassus_diagonal()
    assert tuple(W_diag.shape) == (1,)
    expected = 1.0 / config.mass1 / math.sqrt(3.0)
    assert abs(float(W_diag[0].item()) - expected) < 1e-14 * expected


def test_spring_mass_state_access() -> None:
    _, _, model = _build_model()
    state = model.make_state()
    v = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)

    model.set_velocities(state, v)

    assert torch.equal(model.get_velocities(state), v)


def test_spring_mass_constraint_velocities() -> None:
    _, _, model = _build_model()
    state = model.make_state()
    v = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)

    model.set_velocities(state, v)

    assert torch.equal(model.eval_constraint_velocities(state), v)


def test_spring_mass_momentum() -> None:
    config, _, model = _build_model()
    state = model.make_state()
    v = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)
    model.set_velocities(state, v)
    dv = v - model.v_star()

    assert torch.allclose(model.eval_momentum_gain(state), config.mass1 * dv, rtol=1e-14, atol=1e-14)
    expected_cost = 0.5 * config.mass1 * float(dv.dot(dv).item())
    assert abs(float(model.eval_momentum_cost(state).item()) - expected_cost) < 1e-14 * expected_cost


def test_spring_impulses_match_spring_damper_force() -> None:
    config = SpringMassConfig()
    q = torch.tensor([0.1, -0.2, 0.05, 0.0, 0.0, 0.0], dtype=torch.float64)
    _, _, model = _build_model(q=q)
    state = model.make_state()
    v = torch.tensor([0.3, 0.1, -0.4], dtype=torch.float64)
    model.set_velocities(state, v)

    # γ = −δt⋅(k⋅(x + δt⋅v) + d⋅v) for the implicit spring-damper.
    dt = config.time_step
    k = config.stiffness
    d = config.dissipation_time_scale * k
    expected = -dt * (k * (q[:3] + dt * v) + d * v)
    assert torch.allclose(model.eval_impulses(state), expected, rtol=1e-12, atol=1e-14)


def test_spring_mass_rejects_bad_velocities() -> None:
    _, _, model = _build_model()
    state = model.make_state()

    with pytest.raises(RuntimeError):
        model.eval_constraint_velocities(state)
    with pytest.raises(RuntimeError):
        model.get_velocities(state)
    with pytest.raises(ValueError):
        model.set_velocities(state, torch.zeros((6,), dtype=torch.float64))
    with pytest.raises(ValueError):
        model.set_velocities(state, torch.zeros((3, 1), dtype=torch.float64))
