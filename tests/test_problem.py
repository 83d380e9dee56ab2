import pytest
import torch
from sap_fixtures import DummyConstraint, make_dummy_problem, make_jacobian, spd_matrices

from sapcore.problem import ContactProblem


def test_contact_problem_sizes() -> None:
    problem = make_dummy_problem()

    assert problem.time_step() == 1.0e-3
    assert problem.num_cliques() == 3
    assert problem.num_velocities() == 9
    assert [problem.num_velocities(c) for c in range(3)] == [2, 3, 4]
    assert [problem.velocity_offset(c) for c in range(3)] == [0, 2, 5]
    assert problem.num_constraints() == 2
    assert problem.num_constraint_equations() == 8
    assert problem.dtype == torch.float64


def test_contact_problem_graph() -> None:
    problem = make_dummy_problem()

    graph = problem.graph()

    assert graph.num_cliques() == 3
    assert graph.num_constraints() == 2
    assert graph.num_constraint_equations() == 8
    assert [c.constraint_index for c in graph.clusters()] == [[0], [1]]
    assert graph.participating_cliques().permuted_indices() == [0, 1, 2]


def test_contact_problem_rejects_invalid_data() -> None:
    A = spd_matrices()
    with pytest.raises(ValueError):
        ContactProblem(0.0, A, torch.zeros((9,), dtype=torch.float64))
    with pytest.raises(ValueError):
        ContactProblem(1e-3, A, torch.zeros((8,), dtype=torch.float64))
    with pytest.raises(ValueError):
        ContactProblem(1e-3, [torch.zeros((2, 3), dtype=torch.float64)], torch.zeros((2,), dtype=torch.float64))


def test_contact_problem_rejects_mismatched_constraints() -> None:
    problem = ContactProblem(1e-3, spd_matrices(), torch.zeros((9,), dtype=torch.float64))
    R = torch.ones((2,), dtype=torch.float64)
    v_hat = torch.zeros((2,), dtype=torch.float64)

    # Clique 1 has 3 velocities.
    with pytest.raises(ValueError):
        problem.add_constraint(DummyConstraint((1,), (make_jacobian(2, 2),), R=R, v_hat=v_hat))
    with pytest.raises(ValueError):
        problem.add_constraint(DummyConstraint((3,), (make_jacobian(2, 2),), R=R, v_hat=v_hat))
    assert problem.num_constraints() == 0

    assert problem.add_constraint(DummyConstraint((1,), (make_jacobian(2, 3),), R=R, v_hat=v_hat)) == 0
    assert problem.num_constraint_equations() == 2


def test_contact_problem_moves_constraints_to_its_dtype() -> None:
    A = [torch.eye(2, dtype=torch.float32)]
    problem = ContactProblem(1e-3, A, torch.ones((2,), dtype=torch.float32))
    R = torch.ones((1,), dtype=torch.float64)
    v_hat = torch.zeros((1,), dtype=torch.float64)

    problem.add_constraint(DummyConstraint((0,), ([[1.0, 2.0]],), R=R, v_hat=v_hat))

    constraint = problem.get_constraint(0)
    assert constraint.first_clique_jacobian().dtype == torch.float32
    assert constraint.constraint_function().dtype == torch.float32
    assert constraint.regularization(1e-3, torch.tensor(1.0)).dtype == torch.float32
    assert constraint.bias(1e-3, torch.tensor(1.0)).dtype == torch.float32
