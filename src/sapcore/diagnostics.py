from __future__ import annotations

from typing import Any

import torch

from sapcore.model import SapModel
from sapcore.state import ModelState

Diagnostics = dict[str, Any]


def model_diagnostics(model: SapModel, state: ModelState) -> Diagnostics:
    """Summary of the model sizes and of the cost terms at the state's velocities."""
    problem = model.problem()
    gamma = model.eval_impulses(state)
    gradient = model.eval_cost_gradient(state)
    zero = torch.tensor(0.0, device=gradient.device, dtype=gradient.dtype)
    return {
        "sizes": {
            "num_cliques": model.num_cliques(),
            "num_cliques_full": problem.num_cliques(),
            "num_velocities": model.num_velocities(),
            "num_velocities_full": problem.num_velocities(),
            "num_constraints": model.num_constraints(),
            "num_constraint_equations": model.num_constraint_equations(),
            "num_clusters": model.graph().num_clusters(),
        },
        "cost": {
            "momentum": model.eval_momentum_cost(state),
            "regularizer": model.eval_regularizer_cost(state),
            "total": model.eval_cost(state),
            "gradient_norm": torch.linalg.vector_norm(gradient),
        },
        "impulses": {
            "gamma_norm": torch.linalg.vector_norm(gamma) if gamma.numel() > 0 else zero,
            "gamma_max_abs": gamma.abs().max() if gamma.numel() > 0 else zero,
            "delassus_diagonal": model.delassus_diagonal(),
        },
    }


def to_jsonable(value: Any) -> Any:
    if isinstance(value, torch.Tensor):
        if value.numel() == 1:
            return float(value.detach().cpu().item())
        return value.detach().cpu().tolist()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def flatten_diagnostics(diag: Diagnostics) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for group_key, group_value in diag.items():
        if isinstance(group_value, dict):
            for key, value in group_value.items():
                flat[f"{group_key}.{key}"] = to_jsonable(value)
        else:
            flat[group_key] = to_jsonable(group_value)
    return flat
