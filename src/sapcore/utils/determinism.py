from __future__ import annotations

import random

import numpy as np
import torch


def set_determinism(seed: int, deterministic: bool, dtype: torch.dtype | None = None) -> None:
    """Seeds every random source used by scripts and tests.

    SAP evaluation is deterministic on its own; this pins random problem
    generation and, optionally, the default dtype of new tensors.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if dtype is not None:
        torch.set_default_dtype(dtype)
    if deterministic:
        torch.use_deterministic_algorithms(True)


def random_spd_matrix(n: int, *, generator: np.random.Generator, dtype: torch.dtype = torch.float64) -> torch.Tensor:
    """Random SPD matrix M⋅Mᵀ + n⋅I."""
    m = generator.standard_normal((n, n))
    return torch.as_tensor(m @ m.T + n * np.eye(n), dtype=dtype)
