from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any

import torch


class CacheIndex(IntEnum):
    CONSTRAINT_VELOCITIES = 0
    MOMENTUM = 1
    MOMENTUM_GAIN = 2
    MOMENTUM_COST = 3
    UNPROJECTED_IMPULSES = 4
    IMPULSES = 5
    CONSTRAINTS_HESSIAN = 6
    REGULARIZER_COST = 7
    COST = 8
    COST_GRADIENT = 9
    HESSIAN = 10


@dataclass
class CacheEntry:
    value: Any = None
    valid: bool = False
    num_updates: int = 0

    def set(self, value: Any) -> None:
        self.value = value
        self.valid = True
        self.num_updates += 1

    def mark_out_of_date(self) -> None:
        self.valid = False


class ModelState:
    """Velocities of a `SapModel` plus every quantity derived from them.

    Owned by a single caller. Setting the velocities marks all cache entries
    out of date.
    """

    def __init__(self, num_velocities: int) -> None:
        self._num_velocities = int(num_velocities)
        self._v: torch.Tensor | None = None
        self._cache = {index: CacheEntry() for index in CacheIndex}

    @property
    def num_velocities(self) -> int:
        return self._num_velocities

    def has_velocities(self) -> bool:
        return self._v is not None

    @property
    def v(self) -> torch.Tensor:
        if self._v is None:
            raise RuntimeError("Velocities must be set before the model state can be evaluated")
        return self._v

    def set_v(self, v: torch.Tensor) -> None:
        if not isinstance(v, torch.Tensor):
            raise ValueError(f"Velocities must be a tensor, got {type(v)}")
        if v.ndim != 1 or int(v.shape[0]) != self._num_velocities:
            raise ValueError(f"Expected velocities of size {self._num_velocities}, got shape={tuple(v.shape)}")
        self._v = v.clone()
        for entry in self._cache.values():
            entry.mark_out_of_date()

    def entry(self, index: CacheIndex) -> CacheEntry:
        return self._cache[index]

    def num_updates(self, index: CacheIndex) -> int:
        return self._cache[index].num_updates
