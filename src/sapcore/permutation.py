from __future__ import annotations

from typing import Any, Sequence

import torch


class PartialPermutation:
    """Bijection between a full index domain and its participating subset.

    Indices that do not participate map to -1. Participating indices are
    numbered in the order they were first added.
    """

    def __init__(self, permutation: Sequence[int] = ()) -> None:
        self._permutation: list[int] = []
        self._inverse: list[int] = []

        participating = [int(p) for p in permutation if int(p) >= 0]
        inverse = [-1] * len(participating)
        for i, p in enumerate(permutation):
            p = int(p)
            if p < 0:
                self._permutation.append(-1)
                continue
            if p >= len(participating) or inverse[p] >= 0:
                raise ValueError(
                    f"Permuted indices must be unique and in [0, {len(participating)}), got {p} at index {i}"
                )
            inverse[p] = i
            self._permutation.append(p)
        self._inverse = inverse

    @classmethod
    def empty(cls, domain_size: int) -> PartialPermutation:
        if domain_size < 0:
            raise ValueError(f"domain_size must be non-negative, got {domain_size}")
        return cls([-1] * int(domain_size))

    def push(self, i: int) -> int:
        self._check_domain_index(i)
        if self._permutation[i] < 0:
            self._permutation[i] = len(self._inverse)
            self._inverse.append(int(i))
        return self._permutation[i]

    def domain_size(self) -> int:
        return len(self._permutation)

    def permuted_domain_size(self) -> int:
        return len(self._inverse)

    def participates(self, i: int) -> bool:
        self._check_domain_index(i)
        return self._permutation[i] >= 0

    def permuted_index(self, i: int) -> int:
        if not self.participates(i):
            raise ValueError(f"Index {i} does not participate in the permutation")
        return self._permutation[i]

    def domain_index(self, i_permuted: int) -> int:
        if i_permuted < 0 or i_permuted >= len(self._inverse):
            raise ValueError(f"Permuted index {i_permuted} out of range [0, {len(self._inverse)})")
        return self._inverse[i_permuted]

    def permuted_indices(self) -> list[int]:
        return list(self._inverse)

    def apply(self, full: Any) -> Any:
        """Extracts the participating entries of `full`, in permuted order."""
        if len(full) != self.domain_size():
            raise ValueError(f"Expected {self.domain_size()} entries in the full domain, got {len(full)}")
        if isinstance(full, torch.Tensor):
            index = torch.tensor(self._inverse, device=full.device, dtype=torch.long)
            return full.index_select(0, index)
        return [full[i] for i in self._inverse]

    def apply_inverse(self, permuted: Any, full: Any = None) -> Any:
        """Scatters `permuted` back into the full domain.

        Entries of `full` that do not participate are copied unchanged. When
        `full` is None they are zero for tensors and None for sequences.
        """
        if len(permuted) != self.permuted_domain_size():
            raise ValueError(
                f"Expected {self.permuted_domain_size()} entries in the permuted domain, got {len(permuted)}"
            )
        if full is not None and len(full) != self.domain_size():
            raise ValueError(f"Expected {self.domain_size()} entries in the full domain, got {len(full)}")

        if isinstance(permuted, torch.Tensor):
            if full is None:
                full = torch.zeros(
                    (self.domain_size(), *permuted.shape[1:]), device=permuted.device, dtype=permuted.dtype
                )
            index = torch.tensor(self._inverse, device=permuted.device, dtype=torch.long)
            return full.index_put((index,), permuted)

        out = [None] * self.domain_size() if full is None else list(full)
        for i_permuted, i in enumerate(self._inverse):
            out[i] = permuted[i_permuted]
        return out

    def _check_domain_index(self, i: int) -> None:
        if i < 0 or i >= len(self._permutation):
            raise ValueError(f"Index {i} out of range [0, {len(self._permutation)})")

    def __repr__(self) -> str:
        return f"PartialPermutation(domain_size={self.domain_size()}, permuted={self._inverse})"
