from __future__ import annotations

from typing import Sequence

import torch


def _offsets(sizes: Sequence[int]) -> list[int]:
    offsets = [0]
    for size in sizes:
        offsets.append(offsets[-1] + int(size))
    return offsets


class BlockSparseMatrix:
    """Matrix stored as a set of dense blocks on a block row/column grid.

    The cost of a product is proportional to the number of stored blocks. Products are
    written out of place so that dual and autograd tensors propagate.
    """

    def __init__(
        self,
        row_block_sizes: Sequence[int],
        col_block_sizes: Sequence[int],
        *,
        device: torch.device | None = None,
        dtype: torch.dtype = torch.float64,
    ) -> None:
        if any(int(s) < 0 for s in row_block_sizes) or any(int(s) < 0 for s in col_block_sizes):
            raise ValueError("Block sizes must be non-negative")
        self._row_sizes = [int(s) for s in row_block_sizes]
        self._col_sizes = [int(s) for s in col_block_sizes]
        self._row_offsets = _offsets(self._row_sizes)
        self._col_offsets = _offsets(self._col_sizes)
        self._block_rows: list[list[tuple[int, torch.Tensor]]] = [[] for _ in self._row_sizes]
        self._block_cols: list[list[tuple[int, torch.Tensor]]] = [[] for _ in self._col_sizes]
        self._num_blocks = 0
        self.device = device
        self.dtype = dtype

    def add_block(self, i: int, j: int, block: torch.Tensor) -> None:
        if i < 0 or i >= len(self._row_sizes) or j < 0 or j >= len(self._col_sizes):
            raise ValueError(f"Block ({i}, {j}) out of range for a {len(self._row_sizes)}x{len(self._col_sizes)} grid")
        expected = (self._row_sizes[i], self._col_sizes[j])
        if block.ndim != 2 or tuple(block.shape) != expected:
            raise ValueError(f"Block ({i}, {j}) must have shape {expected}, got {tuple(block.shape)}")
        if any(jj == j for jj, _ in self._block_rows[i]):
            raise ValueError(f"Block ({i}, {j}) already added")
        self._block_rows[i].append((int(j), block))
        self._block_cols[j].append((int(i), block))
        self._num_blocks += 1

    def rows(self) -> int:
        return self._row_offsets[-1]

    def cols(self) -> int:
        return self._col_offsets[-1]

    def num_block_rows(self) -> int:
        return len(self._row_sizes)

    def num_block_cols(self) -> int:
        return len(self._col_sizes)

    def num_blocks(self) -> int:
        return self._num_blocks

    def row_offset(self, i: int) -> int:
        return self._row_offsets[i]

    def col_offset(self, j: int) -> int:
        return self._col_offsets[j]

    def block_row(self, i: int) -> list[tuple[int, torch.Tensor]]:
        return self._block_rows[i]

    def row_slice(self, i: int) -> slice:
        return slice(self._row_offsets[i], self._row_offsets[i + 1])

    def col_slice(self, j: int) -> slice:
        return slice(self._col_offsets[j], self._col_offsets[j + 1])

    def multiply(self, x: torch.Tensor) -> torch.Tensor:
        """Computes J·x."""
        if x.ndim != 1 or int(x.shape[0]) != self.cols():
            raise ValueError(f"Expected a vector of size {self.cols()}, got shape {tuple(x.shape)}")
        rows: list[torch.Tensor] = []
        for i, size in enumerate(self._row_sizes):
            y_i = torch.zeros((size,), device=x.device, dtype=x.dtype)
            for j, block in self._block_rows[i]:
                y_i = y_i + block @ x[self.col_slice(j)]
            rows.append(y_i)
        if not rows:
            return x.new_zeros((0,))
        return torch.cat(rows)

    def transpose_multiply(self, y: torch.Tensor) -> torch.Tensor:
        """Computes Jᵀ·y."""
        if y.ndim != 1 or int(y.shape[0]) != self.rows():
            raise ValueError(f"Expected a vector of size {self.rows()}, got shape {tuple(y.shape)}")
        cols: list[torch.Tensor] = []
        for j, size in enumerate(self._col_sizes):
            x_j = torch.zeros((size,), device=y.device, dtype=y.dtype)
            for i, block in self._block_cols[j]:
                x_j = x_j + block.transpose(0, 1) @ y[self.row_slice(i)]
            cols.append(x_j)
        if not cols:
            return y.new_zeros((0,))
        return torch.cat(cols)

    def to_dense(self) -> torch.Tensor:
        dense_rows: list[torch.Tensor] = []
        for i, row_size in enumerate(self._row_sizes):
            blocks = dict(self._block_rows[i])
            row = [
                blocks[j] if j in blocks else torch.zeros((row_size, col_size), device=self.device, dtype=self.dtype)
                for j, col_size in enumerate(self._col_sizes)
            ]
            if row:
                dense_rows.append(torch.cat(row, dim=1))
            else:
                dense_rows.append(torch.zeros((row_size, 0), device=self.device, dtype=self.dtype))
        if not dense_rows:
            return torch.zeros((0, self.cols()), device=self.device, dtype=self.dtype)
        return torch.cat(dense_rows, dim=0)
