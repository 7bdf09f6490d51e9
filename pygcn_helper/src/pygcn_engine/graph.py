from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
import scipy.sparse as sp
import torch

NORMALIZATIONS = ("sym", "row", "none")


@dataclass
class GraphPartition:
    """
    CSR sparse structure shared by the adjacency and the feature matrix.

    ``nodes`` is the row count and ``columns`` the column count; for an
    adjacency both are the node count, for a feature matrix ``columns`` is
    the input feature width.
    """

    nodes: int
    columns: int
    row_offsets: np.ndarray
    column_indices: np.ndarray
    edge_values: np.ndarray

    @property
    def edges(self) -> int:
        return int(self.column_indices.shape[0])

    @property
    def shape(self) -> tuple[int, int]:
        return (self.nodes, self.columns)

    @classmethod
    def from_scipy(cls, matrix: sp.spmatrix, dtype: np.dtype = np.float32) -> "GraphPartition":
        csr = sp.csr_matrix(matrix, dtype=dtype)
        csr.sum_duplicates()
        csr.sort_indices()
        return cls(
            nodes=csr.shape[0],
            columns=csr.shape[1],
            row_offsets=csr.indptr.astype(np.int64),
            column_indices=csr.indices.astype(np.int64),
            edge_values=np.ascontiguousarray(csr.data, dtype=dtype),
        )

    def to_scipy(self) -> sp.csr_matrix:
        return sp.csr_matrix(
            (self.edge_values, self.column_indices, self.row_offsets), shape=self.shape
        )

    def row_indices(self) -> np.ndarray:
        return np.repeat(np.arange(self.nodes, dtype=np.int64), np.diff(self.row_offsets))

    def transpose(self) -> "GraphPartition":
        return GraphPartition.from_scipy(self.to_scipy().T, dtype=self.edge_values.dtype)

    def is_symmetric(self, atol: float = 1e-6) -> bool:
        if self.nodes != self.columns:
            return False
        matrix = self.to_scipy()
        return abs(matrix - matrix.T).max() <= atol if matrix.nnz else True

    def coo_indices(self, device: torch.device) -> torch.Tensor:
        rows = torch.from_numpy(self.row_indices())
        cols = torch.from_numpy(self.column_indices)
        return torch.stack((rows, cols)).to(device)

    def to_torch(self, device: torch.device, dtype: torch.dtype = torch.float32) -> torch.Tensor:
        """Build a ``torch.sparse_coo_tensor`` on ``device``."""
        values = torch.from_numpy(self.edge_values).to(device=device, dtype=dtype)
        return torch.sparse_coo_tensor(
            self.coo_indices(device), values, self.shape, device=device
        )


def normalize_rows(matrix: sp.spmatrix) -> sp.csr_matrix:
    rowsum = np.array(matrix.sum(1), dtype=float)
    r_inv = np.power(
        rowsum, -1.0, where=rowsum != 0, out=np.zeros_like(rowsum, dtype=float)
    ).flatten()
    return sp.csr_matrix(sp.diags(r_inv).dot(matrix))


def normalize_symmetric(matrix: sp.spmatrix) -> sp.csr_matrix:
    rowsum = np.array(matrix.sum(1), dtype=float)
    d_inv_sqrt = np.power(
        rowsum, -0.5, where=rowsum > 0, out=np.zeros_like(rowsum, dtype=float)
    ).flatten()
    d_mat = sp.diags(d_inv_sqrt)
    return sp.csr_matrix(d_mat.dot(matrix).dot(d_mat))


def build_adjacency(
    num_nodes: int,
    edges: Optional[np.ndarray] = None,
    normalization: str = "sym",
    dtype: np.dtype = np.float32,
) -> GraphPartition:
    """
    Symmetrize an edge list, add self loops and normalize it.

    ``edges`` is an ``(E, 2)`` integer array of 0-based node ids; ``None``
    yields the identity graph.
    """

    if normalization not in NORMALIZATIONS:
        raise ValueError(f"normalization must be one of {NORMALIZATIONS}, got {normalization!r}")
    if edges is None or len(edges) == 0:
        adjacency = sp.csr_matrix((num_nodes, num_nodes), dtype=np.float64)
    else:
        edges = np.asarray(edges, dtype=np.int64).reshape(-1, 2)
        adjacency = sp.coo_matrix(
            (np.ones(edges.shape[0]), (edges[:, 0], edges[:, 1])),
            shape=(num_nodes, num_nodes),
            dtype=np.float64,
        ).tocsr()
        adjacency.data[:] = 1.0
        adjacency = adjacency - sp.diags(adjacency.diagonal())
        adjacency.eliminate_zeros()
        adjacency = adjacency.maximum(adjacency.T)
    adjacency = adjacency + sp.eye(num_nodes)

    if normalization == "sym":
        adjacency = normalize_symmetric(adjacency)
    elif normalization == "row":
        adjacency = normalize_rows(adjacency)
    return GraphPartition.from_scipy(adjacency, dtype=dtype)
