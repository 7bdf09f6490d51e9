from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp
import torch

from pygcn_engine.buffers import DeviceBuffer
from pygcn_engine.config import TrainingConfig
from pygcn_engine.data import GraphDataset
from pygcn_engine.graph import GraphPartition, build_adjacency


@pytest.fixture
def make_buffer():
    def _make(values, name: str = "buf", dtype: torch.dtype = torch.float32) -> DeviceBuffer:
        tensor = torch.as_tensor(values, dtype=dtype).reshape(-1)
        buffer = DeviceBuffer(name, dtype=dtype).allocate(tensor.numel())
        buffer.data.copy_(tensor)
        return buffer

    return _make


@pytest.fixture
def tiny_dataset() -> GraphDataset:
    """4 nodes, 2 features, 2 classes, split [train, train, val, test]."""
    features = sp.csr_matrix(
        np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0], [0.0, 2.0]], dtype=np.float32)
    )
    edges = np.array([[0, 1], [1, 2], [2, 3]])
    return GraphDataset(
        graph=build_adjacency(4, edges, "sym"),
        features=GraphPartition.from_scipy(features),
        labels=np.array([0, 1, 0, 1], dtype=np.int64),
        split=np.array([1, 1, 2, 3], dtype=np.int64),
    )


@pytest.fixture
def tiny_config() -> TrainingConfig:
    return TrainingConfig(in_dim=2, out_dim=2, hid_dim=2, seed=0)


@pytest.fixture
def tiny_files(tmp_path):
    feature_file = tmp_path / "features.txt"
    feature_file.write_text("0 0:1.0\n1 1:1.0\n0 0:1.0 1:1.0\n1 1:2.0\n", encoding="utf-8")
    split_file = tmp_path / "split.txt"
    split_file.write_text("1\n1\n2\n3\n", encoding="utf-8")
    graph_file = tmp_path / "graph.txt"
    graph_file.write_text("0 1\n1 2\n2 3\n", encoding="utf-8")
    return feature_file, split_file, graph_file


@pytest.fixture
def separable_dataset() -> GraphDataset:
    """24 nodes in two classes; features and edges both follow the class."""
    rng = np.random.default_rng(0)
    num_nodes = 24
    labels = np.arange(num_nodes, dtype=np.int64) % 2
    dense = rng.uniform(0.0, 0.2, size=(num_nodes, 6)).astype(np.float32)
    dense[np.arange(num_nodes), labels] += 1.0
    edges = [(i, i + 2) for i in range(num_nodes - 2)]
    split = np.zeros(num_nodes, dtype=np.int64)
    split[:12] = 1
    split[12:18] = 2
    split[18:] = 3
    return GraphDataset(
        graph=build_adjacency(num_nodes, np.array(edges), "sym"),
        features=GraphPartition.from_scipy(sp.csr_matrix(dense)),
        labels=labels,
        split=split,
    )
