from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp
import torch

from pygcn_engine.buffers import DeviceBuffer
from pygcn_engine.errors import ConfigResolutionError
from pygcn_engine.graph import GraphPartition, build_adjacency
from pygcn_engine.modules import (
    CrossEntropyLoss,
    DenseMatMul,
    Dropout,
    GraphAggregate,
    ReLU,
    SparseFeatureProject,
)
from pygcn_engine.timing import TimingContext


def _empty(size: int, name: str = "buf") -> DeviceBuffer:
    return DeviceBuffer(name).allocate(size)


@pytest.mark.parametrize("normalization", ["sym", "row"])
def test_graph_aggregate_backward_is_adjoint(make_buffer, normalization):
    torch.manual_seed(0)
    graph = build_adjacency(5, np.array([[0, 1], [1, 2], [2, 3], [3, 4], [0, 4]]), normalization)
    x = make_buffer(torch.randn(5 * 3), "x")
    y = _empty(15, "y")
    g = make_buffer(torch.randn(5 * 3), "g")
    gx = _empty(15, "gx")
    module = GraphAggregate("graphsum", 5, x, y, gx, g, graph=graph)
    timing = TimingContext()

    module.forward(timing)
    module.backward(timing)

    dense = torch.from_numpy(graph.to_scipy().toarray())
    assert torch.allclose(y.data.view(5, 3), dense @ x.data.view(5, 3), atol=1e-6)
    lhs = torch.dot(gx.data, x.data)
    rhs = torch.dot(g.data, y.data)
    assert torch.allclose(lhs, rhs, atol=1e-5)
    assert timing.calls["graphsum.forward"] == 1
    assert timing.calls["graphsum.backward"] == 1


def test_dropout_drops_about_rate_and_rescales():
    size, rate = 20000, 0.3
    fractions = []
    for seed in range(5):
        values = DeviceBuffer("x").allocate(size)
        values.fill_(1.0)
        generator = torch.Generator().manual_seed(seed)
        module = Dropout("dropout", size, values, values, None, None, rate=rate, generator=generator)
        module.forward(TimingContext())
        fractions.append(float((values.data == 0).float().mean()))
        kept = values.data[values.data != 0]
        assert torch.allclose(kept, torch.full_like(kept, 1.0 / (1.0 - rate)))
    assert abs(np.mean(fractions) - rate) < 0.02


def test_dropout_backward_reuses_forward_mask(make_buffer):
    generator = torch.Generator().manual_seed(3)
    x = make_buffer(torch.ones(100), "x")
    g_out = make_buffer(torch.arange(1, 101, dtype=torch.float32), "g")
    g_in = _empty(100, "gx")
    module = Dropout("dropout", 100, x, x, g_in, g_out, rate=0.5, generator=generator)
    timing = TimingContext()
    module.forward(timing)

    module.backward(timing)
    first = g_in.data.clone()
    module.backward(timing)

    assert torch.equal(first, g_in.data)
    assert torch.equal(first == 0, x.data == 0)
    assert torch.allclose(first, g_out.data * module.mask)


def test_dropout_is_identity_in_eval_mode(make_buffer):
    x = make_buffer(torch.arange(10, dtype=torch.float32))
    module = Dropout("dropout", 10, x, x, None, None, rate=0.9, generator=torch.Generator())
    module.train(False)
    module.forward(TimingContext())
    assert x.data.tolist() == list(range(10))


def test_dropout_rejects_invalid_rate(make_buffer):
    x = make_buffer([1.0])
    with pytest.raises(ConfigResolutionError):
        Dropout("dropout", 1, x, x, None, None, rate=1.0, generator=torch.Generator())


def test_relu_forward_and_backward(make_buffer):
    x = make_buffer([-1.0, 0.0, 2.0, -3.0, 4.0, 0.5], "x")
    g = make_buffer([1.0, 2.0, 3.0, 4.0, 5.0, 6.0], "g")
    module = ReLU("relu", 3, x, x, g, g)
    timing = TimingContext()

    module.forward(timing)
    assert x.data.tolist() == [0.0, 0.0, 2.0, 0.0, 4.0, 0.5]

    module.backward(timing)
    assert g.data.tolist() == [0.0, 0.0, 3.0, 0.0, 5.0, 6.0]


def test_dense_matmul_matches_autograd(make_buffer):
    torch.manual_seed(1)
    x_ref = torch.randn(4, 3, requires_grad=True)
    w_ref = torch.randn(3, 2, requires_grad=True)
    g = torch.randn(4, 2)
    (x_ref @ w_ref).backward(g)

    x = make_buffer(x_ref.detach(), "x")
    y = _empty(8, "y")
    gx = _empty(12, "gx")
    gy = make_buffer(g, "gy")
    w = make_buffer(w_ref.detach(), "w")
    gw = _empty(6, "gw")
    module = DenseMatMul("matmul", 4, x, y, gx, gy, weight=w, weight_grad=gw, in_dim=3, out_dim=2)
    timing = TimingContext()
    module.forward(timing)
    module.backward(timing)

    assert torch.allclose(y.data.view(4, 2), (x_ref @ w_ref).detach(), atol=1e-6)
    assert torch.allclose(gw.data.view(3, 2), w_ref.grad, atol=1e-6)
    assert torch.allclose(gx.data.view(4, 3), x_ref.grad, atol=1e-6)

    module.backward(timing)
    assert torch.allclose(gw.data.view(3, 2), 2 * w_ref.grad, atol=1e-6)


def test_sparse_feature_project_matches_dense(make_buffer):
    torch.manual_seed(2)
    dense = sp.random(5, 4, density=0.5, random_state=0, dtype=np.float32)
    features = GraphPartition.from_scipy(dense)
    x_dense = torch.from_numpy(features.to_scipy().toarray()).requires_grad_(True)
    w_ref = torch.randn(4, 3, requires_grad=True)
    g = torch.randn(5, 3)
    (x_dense @ w_ref).backward(g)

    values = make_buffer(features.edge_values, "X")
    y = _empty(15, "y")
    gv = _empty(features.edges, "gX")
    gy = make_buffer(g, "gy")
    w = make_buffer(w_ref.detach(), "w")
    gw = _empty(12, "gw")
    module = SparseFeatureProject(
        "sprmul", 5, values, y, gv, gy, weight=w, weight_grad=gw, features=features, out_dim=3
    )
    timing = TimingContext()
    module.forward(timing)
    module.backward(timing)

    assert torch.allclose(y.data.view(5, 3), (x_dense @ w_ref).detach(), atol=1e-5)
    assert torch.allclose(gw.data.view(4, 3), w_ref.grad, atol=1e-5)
    rows = torch.from_numpy(features.row_indices())
    cols = torch.from_numpy(features.column_indices)
    assert torch.allclose(gv.data, x_dense.grad[rows, cols], atol=1e-5)


def test_cross_entropy_masks_non_train_nodes(make_buffer):
    logits = torch.tensor([[2.0, 1.0], [0.5, 0.5], [1.0, 3.0], [0.0, -1.0]])
    labels = torch.tensor([0, 1, 1, 0])
    split = torch.tensor([1, 1, 2, 3])
    x = make_buffer(logits, "logits")
    probs = _empty(8, "probs")
    gx = make_buffer(torch.full((8,), 7.0), "glogits")
    module = CrossEntropyLoss(
        "cross_entropy", 4, x, probs, gx, _empty(8), labels=labels, split=split, num_classes=2
    )
    timing = TimingContext()
    module.forward(timing)
    module.backward(timing)

    softmax = torch.softmax(logits, dim=1)
    assert torch.allclose(module.probabilities.sum(dim=1), torch.ones(4))
    assert torch.allclose(probs.data.view(4, 2), softmax)

    expected = softmax - torch.nn.functional.one_hot(labels, 2).float()
    expected[2:] = 0.0
    assert torch.allclose(gx.data.view(4, 2), expected, atol=1e-6)
    assert torch.all(gx.data.view(4, 2)[2:] == 0)

    log_probs = torch.log_softmax(logits, dim=1)
    assert module.cnt == 2
    assert module.wrong == 1
    assert module.loss == pytest.approx(float(-(log_probs[0, 0] + log_probs[1, 1])), rel=1e-5)
    assert module.accuracy == pytest.approx(0.5)

    total, wrong, count = module.metrics(3)
    assert (wrong, count) == (0, 1)
    assert total == pytest.approx(float(-log_probs[3, 0]), rel=1e-5)
