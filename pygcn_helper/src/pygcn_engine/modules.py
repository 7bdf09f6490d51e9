"""
Layer modules with hand-written forward and backward passes.

Modules never own the chain buffers they read and write; they borrow them
from the replica's buffer chain. In-place layers receive the same buffer as
input and output.
"""

from __future__ import annotations

import abc
import enum
from typing import Optional

import torch
import torch.nn.functional as F

from .buffers import DeviceBuffer
from .errors import ConfigResolutionError
from .graph import GraphPartition
from .timing import TimingContext


class LayerKind(str, enum.Enum):
    DROPOUT = "dropout"
    SPRMUL = "sprmul"
    GRAPHSUM = "graphsum"
    RELU = "relu"
    MATMUL = "matmul"
    CROSS_ENTROPY = "cross_entropy"


class SplitTag(enum.IntEnum):
    UNASSIGNED = 0
    TRAIN = 1
    VALIDATION = 2
    TEST = 3


class Module(abc.ABC):
    kind: LayerKind

    def __init__(
        self,
        name: str,
        num_nodes: int,
        forward_input: DeviceBuffer,
        forward_output: DeviceBuffer,
        backward_input_grad: Optional[DeviceBuffer],
        backward_output_grad: Optional[DeviceBuffer],
        weight: Optional[DeviceBuffer] = None,
        weight_grad: Optional[DeviceBuffer] = None,
    ) -> None:
        self.name = name
        self.num_nodes = num_nodes
        self.forward_input = forward_input
        self.forward_output = forward_output
        self.backward_input_grad = backward_input_grad
        self.backward_output_grad = backward_output_grad
        self.weight = weight
        self.weight_grad = weight_grad
        self.training = True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"

    @property
    def parameterized(self) -> bool:
        return self.weight is not None

    @property
    def in_place(self) -> bool:
        return self.forward_input is self.forward_output

    def train(self, mode: bool = True) -> "Module":
        self.training = mode
        return self

    def forward(self, timing: TimingContext) -> None:
        with timing.measure(f"{self.kind.value}.forward"):
            self._forward()

    def backward(self, timing: TimingContext) -> None:
        with timing.measure(f"{self.kind.value}.backward"):
            self._backward()

    @abc.abstractmethod
    def _forward(self) -> None:
        ...

    @abc.abstractmethod
    def _backward(self) -> None:
        ...

    def _rows(self, buffer: DeviceBuffer) -> torch.Tensor:
        return buffer.data.view(self.num_nodes, -1)


class Dropout(Module):
    """Inverted dropout; the mask is kept until the next forward call."""

    kind = LayerKind.DROPOUT

    def __init__(self, *args, rate: float, generator: torch.Generator, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        if not 0.0 <= rate < 1.0:
            raise ConfigResolutionError(f"Dropout rate must be in [0, 1), got {rate}")
        self.rate = rate
        self.generator = generator
        self.mask = torch.empty_like(self.forward_input.data)
        self._masked = False

    def _forward(self) -> None:
        self._masked = self.training and self.rate > 0.0
        if not self._masked:
            if not self.in_place:
                self.forward_output.data.copy_(self.forward_input.data)
            return
        self.mask.bernoulli_(1.0 - self.rate, generator=self.generator)
        self.mask.mul_(1.0 / (1.0 - self.rate))
        self.forward_output.for_each(lambda _, x: x * self.mask, peer=self.forward_input)

    def _backward(self) -> None:
        if self.backward_input_grad is None:
            return
        if not self._masked:
            if self.backward_input_grad is not self.backward_output_grad:
                self.backward_input_grad.data.copy_(self.backward_output_grad.data)
            return
        self.backward_input_grad.for_each(
            lambda _, g: g * self.mask, peer=self.backward_output_grad
        )


class SparseFeatureProject(Module):
    """``output = X @ W`` where X is the sparse feature matrix.

    The sparse values are read from ``forward_input`` on every call, so an
    upstream dropout on the feature values is seen here.
    """

    kind = LayerKind.SPRMUL

    def __init__(self, *args, features: GraphPartition, out_dim: int, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        device = self.forward_input.data.device
        self.in_dim = features.columns
        self.out_dim = out_dim
        self._shape = features.shape
        self._indices = features.coo_indices(device)

    def _matrix(self) -> torch.Tensor:
        return torch.sparse_coo_tensor(self._indices, self.forward_input.data, self._shape)

    def _weight(self) -> torch.Tensor:
        return self.weight.data.view(self.in_dim, self.out_dim)

    def _forward(self) -> None:
        self._rows(self.forward_output).copy_(torch.sparse.mm(self._matrix(), self._weight()))

    def _backward(self) -> None:
        grad = self._rows(self.backward_output_grad)
        self.weight_grad.data.view(self.in_dim, self.out_dim).add_(
            torch.sparse.mm(self._matrix().t(), grad)
        )
        if self.backward_input_grad is not None:
            # d(out)/d(X_ij) only exists at the stored nonzeros
            rows, cols = self._indices
            self.backward_input_grad.data.copy_((grad[rows] * self._weight()[cols]).sum(dim=1))


class GraphAggregate(Module):
    """Neighbor aggregation ``output = A @ input``; backward applies ``A^T``."""

    kind = LayerKind.GRAPHSUM

    def __init__(self, *args, graph: GraphPartition, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        data = self.forward_input.data
        self.adjacency = graph.to_torch(data.device, data.dtype).coalesce()
        if graph.is_symmetric():
            self.adjacency_t = self.adjacency
        else:
            self.adjacency_t = graph.transpose().to_torch(data.device, data.dtype).coalesce()

    def _forward(self) -> None:
        self._rows(self.forward_output).copy_(
            torch.sparse.mm(self.adjacency, self._rows(self.forward_input))
        )

    def _backward(self) -> None:
        if self.backward_input_grad is None:
            return
        self._rows(self.backward_input_grad).copy_(
            torch.sparse.mm(self.adjacency_t, self._rows(self.backward_output_grad))
        )


class ReLU(Module):
    kind = LayerKind.RELU

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.mask = torch.empty_like(self.forward_input.data, dtype=torch.bool)

    def _forward(self) -> None:
        torch.gt(self.forward_input.data, 0, out=self.mask)
        self.forward_output.for_each(lambda _, x: x * self.mask, peer=self.forward_input)

    def _backward(self) -> None:
        if self.backward_input_grad is None:
            return
        self.backward_input_grad.for_each(
            lambda _, g: g * self.mask, peer=self.backward_output_grad
        )


class DenseMatMul(Module):
    kind = LayerKind.MATMUL

    def __init__(self, *args, in_dim: int, out_dim: int, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.in_dim = in_dim
        self.out_dim = out_dim

    def _weight(self) -> torch.Tensor:
        return self.weight.data.view(self.in_dim, self.out_dim)

    def _forward(self) -> None:
        self._rows(self.forward_output).copy_(
            torch.mm(self._rows(self.forward_input), self._weight())
        )

    def _backward(self) -> None:
        grad = self._rows(self.backward_output_grad)
        self.weight_grad.data.view(self.in_dim, self.out_dim).add_(
            torch.mm(self._rows(self.forward_input).t(), grad)
        )
        if self.backward_input_grad is not None:
            self._rows(self.backward_input_grad).copy_(torch.mm(grad, self._weight().t()))


class CrossEntropyLoss(Module):
    """
    Softmax cross entropy restricted to one split.

    Forward writes per-node class probabilities for every node into the
    output buffer and counts ``loss``, ``wrong`` and ``cnt`` over the nodes
    tagged with ``split_tag``. Backward writes ``softmax - one_hot`` for
    those nodes and zero for every other node.
    """

    kind = LayerKind.CROSS_ENTROPY

    def __init__(
        self,
        *args,
        labels: torch.Tensor,
        split: torch.Tensor,
        num_classes: int,
        split_tag: SplitTag = SplitTag.TRAIN,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        dtype = self.forward_input.data.dtype
        self.num_classes = num_classes
        self.labels = labels
        self.split = split
        self.split_tag = split_tag
        self.active = split == int(split_tag)
        self._active_rows = self.active.unsqueeze(1).to(dtype)
        self._target = F.one_hot(labels, num_classes).to(dtype) * self._active_rows
        self._log_probs = torch.zeros(
            self.num_nodes, num_classes, dtype=dtype, device=labels.device
        )
        self.loss = 0.0
        self.wrong = 0
        self.cnt = 0

    @property
    def mean_loss(self) -> float:
        return self.loss / self.cnt if self.cnt else 0.0

    @property
    def accuracy(self) -> float:
        return (self.cnt - self.wrong) / self.cnt if self.cnt else 0.0

    @property
    def probabilities(self) -> torch.Tensor:
        return self._rows(self.forward_output)

    def reset_counters(self) -> None:
        self.loss = 0.0
        self.wrong = 0
        self.cnt = 0

    def _forward(self) -> None:
        self._log_probs.copy_(torch.log_softmax(self._rows(self.forward_input), dim=1))
        torch.exp(self._log_probs, out=self.probabilities)
        self.loss, self.wrong, self.cnt = self.metrics(self.split_tag)

    def metrics(self, split_tag: SplitTag) -> tuple[float, int, int]:
        """Total loss, misclassified count and node count for one split."""
        mask = self.split == int(split_tag)
        cnt = int(mask.sum().item())
        if cnt == 0:
            return 0.0, 0, 0
        labels = self.labels[mask]
        picked = self._log_probs[mask].gather(1, labels.unsqueeze(1))
        predictions = self._log_probs[mask].argmax(dim=1)
        wrong = int((predictions != labels).sum().item())
        return float(-picked.sum().item()), wrong, cnt

    def _backward(self) -> None:
        grad = self._rows(self.backward_input_grad)
        torch.mul(self.probabilities, self._active_rows, out=grad)
        grad.sub_(self._target)
