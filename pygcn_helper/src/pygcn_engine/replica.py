from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Union

import numpy as np
import torch

from .buffers import DeviceBuffer, Location
from .config import TrainingConfig
from .data import GraphDataset
from .errors import InvalidLayerIndex, ReplicaStateError
from .modules import CrossEntropyLoss, Module, SplitTag
from .optimizer import Adam
from .timing import TimingContext
from .topology import BufferChain, Topology, WeightSet, build_topology

logger = logging.getLogger(__name__)


class ReplicaState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    RELEASED = "released"


class Phase(enum.Enum):
    IDLE = "idle"
    FORWARD = "forward"
    BACKWARD = "backward"


@dataclass
class SplitMetrics:
    loss: float
    accuracy: float
    count: int


class Replica:
    """
    One device's copy of the graph, features, module chain and optimizer.

    Lifecycle: ``init`` once, then any number of forward/backward/optimize
    cycles, ``reset`` between runs and ``release`` at teardown.
    """

    def __init__(
        self,
        config: TrainingConfig,
        device: Union[str, torch.device] = "cpu",
        replica_id: int = 0,
    ) -> None:
        self.config = config
        self.device = torch.device(device)
        self.replica_id = replica_id
        self.state = ReplicaState.UNINITIALIZED
        self.phase = Phase.IDLE
        self.training = config.training
        self.timing = TimingContext(synchronize=self.device.type == "cuda")
        self.generator: Optional[torch.Generator] = None
        self.topology: Optional[Topology] = None
        self.optimizer: Optional[Adam] = None
        self.features: Optional[DeviceBuffer] = None
        self.labels: Optional[DeviceBuffer] = None
        self.split: Optional[DeviceBuffer] = None
        self._feature_snapshot: Optional[torch.Tensor] = None
        self._has_output = False

    def __repr__(self) -> str:
        return f"Replica(id={self.replica_id}, device={self.device}, state={self.state.value})"

    def _require(self, state: ReplicaState) -> None:
        if self.state is not state:
            raise ReplicaStateError(
                f"Replica {self.replica_id} is {self.state.value}, expected {state.value}"
            )

    def init(self, dataset: GraphDataset, dims: Mapping[str, Optional[int]]) -> None:
        """
        Allocate every buffer, build the module chain and stage inputs on the device.

        On any failure the partially built state is released and the replica
        stays uninitialized.
        """

        self._require(ReplicaState.UNINITIALIZED)
        dtype = self.config.torch_dtype
        dims = dict(dims, num_nodes=dataset.num_nodes)
        try:
            self.generator = torch.Generator(device=self.device)
            self.generator.manual_seed(self.config.seed + self.replica_id)

            self.features = DeviceBuffer("X", self.device, dtype).set_pointer(
                dataset.features.edge_values, location=Location.HOST
            )
            self.features.move(Location.HOST, Location.DEVICE)
            self._feature_snapshot = self.features.data.clone()
            self.labels = DeviceBuffer("labels", self.device, torch.int64).set_pointer(
                dataset.labels, location=Location.HOST
            )
            self.labels.move(Location.HOST, Location.DEVICE)
            self.split = DeviceBuffer("split", self.device, torch.int64).set_pointer(
                dataset.split, location=Location.HOST
            )
            self.split.move(Location.HOST, Location.DEVICE)

            self.topology = build_topology(
                self.config.layer_specs(),
                dims,
                features=dataset.features,
                feature_values=self.features,
                graph=dataset.graph,
                labels=self.labels.data,
                split=self.split.data,
                generator=self.generator,
                default_rate=self.config.dropout,
            )
            self.optimizer = Adam(
                self.topology.weight_sets,
                learning_rate=self.config.learning_rate,
                beta1=self.config.beta1,
                beta2=self.config.beta2,
                eps=self.config.eps,
                weight_decay=self.config.weight_decay,
            )
        except Exception:
            self._release_buffers()
            raise

        self.train(self.training)
        self.state = ReplicaState.INITIALIZED
        self.phase = Phase.IDLE
        logger.info(
            "Replica %d initialized on %s: %d nodes, dims %s",
            self.replica_id, self.device, dataset.num_nodes, self.topology.layer_dims,
        )

    @property
    def modules(self) -> List[Module]:
        return self.topology.modules if self.topology is not None else []

    @property
    def chain(self) -> BufferChain:
        self._require(ReplicaState.INITIALIZED)
        return self.topology.chain

    @property
    def weight_sets(self) -> List[WeightSet]:
        return self.topology.weight_sets if self.topology is not None else []

    @property
    def loss_layer(self) -> CrossEntropyLoss:
        self._require(ReplicaState.INITIALIZED)
        return self.topology.modules[-1]

    def weight_set(self, layer_index: int) -> WeightSet:
        self._require(ReplicaState.INITIALIZED)
        weight_set = self.topology.weight_set(layer_index)
        if weight_set is None:
            raise InvalidLayerIndex(f"Layer {layer_index} has no weight set")
        return weight_set

    def train(self, mode: bool = True) -> "Replica":
        self.training = mode
        for module in self.modules:
            module.train(mode)
        return self

    def eval(self) -> "Replica":
        return self.train(False)

    def forward(self) -> float:
        """Run every module in order; returns the mean loss over the train split."""
        self._require(ReplicaState.INITIALIZED)
        # in-place layers on chain position 0 overwrite the staged features
        self.features.data.copy_(self._feature_snapshot)
        for module in self.topology.modules:
            module.forward(self.timing)
        self.phase = Phase.FORWARD
        self._has_output = True
        return self.loss_layer.mean_loss

    def backward(self) -> None:
        self._require(ReplicaState.INITIALIZED)
        if self.phase is Phase.IDLE:
            raise ReplicaStateError("backward() needs a preceding forward()")
        self.optimizer.zero_grad()
        for module in reversed(self.topology.modules):
            module.backward(self.timing)
        self.phase = Phase.BACKWARD

    def optimize(self) -> None:
        self._require(ReplicaState.INITIALIZED)
        if self.phase is not Phase.BACKWARD:
            raise ReplicaStateError("optimize() needs a preceding backward()")
        with self.timing.measure("adam"):
            self.optimizer.step()
        self.phase = Phase.IDLE

    def step(self) -> float:
        loss = self.forward()
        self.backward()
        self.optimize()
        return loss

    def evaluate(self, split_tag: SplitTag) -> SplitMetrics:
        """Loss and accuracy for one split from the most recent forward pass."""
        self._require(ReplicaState.INITIALIZED)
        if not self._has_output:
            raise ReplicaStateError("evaluate() needs a preceding forward()")
        total, wrong, count = self.loss_layer.metrics(SplitTag(split_tag))
        if count == 0:
            return SplitMetrics(loss=0.0, accuracy=0.0, count=0)
        return SplitMetrics(loss=total / count, accuracy=(count - wrong) / count, count=count)

    def weights(self) -> Dict[str, np.ndarray]:
        """Host copies of every weight set, shaped ``(in_dim, out_dim)``."""
        self._require(ReplicaState.INITIALIZED)
        return {
            weight_set.name: weight_set.weight.to_numpy().reshape(weight_set.shape)
            for weight_set in self.weight_sets
        }

    def reset(self) -> None:
        """
        Re-stage inputs on the device and clear counters.

        Weights and optimizer moments are kept.
        """

        self._require(ReplicaState.INITIALIZED)
        for buffer in (self.features, self.labels, self.split):
            buffer.move(Location.HOST, Location.DEVICE)
        self._feature_snapshot.copy_(self.features.data)
        self.timing.reset()
        self.loss_layer.reset_counters()
        self.phase = Phase.IDLE
        self._has_output = False
        logger.info("Replica %d reset", self.replica_id)

    def _release_buffers(self) -> None:
        if self.optimizer is not None:
            self.optimizer.release()
        if self.topology is not None:
            self.topology.release()
        for buffer in (self.features, self.labels, self.split):
            if buffer is not None:
                buffer.release()
        self.optimizer = None
        self.topology = None
        self.features = self.labels = self.split = None
        self._feature_snapshot = None

    def release(self) -> None:
        if self.state is ReplicaState.RELEASED:
            return
        self._release_buffers()
        self.state = ReplicaState.RELEASED
        self.phase = Phase.IDLE
        logger.info("Replica %d released", self.replica_id)
