from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import torch

from .buffers import DeviceBuffer
from .errors import ConfigResolutionError
from .graph import GraphPartition
from .modules import (
    CrossEntropyLoss,
    DenseMatMul,
    Dropout,
    GraphAggregate,
    LayerKind,
    Module,
    ReLU,
    SparseFeatureProject,
)

logger = logging.getLogger(__name__)

SYMBOLIC_WIDTHS: tuple[str, ...] = ("in_dim", "out_dim", "hid_dim", "num_nodes")

KIND_ALIASES: Dict[str, LayerKind] = {
    "graph_sum": LayerKind.GRAPHSUM,
    "mul": LayerKind.MATMUL,
    "crossentropy": LayerKind.CROSS_ENTROPY,
}

IN_PLACE_KINDS = frozenset({LayerKind.DROPOUT, LayerKind.RELU})
PARAMETERIZED_KINDS = frozenset({LayerKind.SPRMUL, LayerKind.MATMUL})

# Appended to the previous buffer name to label the buffer a layer produces.
OPERATOR_SYMBOLS: Dict[LayerKind, str] = {
    LayerKind.DROPOUT: "'",
    LayerKind.SPRMUL: "W",
    LayerKind.GRAPHSUM: "A",
    LayerKind.RELU: "+",
    LayerKind.MATMUL: "W",
    LayerKind.CROSS_ENTROPY: "s",
}

DEFAULT_LAYERS: tuple[dict, ...] = (
    {"name": "dropout"},
    {"name": "sprmul", "width": "hid_dim", "decay": True},
    {"name": "graphsum"},
    {"name": "relu"},
    {"name": "dropout"},
    {"name": "matmul", "width": "out_dim"},
    {"name": "graphsum"},
    {"name": "cross_entropy"},
)

Width = Union[int, str, None]


def parse_kind(name: str) -> LayerKind:
    key = name.lower()
    if key in KIND_ALIASES:
        return KIND_ALIASES[key]
    try:
        return LayerKind(key)
    except ValueError as exc:
        raise ConfigResolutionError(f"Unknown layer kind {name!r}") from exc


@dataclass(frozen=True)
class LayerSpec:
    name: str
    width: Width = None
    rate: Optional[float] = None
    decay: bool = False

    def __post_init__(self) -> None:
        parse_kind(self.name)

    @property
    def kind(self) -> LayerKind:
        return parse_kind(self.name)

    @classmethod
    def from_dict(cls, record: Mapping) -> "LayerSpec":
        unknown = set(record) - {"name", "width", "rate", "decay"}
        if "name" not in record or unknown:
            raise ConfigResolutionError(f"Invalid layer record {dict(record)!r}")
        return cls(
            name=str(record["name"]),
            width=record.get("width"),
            rate=record.get("rate"),
            decay=bool(record.get("decay", False)),
        )


def parse_layer_specs(records: Iterable[Union[Mapping, LayerSpec]]) -> List[LayerSpec]:
    return [r if isinstance(r, LayerSpec) else LayerSpec.from_dict(r) for r in records]


def load_layer_specs(path: Path) -> List[LayerSpec]:
    """Read a JSON list of layer records."""
    with Path(path).expanduser().open("r", encoding="utf-8") as handle:
        records = json.load(handle)
    if not isinstance(records, list):
        raise ConfigResolutionError(f"{path} must contain a JSON list of layer records")
    return parse_layer_specs(records)


def resolve_width(width: Width, dims: Mapping[str, Optional[int]]) -> int:
    if isinstance(width, bool):
        raise ConfigResolutionError(f"Invalid layer width {width!r}")
    if isinstance(width, int):
        value = width
    elif isinstance(width, str) and width.isdigit():
        value = int(width)
    elif isinstance(width, str) and width in SYMBOLIC_WIDTHS:
        value = dims.get(width)
        if value is None:
            raise ConfigResolutionError(f"Symbolic width {width!r} is not set")
    else:
        raise ConfigResolutionError(f"Cannot resolve layer width {width!r}")
    if value <= 0:
        raise ConfigResolutionError(f"Layer width must be positive, got {value}")
    return int(value)


def resolve_layer_dims(specs: Sequence[LayerSpec], dims: Mapping[str, Optional[int]]) -> List[int]:
    """
    Compute the feature width at every chain position.

    Position 0 is the sparse feature matrix (``in_dim`` columns); position
    ``i + 1`` is the output of layer ``i``. Only parameterized layers may
    change the width, the loss layer must see ``out_dim`` classes, and the
    sparse projection must read the raw feature matrix.
    """

    if not specs:
        raise ConfigResolutionError("The layer list is empty")
    kinds = [spec.kind for spec in specs]
    if kinds[-1] is not LayerKind.CROSS_ENTROPY or kinds.count(LayerKind.CROSS_ENTROPY) != 1:
        raise ConfigResolutionError("cross_entropy must appear exactly once, as the last layer")

    layer_dims = [resolve_width("in_dim", dims)]
    sparse = True
    for index, (spec, kind) in enumerate(zip(specs, kinds)):
        current = layer_dims[-1]
        if kind is LayerKind.SPRMUL and not sparse:
            raise ConfigResolutionError(
                f"Layer {index} (sprmul) must read the sparse feature matrix"
            )
        if kind not in (LayerKind.SPRMUL, LayerKind.DROPOUT) and sparse:
            raise ConfigResolutionError(
                f"Layer {index} ({kind.value}) needs a dense input; add a sprmul layer first"
            )
        width = current if spec.width is None else resolve_width(spec.width, dims)
        if kind not in PARAMETERIZED_KINDS and width != current:
            raise ConfigResolutionError(
                f"Layer {index} ({kind.value}) cannot change width {current} -> {width}"
            )
        if kind is LayerKind.CROSS_ENTROPY and width != dims.get("out_dim"):
            raise ConfigResolutionError(
                f"Loss layer sees {width} classes but out_dim is {dims.get('out_dim')}"
            )
        if kind is LayerKind.SPRMUL:
            sparse = False
        layer_dims.append(width)
    return layer_dims


@dataclass
class ChainSlot:
    value: DeviceBuffer
    grad: Optional[DeviceBuffer]


class BufferChain:
    """
    Value/gradient buffer pairs connecting consecutive modules.

    Positions index into an arena of slots; in-place layers make two
    positions share one arena slot, which :meth:`aliases` exposes.
    """

    def __init__(self) -> None:
        self._arena: List[ChainSlot] = []
        self._positions: List[int] = []

    def __len__(self) -> int:
        return len(self._positions)

    def append(self, slot: ChainSlot) -> int:
        self._arena.append(slot)
        self._positions.append(len(self._arena) - 1)
        return len(self._positions) - 1

    def append_alias(self) -> int:
        if not self._positions:
            raise ConfigResolutionError("Cannot alias into an empty buffer chain")
        self._positions.append(self._positions[-1])
        return len(self._positions) - 1

    def aliases(self, first: int, second: int) -> bool:
        return self._positions[first] == self._positions[second]

    def value(self, position: int) -> DeviceBuffer:
        return self._arena[self._positions[position]].value

    def grad(self, position: int) -> Optional[DeviceBuffer]:
        return self._arena[self._positions[position]].grad

    def release(self) -> None:
        for slot in self._arena:
            if slot.grad is not None:
                slot.grad.release()
            slot.value.release()


@dataclass
class WeightSet:
    name: str
    layer_index: int
    in_dim: int
    out_dim: int
    weight: DeviceBuffer
    grad: DeviceBuffer
    decay: bool = False

    @property
    def shape(self) -> tuple[int, int]:
        return (self.in_dim, self.out_dim)

    def release(self) -> None:
        self.weight.release()
        self.grad.release()


@dataclass
class Topology:
    specs: List[LayerSpec]
    layer_dims: List[int]
    chain: BufferChain
    modules: List[Module] = field(default_factory=list)
    weight_sets: List[WeightSet] = field(default_factory=list)

    def weight_set(self, layer_index: int) -> Optional[WeightSet]:
        for weight_set in self.weight_sets:
            if weight_set.layer_index == layer_index:
                return weight_set
        return None

    def release(self) -> None:
        for weight_set in self.weight_sets:
            weight_set.release()
        self.chain.release()


def xavier_uniform_(
    buffer: DeviceBuffer, fan_in: int, fan_out: int, generator: torch.Generator
) -> None:
    bound = math.sqrt(6.0 / (fan_in + fan_out))
    buffer.data.uniform_(-bound, bound, generator=generator)


def build_topology(
    specs: Sequence[LayerSpec],
    dims: Mapping[str, Optional[int]],
    features: GraphPartition,
    feature_values: DeviceBuffer,
    graph: GraphPartition,
    labels: torch.Tensor,
    split: torch.Tensor,
    generator: torch.Generator,
    default_rate: float = 0.5,
) -> Topology:
    """
    Allocate the buffer chain and weight sets and instantiate one module per layer.

    ``feature_values`` already holds the sparse feature values on the device
    and becomes chain position 0. Nothing is returned on failure; buffers
    allocated before the failure are released.
    """

    specs = list(specs)
    layer_dims = resolve_layer_dims(specs, dims)
    num_nodes = int(dims["num_nodes"])
    if features.nodes != num_nodes or graph.nodes != num_nodes:
        raise ConfigResolutionError(
            f"Feature rows ({features.nodes}) and graph nodes ({graph.nodes}) "
            f"must both equal num_nodes ({num_nodes})"
        )
    if feature_values.size != features.edges:
        raise ConfigResolutionError("Feature value buffer does not match the feature matrix")

    device = feature_values.device
    dtype = feature_values.dtype
    chain = BufferChain()
    topology = Topology(specs=specs, layer_dims=layer_dims, chain=chain)
    names = ["X"]
    chain.append(ChainSlot(value=feature_values, grad=None))

    try:
        for index, spec in enumerate(specs):
            kind = spec.kind
            names.append(names[-1] + OPERATOR_SYMBOLS[kind])
            if kind in IN_PLACE_KINDS:
                chain.append_alias()
                continue
            size = num_nodes * layer_dims[index + 1]
            value = DeviceBuffer(names[-1], device, dtype).allocate(size)
            grad = DeviceBuffer(f"d{names[-1]}", device, dtype).allocate(size)
            chain.append(ChainSlot(value=value, grad=grad))
            logger.debug("Layer %d (%s): %s[%d]", index, kind.value, names[-1], size)

        for index, spec in enumerate(specs):
            if spec.kind not in PARAMETERIZED_KINDS:
                continue
            in_dim, out_dim = layer_dims[index], layer_dims[index + 1]
            name = f"W{len(topology.weight_sets)}"
            weight_set = WeightSet(
                name=name,
                layer_index=index,
                in_dim=in_dim,
                out_dim=out_dim,
                weight=DeviceBuffer(name, device, dtype).allocate(in_dim * out_dim),
                grad=DeviceBuffer(f"d{name}", device, dtype).allocate(in_dim * out_dim),
                decay=spec.decay,
            )
            xavier_uniform_(weight_set.weight, in_dim, out_dim, generator)
            topology.weight_sets.append(weight_set)

        for index, spec in enumerate(specs):
            topology.modules.append(
                _make_module(
                    index, spec, topology, num_nodes, features, graph, labels, split,
                    generator, default_rate,
                )
            )
    except Exception:
        topology.release()
        raise

    if len(chain) != len(specs) + 1:
        raise ConfigResolutionError("Buffer chain length does not match the layer list")
    logger.info(
        "Built %d layers (%s), dims %s, %d weight sets",
        len(specs),
        " -> ".join(spec.kind.value for spec in specs),
        layer_dims,
        len(topology.weight_sets),
    )
    return topology


def _make_module(
    index: int,
    spec: LayerSpec,
    topology: Topology,
    num_nodes: int,
    features: GraphPartition,
    graph: GraphPartition,
    labels: torch.Tensor,
    split: torch.Tensor,
    generator: torch.Generator,
    default_rate: float,
) -> Module:
    chain = topology.chain
    kind = spec.kind
    buffers = dict(
        name=f"{kind.value}_{index}",
        num_nodes=num_nodes,
        forward_input=chain.value(index),
        forward_output=chain.value(index + 1),
        backward_input_grad=chain.grad(index),
        backward_output_grad=chain.grad(index + 1),
    )
    weight_set = topology.weight_set(index)
    if weight_set is not None:
        buffers.update(weight=weight_set.weight, weight_grad=weight_set.grad)

    if kind is LayerKind.DROPOUT:
        rate = default_rate if spec.rate is None else float(spec.rate)
        return Dropout(**buffers, rate=rate, generator=generator)
    if kind is LayerKind.SPRMUL:
        return SparseFeatureProject(**buffers, features=features, out_dim=weight_set.out_dim)
    if kind is LayerKind.GRAPHSUM:
        return GraphAggregate(**buffers, graph=graph)
    if kind is LayerKind.RELU:
        return ReLU(**buffers)
    if kind is LayerKind.MATMUL:
        return DenseMatMul(**buffers, in_dim=weight_set.in_dim, out_dim=weight_set.out_dim)
    return CrossEntropyLoss(
        **buffers, labels=labels, split=split, num_classes=topology.layer_dims[index]
    )
