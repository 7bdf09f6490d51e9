"""
Graph Convolutional Network training engine with hand-written forward and
backward passes over device buffers.
"""

from .buffers import DeviceBuffer, Location
from .config import TrainingConfig
from .data import GraphDataset, convert_cora_dataset, download_cora_dataset, load_dataset
from .errors import (
    AllocationError,
    ConfigResolutionError,
    GCNEngineError,
    IngestionFormatError,
    InvalidLayerIndex,
    ReplicaStateError,
    TransferError,
)
from .export import export_weights_to_json, weights_to_dict
from .graph import GraphPartition, build_adjacency
from .modules import LayerKind, Module, SplitTag
from .optimizer import Adam, AdamState
from .problem import Problem
from .replica import Replica
from .timing import TimingContext
from .topology import LayerSpec, build_topology, load_layer_specs
from .training import TrainingResult, train_model

__all__ = [
    "DeviceBuffer",
    "Location",
    "TrainingConfig",
    "GraphDataset",
    "convert_cora_dataset",
    "download_cora_dataset",
    "load_dataset",
    "AllocationError",
    "ConfigResolutionError",
    "GCNEngineError",
    "IngestionFormatError",
    "InvalidLayerIndex",
    "ReplicaStateError",
    "TransferError",
    "export_weights_to_json",
    "weights_to_dict",
    "GraphPartition",
    "build_adjacency",
    "LayerKind",
    "Module",
    "SplitTag",
    "Adam",
    "AdamState",
    "Problem",
    "Replica",
    "TimingContext",
    "LayerSpec",
    "build_topology",
    "load_layer_specs",
    "TrainingResult",
    "train_model",
]
