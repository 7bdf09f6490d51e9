from __future__ import annotations

import dataclasses
import logging
from typing import Dict, List, Optional

import numpy as np

from .config import TrainingConfig
from .data import GraphDataset, load_dataset
from .errors import ConfigResolutionError, InvalidLayerIndex
from .replica import Replica

logger = logging.getLogger(__name__)


class Problem:
    """
    Training controller: ingests the input files and drives one replica per device.

    Every replica receives the full, unpartitioned dataset; the arrays are
    shared between replicas and must not be modified after ingestion.
    """

    def __init__(self, config: TrainingConfig) -> None:
        self.config = config
        self.dataset: Optional[GraphDataset] = None
        self.dims: Dict[str, int] = {}
        self.replicas: List[Replica] = []

    def ingest(self) -> GraphDataset:
        config = self.config
        if config.feature_file is None or config.split_file is None:
            raise ValueError("feature_file and split_file are required for ingestion")
        dataset = load_dataset(
            config.feature_file,
            config.split_file,
            graph_file=config.graph_file,
            index_base=config.feature_index_base,
            strict=config.strict_ingestion,
            normalization=config.normalization,
            normalize_features=config.normalize_features,
            dtype=config.numpy_dtype,
        )
        return self.set_dataset(dataset)

    def set_dataset(self, dataset: GraphDataset) -> GraphDataset:
        """Adopt an in-memory dataset and resolve ``in_dim``/``out_dim`` against it."""

        features = dataset.features
        expected = self.config.numpy_dtype
        for name, partition in (("features", features), ("graph", dataset.graph)):
            if partition.edge_values.dtype != expected:
                raise ConfigResolutionError(
                    f"{name} values are {partition.edge_values.dtype} but precision "
                    f"{self.config.precision!r} needs {expected}"
                )

        in_dim = self.config.in_dim
        if in_dim is None:
            in_dim = features.columns
        elif in_dim < features.columns:
            raise ConfigResolutionError(
                f"in_dim={in_dim} is smaller than the {features.columns} feature columns"
            )
        elif in_dim > features.columns:
            dataset = dataclasses.replace(
                dataset, features=dataclasses.replace(features, columns=in_dim)
            )

        max_label = int(dataset.labels.max()) if dataset.labels.size else -1
        out_dim = self.config.out_dim
        if out_dim is None:
            out_dim = max_label + 1
        elif out_dim <= max_label:
            raise ConfigResolutionError(f"out_dim={out_dim} but labels go up to {max_label}")

        self.dataset = dataset
        self.dims = {
            "in_dim": in_dim,
            "out_dim": out_dim,
            "hid_dim": self.config.hid_dim,
            "num_nodes": dataset.num_nodes,
        }
        return dataset

    def init(self) -> None:
        if self.replicas:
            raise RuntimeError("Problem is already initialized")
        if self.dataset is None:
            self.ingest()
        try:
            for index, device in enumerate(self.config.devices):
                replica = Replica(self.config, device, replica_id=index)
                replica.init(self.dataset, self.dims)
                self.replicas.append(replica)
        except Exception:
            self.release()
            raise
        if len(self.replicas) > 1:
            logger.warning(
                "%d replicas train independently on the same unpartitioned data",
                len(self.replicas),
            )

    def replica(self, index: int = 0) -> Replica:
        if not self.replicas:
            raise RuntimeError("Problem is not initialized")
        return self.replicas[index]

    def train(self, mode: bool = True) -> None:
        for replica in self.replicas:
            replica.train(mode)

    def step(self) -> float:
        """One forward/backward/optimize cycle on every replica; returns replica 0's loss."""
        losses = [replica.step() for replica in self.replicas]
        return losses[0]

    def extract(self, *host_buffers: np.ndarray, replica: int = 0) -> None:
        """Copy the weight sets, in layer order, into caller-supplied host arrays."""

        weight_sets = self.replica(replica).weight_sets
        if len(host_buffers) > len(weight_sets):
            raise InvalidLayerIndex(
                f"{len(host_buffers)} buffers requested but only {len(weight_sets)} weight sets exist"
            )
        for weight_set, out in zip(weight_sets, host_buffers):
            _copy_into(weight_set.weight.to_numpy(), out, weight_set.name)

    def extract_layer(
        self, layer_index: int, out: Optional[np.ndarray] = None, replica: int = 0
    ) -> np.ndarray:
        weight_set = self.replica(replica).weight_set(layer_index)
        values = weight_set.weight.to_numpy().reshape(weight_set.shape)
        if out is None:
            return values
        _copy_into(values, out, weight_set.name)
        return out

    def weights(self, replica: int = 0) -> Dict[str, np.ndarray]:
        return self.replica(replica).weights()

    def reset(self) -> None:
        for replica in self.replicas:
            replica.reset()

    def release(self) -> None:
        for replica in self.replicas:
            replica.release()
        self.replicas = []


def _copy_into(values: np.ndarray, out: np.ndarray, name: str) -> None:
    if out.size != values.size:
        raise ValueError(f"{name} has {values.size} values, host buffer holds {out.size}")
    np.copyto(out, values.reshape(out.shape))
