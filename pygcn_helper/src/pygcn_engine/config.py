from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import torch

from .graph import NORMALIZATIONS
from .topology import DEFAULT_LAYERS, LayerSpec, load_layer_specs, parse_layer_specs

PRECISIONS = {
    "f32": (torch.float32, np.float32),
    "f64": (torch.float64, np.float64),
}


@dataclass
class TrainingConfig:
    feature_file: Optional[Path] = None
    split_file: Optional[Path] = None
    graph_file: Optional[Path] = None
    in_dim: Optional[int] = None
    out_dim: Optional[int] = None
    hid_dim: int = 16
    learning_rate: float = 0.005
    weight_decay: float = 5e-4
    beta1: float = 0.9
    beta2: float = 0.999
    eps: float = 1e-8
    max_iter: int = 200
    training: bool = True
    dropout: float = 0.5
    patience: int = 0
    precision: str = "f32"
    seed: int = 42
    devices: List[str] = field(default_factory=lambda: ["cpu"])
    feature_index_base: int = 0
    strict_ingestion: bool = True
    normalization: str = "sym"
    normalize_features: bool = True
    layers: Union[Path, List] = field(default_factory=lambda: [dict(r) for r in DEFAULT_LAYERS])

    def __post_init__(self) -> None:
        for name in ("feature_file", "split_file", "graph_file"):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, Path(value))
        if self.precision not in PRECISIONS:
            raise ValueError("precision must be 'f32' or 'f64'")
        if self.normalization not in NORMALIZATIONS:
            raise ValueError(f"normalization must be one of {NORMALIZATIONS}")
        if self.feature_index_base not in (0, 1):
            raise ValueError("feature_index_base must be 0 or 1")
        if self.hid_dim <= 0:
            raise ValueError("hid_dim must be positive")
        if self.max_iter < 0:
            raise ValueError("max_iter must be non-negative")
        if not 0.0 <= self.dropout < 1.0:
            raise ValueError("dropout must be in [0, 1)")
        if not self.devices:
            raise ValueError("at least one device is required")
        if isinstance(self.layers, str):
            self.layers = Path(self.layers)

    @property
    def torch_dtype(self) -> torch.dtype:
        return PRECISIONS[self.precision][0]

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(PRECISIONS[self.precision][1])

    def layer_specs(self) -> List[LayerSpec]:
        if isinstance(self.layers, Path):
            return load_layer_specs(self.layers)
        return parse_layer_specs(self.layers)
