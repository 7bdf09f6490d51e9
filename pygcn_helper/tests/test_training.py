from __future__ import annotations

import json

import numpy as np
import pytest

from pygcn_engine.config import TrainingConfig
from pygcn_engine.errors import ConfigResolutionError
from pygcn_engine.export import export_weights_to_json, weights_to_dict
from pygcn_engine.training import train_model


def test_train_model_reduces_training_loss(separable_dataset):
    config = TrainingConfig(hid_dim=8, max_iter=40, learning_rate=0.05, dropout=0.0, seed=1)
    result = train_model(config, dataset=separable_dataset)

    assert len(result.history) == 40
    assert result.history[-1].train_loss < result.history[0].train_loss
    assert result.best_epoch >= 1
    assert set(result.best_weights) == {"W0", "W1"}
    assert result.best_weights["W0"].shape == (6, 8)
    assert "adam" in result.timings


def test_train_model_early_stopping(separable_dataset):
    config = TrainingConfig(hid_dim=4, max_iter=30, patience=1, seed=0)
    result = train_model(config, dataset=separable_dataset)
    assert len(result.history) < 30


def test_train_model_rejects_dataset_of_other_precision(tiny_dataset):
    with pytest.raises(ConfigResolutionError):
        train_model(TrainingConfig(hid_dim=2, max_iter=1, precision="f64"), dataset=tiny_dataset)


def test_config_validation():
    with pytest.raises(ValueError):
        TrainingConfig(precision="f16")
    with pytest.raises(ValueError):
        TrainingConfig(dropout=1.0)
    with pytest.raises(ValueError):
        TrainingConfig(devices=[])
    config = TrainingConfig(layers="layers.json", feature_file="f.txt")
    assert config.layers.name == "layers.json"
    assert config.feature_file.name == "f.txt"


def test_export_weights_to_json(tmp_path):
    weights = {"W0": np.arange(6, dtype=np.float32).reshape(2, 3), "W1": np.ones((3, 1))}
    path = export_weights_to_json(weights, tmp_path / "out" / "weights.json")

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["W0"] == [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]
    assert payload["shapes"] == {"W0": [2, 3], "W1": [3, 1]}

    with pytest.raises(KeyError):
        weights_to_dict({})
