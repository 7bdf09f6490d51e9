from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import torch

from .config import TrainingConfig
from .data import GraphDataset
from .modules import SplitTag
from .problem import Problem

logger = logging.getLogger(__name__)


@dataclass
class EpochStats:
    epoch: int
    train_loss: float
    train_accuracy: float
    val_loss: float
    val_accuracy: float
    test_loss: float
    test_accuracy: float


@dataclass
class TrainingResult:
    config: TrainingConfig
    history: List[EpochStats] = field(default_factory=list)
    best_epoch: int = -1
    best_val_accuracy: float = 0.0
    best_weights: Optional[Dict[str, np.ndarray]] = None
    test_accuracy_at_best: float = 0.0
    timings: Dict[str, Dict[str, float]] = field(default_factory=dict)


def train_model(config: TrainingConfig, dataset: Optional[GraphDataset] = None) -> TrainingResult:
    """
    Train for up to ``config.max_iter`` steps with patience-based early stopping.

    Each epoch is one training step on every replica followed by an
    evaluation forward pass (dropout off) on replica 0.
    """

    np.random.seed(config.seed)
    torch.manual_seed(config.seed)

    problem = Problem(config)
    if dataset is not None:
        problem.set_dataset(dataset)
    problem.init()
    replica = problem.replica(0)

    result = TrainingResult(config=config)
    best_val_acc = -float("inf")
    patience_counter = 0

    try:
        for epoch in range(1, config.max_iter + 1):
            problem.train(config.training)
            loss_train = problem.step()
            acc_train = replica.loss_layer.accuracy

            problem.train(False)
            replica.forward()
            val = replica.evaluate(SplitTag.VALIDATION)
            test = replica.evaluate(SplitTag.TEST)

            result.history.append(
                EpochStats(
                    epoch=epoch,
                    train_loss=loss_train,
                    train_accuracy=acc_train,
                    val_loss=val.loss,
                    val_accuracy=val.accuracy,
                    test_loss=test.loss,
                    test_accuracy=test.accuracy,
                )
            )
            logger.debug(
                "epoch %d: loss %.4f acc %.4f | val loss %.4f acc %.4f",
                epoch, loss_train, acc_train, val.loss, val.accuracy,
            )

            if val.accuracy > best_val_acc:
                best_val_acc = val.accuracy
                patience_counter = 0
                result.best_weights = problem.weights()
                result.best_epoch = epoch
                result.best_val_accuracy = val.accuracy
                result.test_accuracy_at_best = test.accuracy
            else:
                patience_counter += 1

            if config.patience > 0 and patience_counter >= config.patience:
                logger.info("Early stopping at epoch %d", epoch)
                break

        result.timings = replica.timing.summary()
    finally:
        problem.release()

    if result.best_weights is None:
        raise RuntimeError("Training did not produce a valid checkpoint")
    return result
