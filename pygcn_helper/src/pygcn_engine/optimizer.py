from __future__ import annotations

from typing import Iterable, List

import torch

from .buffers import DeviceBuffer
from .topology import WeightSet


class AdamState:
    """First and second moments for one weight set."""

    def __init__(self, weight_set: WeightSet) -> None:
        self.name = weight_set.name
        self.weights = weight_set.weight
        self.grads = weight_set.grad
        self.apply_weight_decay = weight_set.decay
        device, dtype = self.weights.device, self.weights.dtype
        size = self.weights.size
        self.first_moment = DeviceBuffer(f"m_{self.name}", device, dtype).allocate(size)
        self.second_moment = DeviceBuffer(f"v_{self.name}", device, dtype).allocate(size)

    def update(
        self,
        step: int,
        learning_rate: float,
        beta1: float,
        beta2: float,
        eps: float,
        weight_decay: float,
    ) -> None:
        weight = self.weights.data
        grad = self.grads.data
        if self.apply_weight_decay and weight_decay != 0.0:
            grad = grad.add(weight, alpha=weight_decay)
        first = self.first_moment.data
        second = self.second_moment.data
        first.mul_(beta1).add_(grad, alpha=1.0 - beta1)
        second.mul_(beta2).addcmul_(grad, grad, value=1.0 - beta2)
        first_hat = first / (1.0 - beta1 ** step)
        second_hat = second / (1.0 - beta2 ** step)
        weight.addcdiv_(first_hat, second_hat.sqrt_().add_(eps), value=-learning_rate)

    def release(self) -> None:
        self.first_moment.release()
        self.second_moment.release()


class Adam:
    """
    Adam over a replica's weight sets with one global step counter.

    Weight decay is added to the gradient (L2 style) only for weight sets
    whose ``decay`` flag is set.
    """

    def __init__(
        self,
        weight_sets: Iterable[WeightSet],
        learning_rate: float = 0.005,
        beta1: float = 0.9,
        beta2: float = 0.999,
        eps: float = 1e-8,
        weight_decay: float = 5e-4,
    ) -> None:
        if learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if weight_decay < 0:
            raise ValueError("weight_decay must be non-negative")
        if not (0.0 <= beta1 < 1.0 and 0.0 <= beta2 < 1.0):
            raise ValueError("beta1 and beta2 must be in [0, 1)")
        self.learning_rate = learning_rate
        self.beta1 = beta1
        self.beta2 = beta2
        self.eps = eps
        self.weight_decay = weight_decay
        self.step_count = 0
        self.states: List[AdamState] = [AdamState(weight_set) for weight_set in weight_sets]

    def zero_grad(self) -> None:
        for state in self.states:
            state.grads.fill_(0.0)

    @torch.no_grad()
    def step(self) -> None:
        self.step_count += 1
        for state in self.states:
            state.update(
                self.step_count,
                self.learning_rate,
                self.beta1,
                self.beta2,
                self.eps,
                self.weight_decay,
            )

    def release(self) -> None:
        for state in self.states:
            state.release()
