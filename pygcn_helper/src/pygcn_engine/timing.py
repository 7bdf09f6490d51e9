from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator

import torch


class TimingContext:
    """Per-operator elapsed-time accumulators owned by one replica."""

    def __init__(self, synchronize: bool = False) -> None:
        self.synchronize = synchronize
        self.totals: Dict[str, float] = defaultdict(float)
        self.calls: Dict[str, int] = defaultdict(int)

    def _sync(self) -> None:
        if self.synchronize and torch.cuda.is_available():
            torch.cuda.synchronize()

    @contextmanager
    def measure(self, key: str) -> Iterator[None]:
        self._sync()
        start = time.perf_counter()
        try:
            yield
        finally:
            self._sync()
            self.totals[key] += time.perf_counter() - start
            self.calls[key] += 1

    def reset(self) -> None:
        self.totals.clear()
        self.calls.clear()

    def summary(self) -> Dict[str, Dict[str, float]]:
        return {
            key: {"seconds": self.totals[key], "calls": float(self.calls[key])}
            for key in sorted(self.totals)
        }
