from __future__ import annotations


class GCNEngineError(Exception):
    """Base class for every failure raised by the training engine."""


class AllocationError(GCNEngineError):
    """Host or device memory could not be allocated."""


class TransferError(GCNEngineError):
    """A copy between host and device memory failed."""


class ConfigResolutionError(GCNEngineError, ValueError):
    """The layer topology could not be resolved into concrete dimensions."""


class InvalidLayerIndex(GCNEngineError, IndexError):
    """A weight set was requested for a layer that has no parameters."""


class IngestionFormatError(GCNEngineError, ValueError):
    """A feature, split or graph file is malformed."""

    def __init__(self, path, line_number: int, message: str) -> None:
        super().__init__(f"{path}:{line_number}: {message}")
        self.path = path
        self.line_number = line_number


class ReplicaStateError(GCNEngineError, RuntimeError):
    """A replica operation was called in the wrong lifecycle state."""
