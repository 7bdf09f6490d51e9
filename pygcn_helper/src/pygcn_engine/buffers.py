from __future__ import annotations

import enum
import logging
from typing import Callable, Optional, Union

import numpy as np
import torch

from .errors import AllocationError, TransferError

logger = logging.getLogger(__name__)

ElementFn = Callable[..., torch.Tensor]


class Location(enum.Flag):
    NONE = 0
    HOST = 1
    DEVICE = 2
    BOTH = HOST | DEVICE


class DeviceBuffer:
    """
    Named flat vector that can live in host memory, device memory or both.

    Storage is either owned, created by :meth:`allocate`, or borrowed from an
    external tensor or array through :meth:`set_pointer`. Borrowed storage is
    only dropped on release; the external owner keeps it alive.

    On a CPU device the host and device copies are still distinct tensors so
    that :meth:`move` behaves the same on every backend.
    """

    def __init__(
        self,
        name: str,
        device: Union[str, torch.device] = "cpu",
        dtype: torch.dtype = torch.float32,
    ) -> None:
        self.name = name
        self.device = torch.device(device)
        self.dtype = dtype
        self.size = 0
        self.location = Location.NONE
        self._host: Optional[torch.Tensor] = None
        self._device: Optional[torch.Tensor] = None
        self._borrowed = Location.NONE

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        return (
            f"DeviceBuffer(name={self.name!r}, size={self.size}, "
            f"location={self.location.name}, borrowed={self.borrowed})"
        )

    @property
    def borrowed(self) -> bool:
        return self._borrowed != Location.NONE

    @property
    def host(self) -> Optional[torch.Tensor]:
        return self._host

    @property
    def device_data(self) -> Optional[torch.Tensor]:
        return self._device

    @property
    def data(self) -> torch.Tensor:
        """Storage that kernels operate on: the device copy when present."""
        if self._device is not None:
            return self._device
        if self._host is not None:
            return self._host
        raise AllocationError(f"Buffer {self.name!r} has no storage")

    def _storage(self, location: Location) -> Optional[torch.Tensor]:
        if location == Location.HOST:
            return self._host
        if location == Location.DEVICE:
            return self._device
        raise ValueError(f"Expected HOST or DEVICE, got {location}")

    def _zeros(self, size: int, location: Location) -> torch.Tensor:
        device = self.device if location == Location.DEVICE else torch.device("cpu")
        try:
            return torch.zeros(size, dtype=self.dtype, device=device)
        except RuntimeError as exc:
            raise AllocationError(
                f"Unable to allocate {size} elements for {self.name!r} on {device}"
            ) from exc

    def allocate(self, size: int, location: Location = Location.DEVICE) -> "DeviceBuffer":
        if size < 0:
            raise ValueError(f"Buffer size must be non-negative, got {size}")
        self.release()
        for part in (Location.HOST, Location.DEVICE):
            if location & part:
                tensor = self._zeros(size, part)
                if part == Location.HOST:
                    self._host = tensor
                else:
                    self._device = tensor
        self.size = size
        self.location = location
        logger.debug("Allocated %s (%d elements, %s)", self.name, size, location.name)
        return self

    def set_pointer(
        self,
        external: Union[torch.Tensor, np.ndarray],
        size: Optional[int] = None,
        location: Location = Location.HOST,
    ) -> "DeviceBuffer":
        """
        Borrow external storage as this buffer's host or device copy.

        No data is copied: writes through the buffer are visible to the owner
        of ``external`` and vice versa.
        """

        if location not in (Location.HOST, Location.DEVICE):
            raise ValueError("Borrowed storage must be either HOST or DEVICE")
        tensor = torch.from_numpy(external) if isinstance(external, np.ndarray) else external
        if tensor.dtype != self.dtype:
            raise TypeError(
                f"Buffer {self.name!r} expects {self.dtype}, got {tensor.dtype}"
            )
        expected = torch.device("cpu") if location == Location.HOST else self.device
        if tensor.device.type != expected.type:
            raise ValueError(
                f"Cannot borrow storage on {tensor.device} as {location.name} of {self.name!r}"
            )
        flat = tensor.view(-1)
        size = flat.numel() if size is None else size
        if size > flat.numel():
            raise ValueError(f"Requested {size} elements from a {flat.numel()}-element view")
        self.release()
        flat = flat[:size]
        if location == Location.HOST:
            self._host = flat
        else:
            self._device = flat
        self.size = size
        self.location = location
        self._borrowed = location
        return self

    def move(self, source: Location = Location.HOST, target: Location = Location.DEVICE) -> None:
        """Synchronously copy the ``source`` copy into the ``target`` copy."""

        src = self._storage(source)
        if src is None:
            raise TransferError(f"Buffer {self.name!r} has no {source.name} storage to move")
        dst = self._storage(target)
        if dst is None:
            dst = self._zeros(self.size, target)
            if target == Location.HOST:
                self._host = dst
            else:
                self._device = dst
        try:
            dst.copy_(src)
            if dst.is_cuda or src.is_cuda:
                torch.cuda.synchronize()
        except RuntimeError as exc:
            raise TransferError(
                f"Copy of {self.name!r} from {source.name} to {target.name} failed"
            ) from exc
        self.location |= target

    def for_each(
        self,
        fn: ElementFn,
        peer: Optional["DeviceBuffer"] = None,
        location: Location = Location.DEVICE,
    ) -> None:
        """
        Replace every element with ``fn(x)`` or ``fn(x, peer_x)``.

        ``fn`` receives whole tensors and must be elementwise; no ordering
        between elements is implied.
        """

        target = self._storage(location)
        if target is None:
            raise AllocationError(f"Buffer {self.name!r} has no {location.name} storage")
        if peer is None:
            result = fn(target)
        else:
            other = peer._storage(location)
            if other is None or other.numel() != target.numel():
                raise ValueError(f"Peer {peer.name!r} does not match {self.name!r}")
            result = fn(target, other)
        target.copy_(result)

    def fill_(self, value: float) -> None:
        self.data.fill_(value)

    def to_numpy(self) -> np.ndarray:
        """Copy the device values back to host memory and return a numpy copy."""
        if self._device is not None:
            self.move(Location.DEVICE, Location.HOST)
        if self._host is None:
            raise TransferError(f"Buffer {self.name!r} has no storage to read back")
        return self._host.numpy().copy()

    def release(self) -> None:
        self._host = None
        self._device = None
        self._borrowed = Location.NONE
        self.size = 0
        self.location = Location.NONE
