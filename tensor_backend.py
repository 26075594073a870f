# Filename: tensor_backend.py
# coding: utf-8
# Version: 1.0.0
# Description: Injected numeric context for the HNM: device/dtype handling plus an
#              owned-tensor registry with scoped arenas (track -> keep -> release).

import torch
from torch import Tensor, is_tensor
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Optional, Sequence, Union


class TensorBackend:
    """
    Numeric context passed explicitly into every HNM component.

    torch frees a tensor once its last reference goes away, so "disposal" here means
    dropping ownership: the backend keeps a strong reference to every tensor that has
    been kept and forgets it on release. A growing `num_tensors` across ticks is a leak
    of retained states/results on the caller side.
    """
    def __init__(self, device: Union[str, torch.device] = 'cpu', dtype: torch.dtype = torch.float32):
        self.device = device if isinstance(device, torch.device) else torch.device(device)
        self.dtype = dtype
        self._kept: Dict[int, Tensor] = {}

    def zeros(self, shape: Sequence[int]) -> Tensor:
        return torch.zeros(tuple(shape), device=self.device, dtype=self.dtype)

    def tensor(self, data) -> Tensor:
        if is_tensor(data): return data.to(device=self.device, dtype=self.dtype)
        return torch.as_tensor(data, device=self.device, dtype=self.dtype)

    def scalar(self, value: float) -> Tensor:
        return torch.tensor(float(value), device=self.device, dtype=self.dtype)

    def keep(self, t: Tensor) -> Tensor:
        if is_tensor(t): self._kept[id(t)] = t
        return t

    def release(self, t: Optional[Tensor]) -> None:
        if is_tensor(t): self._kept.pop(id(t), None)

    def release_all(self, tensors: Iterable[Optional[Tensor]]) -> None:
        for t in tensors: self.release(t)

    def is_kept(self, t: Optional[Tensor]) -> bool:
        return is_tensor(t) and self._kept.get(id(t)) is t

    @property
    def num_tensors(self) -> int:
        return len(self._kept)

    @property
    def num_bytes(self) -> int:
        return sum(t.numel() * t.element_size() for t in self._kept.values())

    @contextmanager
    def scope(self, name: str = "scope") -> Iterator["TensorScope"]:
        arena = TensorScope(self, name)
        try:
            yield arena
        finally:
            arena.close()

    def __repr__(self) -> str:
        return f"TensorBackend(device={self.device}, dtype={self.dtype}, kept={self.num_tensors})"


class TensorScope:
    """ Arena for one computation; anything tracked and not promoted is released on close. """
    def __init__(self, backend: TensorBackend, name: str = "scope"):
        self.backend = backend; self.name = name
        self._tracked: Dict[int, Tensor] = {}
        self.closed = False

    def track(self, t: Tensor) -> Tensor:
        if self.closed: raise RuntimeError(f"TensorScope '{self.name}' is closed.")
        if is_tensor(t):
            self._tracked[id(t)] = t
            self.backend.keep(t)
        return t

    def zeros(self, shape: Sequence[int]) -> Tensor:
        return self.track(self.backend.zeros(shape))

    def keep(self, t: Tensor) -> Tensor:
        """ Promote `t` out of this scope; the backend keeps owning it. """
        if is_tensor(t):
            self._tracked.pop(id(t), None)
            self.backend.keep(t)
        return t

    def close(self) -> None:
        if self.closed: return
        for t in self._tracked.values(): self.backend.release(t)
        self._tracked.clear(); self.closed = True

    def __len__(self) -> int:
        return len(self._tracked)
