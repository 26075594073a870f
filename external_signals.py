# Filename: external_signals.py
# coding: utf-8
# Version: 1.0.0
# Description: Host-side construction of external signals fed into HNM levels.

import numpy as np
from torch import Tensor, is_tensor
from typing import Optional, Sequence, Union

from tensor_backend import TensorBackend

ArrayLike = Union[Tensor, np.ndarray, float]


def tensor_lerp(a: ArrayLike, b: ArrayLike, t: float):
    """ a * (1 - t) + b * t, for tensors or numpy arrays alike. """
    return a * (1.0 - t) + b * t


def project_artifacts_to_external_signal(state_arrays: Sequence[Sequence[float]], similarities: Sequence[float], dim: int,
                                         reasonable_cap: int = 8, backend: Optional[TensorBackend] = None) -> Tensor:
    """
    Blends the state vectors of the currently relevant artifacts into one [1, 1, dim] signal.

    The blend is the similarity-weighted mean of the vectors (each truncated or zero-padded
    to `dim`); when the similarities sum to ~0 the plain weighted sum is used. The result
    is faded in from zero by min(1, n_artifacts / reasonable_cap), so a single weak match
    only nudges the level.
    """
    if dim <= 0: raise ValueError(f"External signal dim must be positive, got {dim}")
    backend = backend if backend is not None else TensorBackend()
    n = len(state_arrays) if state_arrays is not None else 0
    if n == 0: return backend.zeros((1, 1, dim))
    if similarities is None or len(similarities) != n:
        raise ValueError(f"Got {n} artifact state vectors but {0 if similarities is None else len(similarities)} similarities")

    artifacts = np.zeros((n, dim), dtype=np.float32)
    for i, arr in enumerate(state_arrays):
        vec = np.asarray(arr, dtype=np.float32).reshape(-1)[:dim]
        artifacts[i, :vec.shape[0]] = vec
    sims = np.asarray(similarities, dtype=np.float32).reshape(-1, 1)

    summed = (artifacts * sims).sum(axis=0)
    total_sim = float(sims.sum())
    blended = summed / total_sim if total_sim > 1e-6 else summed

    cap = max(1, int(reasonable_cap))
    final_signal = tensor_lerp(np.zeros(dim, dtype=np.float32), blended, min(1.0, n / cap))
    return backend.tensor(final_signal).reshape(1, 1, dim)


def to_signal_tensor(values: Union[Sequence[float], np.ndarray, Tensor], dim: int, backend: Optional[TensorBackend] = None) -> Tensor:
    """ Shapes a flat vector of exactly `dim` values into the [1, 1, dim] layout the HNM expects. """
    backend = backend if backend is not None else TensorBackend()
    t = backend.tensor(values.detach() if is_tensor(values) else np.asarray(values, dtype=np.float32))
    if t.numel() != dim: raise ValueError(f"Expected {dim} values, got {t.numel()}")
    return t.reshape(1, 1, dim)
