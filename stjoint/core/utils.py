"""Small pure helpers for core computations."""

from __future__ import annotations

import numpy as np


def finite_1d(name: str, values: np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=float).ravel()
    if arr.size == 0:
        raise ValueError(f"{name} must be non-empty.")
    if not np.isfinite(arr).all():
        raise ValueError(f"{name} must be finite.")
    return arr


def finite_2d(name: str, values: np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    if arr.ndim != 2:
        raise ValueError(f"{name} must be a 2D matrix, got shape {arr.shape}.")
    if arr.size == 0:
        raise ValueError(f"{name} must be non-empty, got shape {arr.shape}.")
    if not np.isfinite(arr).all():
        raise ValueError(f"{name} contains NaN/inf values.")
    return arr


def round_half_up(values: np.ndarray) -> np.ndarray:
    """Round to the nearest integer, ties toward +inf (numpy rounds ties to even)."""
    return np.floor(np.asarray(values, dtype=float) + 0.5).astype(np.int64)


def sign_normalize(u: np.ndarray, v: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Flip singular vector pairs so the largest-magnitude entry of each u column is positive."""
    if u.shape[1] == 0:
        return u, v
    idx = np.argmax(np.abs(u), axis=0)
    signs = np.sign(u[idx, np.arange(u.shape[1])])
    signs[signs == 0] = 1.0
    return u * signs, v * signs
