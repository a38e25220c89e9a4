"""Black-box statistics used by the validation harness."""

from __future__ import annotations

import math

import numpy as np
from scipy import stats

from stjoint.core.utils import finite_1d


def compare_distributions(
    a: np.ndarray,
    b: np.ndarray,
    test: str = "welch",
) -> tuple[float, float]:
    """Two-sample t-test on flattened residual distributions.

    Returns ``(statistic, p_value)``. Identical inputs are no evidence of a
    difference and give ``(0.0, 1.0)`` instead of scipy's NaN.
    """
    x = finite_1d("a", a)
    y = finite_1d("b", b)
    if test == "paired":
        if x.size != y.size:
            raise ValueError(f"paired test needs equal sizes, got {x.size} and {y.size}.")
        d = x - y
        if np.all(d == 0.0):
            return 0.0, 1.0
        if np.ptp(d) == 0.0:
            return math.copysign(math.inf, float(d[0])), 0.0
        res = stats.ttest_rel(x, y)
    elif test == "welch":
        if x.size < 2 or y.size < 2:
            raise ValueError("welch test needs at least two values per sample.")
        if np.ptp(x) == 0.0 and np.ptp(y) == 0.0:
            diff = float(x[0] - y[0])
            if diff == 0.0:
                return 0.0, 1.0
            return math.copysign(math.inf, diff), 0.0
        res = stats.ttest_ind(x, y, equal_var=False)
    else:
        raise ValueError(f"Unsupported test {test!r}. Use 'welch' or 'paired'.")
    return float(res.statistic), float(res.pvalue)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Row-wise cosine similarity; rows with zero norm give NaN."""
    x = np.atleast_2d(np.asarray(a, dtype=float))
    y = np.atleast_2d(np.asarray(b, dtype=float))
    if x.shape != y.shape:
        raise ValueError(f"cosine_similarity needs equal shapes, got {x.shape} and {y.shape}.")
    num = np.sum(x * y, axis=1)
    den = np.linalg.norm(x, axis=1) * np.linalg.norm(y, axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        out = num / den
    return np.where(den > 0.0, out, np.nan)


def bh_fdr(pvals: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg q-values; NaN entries stay NaN."""
    arr = np.asarray(pvals, dtype=float)
    flat = arr.ravel()
    q = np.full_like(flat, np.nan)
    finite = np.isfinite(flat)
    if np.any((flat[finite] < 0.0) | (flat[finite] > 1.0)):
        raise ValueError("p-values must be in [0,1] or NaN.")
    if np.any(finite):
        p = flat[finite]
        m = int(p.size)
        order = np.argsort(p, kind="mergesort")
        ranked = p[order]
        ranks = np.arange(1, m + 1, dtype=float)
        adj = ranked * (float(m) / ranks)
        adj = np.minimum.accumulate(adj[::-1])[::-1]
        adj = np.clip(adj, 0.0, 1.0)
        q_valid = np.empty_like(adj)
        q_valid[order] = adj
        q[finite] = q_valid
    return q.reshape(arr.shape)


def adjusted_r2(y: np.ndarray, y_hat: np.ndarray, n_params: int) -> float:
    """Adjusted coefficient of determination for a fit with ``n_params`` predictors."""
    obs = finite_1d("y", y)
    fitted = finite_1d("y_hat", y_hat)
    if obs.size != fitted.size:
        raise ValueError("y and y_hat must have the same length.")
    n = obs.size
    rss = float(np.sum((obs - fitted) ** 2))
    tss = float(np.sum((obs - obs.mean()) ** 2))
    if tss == 0.0:
        return 1.0 if np.isclose(rss, 0.0) else float("nan")
    dof = n - int(n_params) - 1
    if dof <= 0:
        return float("nan")
    r2 = 1.0 - rss / tss
    return float(1.0 - (1.0 - r2) * (n - 1) / dof)
