"""Statistics helpers for validation."""

from stjoint.stats.comparisons import (
    adjusted_r2,
    bh_fdr,
    compare_distributions,
    cosine_similarity,
)

__all__ = [
    "adjusted_r2",
    "bh_fdr",
    "compare_distributions",
    "cosine_similarity",
]
