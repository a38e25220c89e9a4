"""Figure factories for validation reports."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from stjoint.plotting.styles import DEFAULT_PLOT_STYLE, PlotStyle
from stjoint.plotting.utils import comparison_tick_labels, save_figure, significance_colors

if TYPE_CHECKING:
    from stjoint.validation import ValidationReport

PANELS: tuple[tuple[str, str], ...] = (
    ("rotation", "Rotation"),
    ("displacement", "Displacement"),
    ("off_axis", "Off-axis"),
)


def _neglog10(p: pd.Series) -> np.ndarray:
    vals = pd.to_numeric(p, errors="coerce").fillna(1.0).to_numpy(dtype=float)
    return -np.log10(np.clip(vals, 1e-300, 1.0))


def plot_comparisons(
    report: "ValidationReport",
    out_png: Path,
    *,
    alpha: float = 0.05,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> Path:
    """One bar panel per comparison family, -log10(p) against the alpha line."""
    fig, axes = plt.subplots(1, len(PANELS), figsize=style.figsize_comparisons, sharey=True)
    threshold = -np.log10(alpha)
    for ax, (attr, title) in zip(axes, PANELS):
        table: pd.DataFrame = getattr(report, attr)
        if table.empty:
            ax.set_xticks([])
            ax.text(0.5, 0.5, "NA", transform=ax.transAxes, ha="center", va="center")
            ax.set_title(title)
            continue
        heights = _neglog10(table["p_value"])
        colors = significance_colors(table["significant"], style)
        pos = np.arange(len(table))
        ax.bar(pos, heights, color=colors)
        ax.axhline(threshold, color=style.color_threshold, linestyle="--", linewidth=1.0)
        ax.set_xticks(pos)
        ax.set_xticklabels(
            comparison_tick_labels(table["comparison"]),
            rotation=45,
            ha="right",
        )
        ax.set_title(title)
    axes[0].set_ylabel("-log10(p)")
    fig.tight_layout()
    return save_figure(fig, out_png, style=style)


def plot_smoothness(
    curves: pd.DataFrame,
    smoothness: pd.DataFrame,
    out_png: Path,
    *,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
) -> Path:
    """Mean prediction vs displacement for the best-fitting features."""
    scores = smoothness.set_index("feature")["adj_r2"]
    ranked = scores.dropna().sort_values(ascending=False).index.tolist()
    chosen = [f for f in ranked if f in curves.columns][: style.max_curves]
    if not chosen:
        chosen = list(curves.columns[: style.max_curves])

    fig, ax = plt.subplots(figsize=style.figsize_smoothness)
    x = curves.index.to_numpy(dtype=float)
    for feature in chosen:
        adj = scores.get(feature, np.nan)
        label = f"{feature} (adj R2={adj:.2f})" if np.isfinite(adj) else f"{feature} (failed)"
        ax.plot(x, curves[feature].to_numpy(dtype=float), marker="o", linewidth=1.2, label=label)
    ax.set_xlabel("displacement (px)")
    ax.set_ylabel("mean prediction")
    ax.set_title("Prediction along displacement sweep")
    if chosen:
        ax.legend(fontsize=style.tick_fontsize, frameon=False)
    ax.grid(alpha=0.25, linewidth=0.6)
    fig.tight_layout()
    return save_figure(fig, out_png, style=style)
