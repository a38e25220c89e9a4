"""Helpers shared by the validation figure factories."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import matplotlib.figure
import matplotlib.pyplot as plt

from stjoint.plotting.styles import DEFAULT_PLOT_STYLE, PlotStyle


def significance_colors(flags: Iterable[bool], style: PlotStyle = DEFAULT_PLOT_STYLE) -> list[str]:
    return [style.color_fail if bool(f) else style.color_pass for f in flags]


def comparison_tick_labels(names: Iterable[str]) -> list[str]:
    """Drop the family prefix: ``rotation_0_vs_90`` -> ``0_vs_90``."""
    return [str(n).split("_", 1)[-1] for n in names]


def save_figure(
    fig: matplotlib.figure.Figure,
    out_path: Path,
    *,
    style: PlotStyle = DEFAULT_PLOT_STYLE,
    close: bool = True,
) -> Path:
    """Write `fig` without a software/date stamp so reruns give identical PNGs."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    metadata = {"Software": None} if out_path.suffix.lower() == ".png" else None
    fig.savefig(
        out_path,
        dpi=style.dpi,
        facecolor="white",
        pad_inches=style.pad_inches,
        metadata=metadata,
    )
    if close:
        plt.close(fig)
    return out_path
