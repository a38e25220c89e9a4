"""Figure settings for validation plots."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

import matplotlib
import numpy as np


@dataclass(frozen=True)
class PlotStyle:
    """Sizes, colours and fonts for comparison and smoothness figures."""

    dpi: int = 200
    figsize_comparisons: tuple[float, float] = (10.0, 4.0)
    figsize_smoothness: tuple[float, float] = (6.5, 4.5)
    color_pass: str = "#4c72b0"
    color_fail: str = "#c44e52"
    color_threshold: str = "#555555"
    max_curves: int = 12
    tick_fontsize: int = 8
    label_fontsize: int = 10
    title_fontsize: int = 11
    pad_inches: float = 0.02

    def rc_params(self) -> dict[str, Any]:
        return {
            "figure.dpi": self.dpi,
            "savefig.dpi": self.dpi,
            "savefig.facecolor": "white",
            "font.family": "DejaVu Sans",
            "axes.titlesize": self.title_fontsize,
            "axes.labelsize": self.label_fontsize,
            "xtick.labelsize": self.tick_fontsize,
            "legend.fontsize": self.tick_fontsize,
            "axes.spines.top": False,
            "axes.spines.right": False,
        }


DEFAULT_PLOT_STYLE = PlotStyle()


def apply_plot_style(style: PlotStyle = DEFAULT_PLOT_STYLE) -> None:
    matplotlib.rcParams.update(style.rc_params())


def plot_style_dict(style: PlotStyle = DEFAULT_PLOT_STYLE) -> dict[str, Any]:
    """Style fields plus backend and library versions, for validation manifests."""
    out = asdict(style)
    out.update(
        {
            "backend": str(matplotlib.get_backend()),
            "matplotlib_version": str(matplotlib.__version__),
            "numpy_version": str(np.__version__),
        }
    )
    return out
