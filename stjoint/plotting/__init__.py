"""Plotting API for stjoint validation outputs."""

from stjoint.plotting.styles import (
    DEFAULT_PLOT_STYLE,
    PlotStyle,
    apply_plot_style,
    plot_style_dict,
)
from stjoint.plotting.utils import comparison_tick_labels, save_figure, significance_colors
from stjoint.plotting.validation import plot_comparisons, plot_smoothness

__all__ = [
    "PlotStyle",
    "DEFAULT_PLOT_STYLE",
    "apply_plot_style",
    "plot_style_dict",
    "save_figure",
    "significance_colors",
    "comparison_tick_labels",
    "plot_comparisons",
    "plot_smoothness",
]
