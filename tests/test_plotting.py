from __future__ import annotations

from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd

from stjoint.plotting import (
    PlotStyle,
    apply_plot_style,
    comparison_tick_labels,
    plot_comparisons,
    plot_smoothness,
    plot_style_dict,
    significance_colors,
)
from stjoint.validation import ValidationReport


def _table(names: list[str], pvals: list[float]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "comparison": names,
            "p_value": pvals,
            "significant": [p < 0.05 for p in pvals],
        }
    )


def test_plot_comparisons_writes_png(tmp_path: Path):
    report = ValidationReport(
        rotation=_table(["rotation_0_vs_90"], [1.0]),
        displacement=_table(["displacement_0_vs_2", "displacement_0_vs_8"], [0.9, 1e-12]),
        off_axis=_table([], []),
        smoothness=pd.DataFrame({"feature": [], "adj_r2": [], "status": []}),
        sweep_curves=pd.DataFrame(),
    )
    out = plot_comparisons(report, tmp_path / "figs" / "cmp.png")
    assert out.exists()
    assert out.stat().st_size > 0


def test_plot_smoothness_handles_failed_fits(tmp_path: Path):
    x = np.arange(1.0, 6.0)
    curves = pd.DataFrame({"g1": x, "g2": x**2}, index=pd.Index(x, name="displacement"))
    smooth = pd.DataFrame({"feature": ["g1", "g2"], "adj_r2": [0.95, np.nan], "status": ["ok", "failed"]})
    out = plot_smoothness(curves, smooth, tmp_path / "smooth.png")
    assert out.exists()


def test_plot_style_dict_records_versions():
    d = plot_style_dict()
    assert d["dpi"] == 200
    assert "matplotlib_version" in d


def test_significance_colors_and_tick_labels():
    style = PlotStyle(color_pass="blue", color_fail="red")
    assert significance_colors([True, False], style) == ["red", "blue"]
    assert comparison_tick_labels(["rotation_0_vs_90", "displacement_0_vs_8"]) == [
        "0_vs_90",
        "0_vs_8",
    ]


def test_apply_plot_style_sets_rcparams():
    apply_plot_style(PlotStyle(dpi=123, tick_fontsize=7))
    assert matplotlib.rcParams["savefig.dpi"] == 123
    assert matplotlib.rcParams["xtick.labelsize"] == 7
    apply_plot_style()
