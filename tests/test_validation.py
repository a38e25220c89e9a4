from __future__ import annotations

import logging

import numpy as np
import pandas as pd
import pytest

from stjoint import validation
from stjoint.core.extraction import extract_spots
from stjoint.core.factorization import fit_frames
from stjoint.core.types import ModelConfig, SpotGeometry, ValidationConfig
from stjoint.errors import ConfigError, ShapeMismatchError, UnknownModalityError
from stjoint.validation import ValidationHarness, fit_smoothing_spline

SPOT = SpotGeometry(spot_size=4)


def _plateau_sample(grid: int = 5, spacing: int = 20, half: int = 6, seed: int = 0):
    """Image with one uniform square plateau per spot and expression linear in its level."""
    rng = np.random.default_rng(seed)
    size = spacing * grid + 20
    image = np.zeros((size, size))
    rows = []
    levels = {}
    for gy in range(grid):
        for gx in range(grid):
            cx, cy = 20 + spacing * gx, 20 + spacing * gy
            label = f"spot_{gy}_{gx}"
            level = float(rng.uniform(1.0, 3.0))
            image[cy - half : cy + half, cx - half : cx + half] = level
            rows.append((label, float(cx), float(cy)))
            levels[label] = level
    coords = pd.DataFrame(rows, columns=["label", "x", "y"])
    weights = rng.uniform(1.0, 2.0, size=6)
    offsets = rng.uniform(0.0, 1.0, size=6)
    lv = np.array([levels[r[0]] for r in rows])
    expr = lv[:, None] * weights[None, :] + offsets[None, :]
    expr = expr + 0.01 * rng.standard_normal(expr.shape)
    gex = pd.DataFrame(expr, index=[r[0] for r in rows], columns=[f"gene{j}" for j in range(6)])
    return image, coords, gex


def _harness(config: ValidationConfig = ValidationConfig()) -> ValidationHarness:
    image, coords, gex = _plateau_sample()
    spot = extract_spots(image, coords, SPOT)
    model = fit_frames({"gex": gex, "spot": spot}, config=ModelConfig(k_dim=1))
    return ValidationHarness(
        model, image, coords, gex, source="spot", target="gex", geometry=SPOT, config=config
    )


def test_rotation_is_not_significant_on_uniform_plateaus():
    table = _harness().rotation_invariance()
    assert list(table["comparison"]) == ["rotation_0_vs_90", "rotation_0_vs_180", "rotation_0_vs_270"]
    assert (table["p_value"] > 0.05).all()
    assert not table["significant"].any()
    assert "q_value" in table.columns
    assert (table["n_spots"] == 25).all()


def test_displacement_sensitivity_grows_with_distance():
    table = _harness().displacement_sensitivity()
    p = dict(zip(table["comparison"], table["p_value"]))
    assert p["displacement_0_vs_8"] <= p["displacement_0_vs_2"]
    assert p["displacement_0_vs_8"] < 0.05
    assert table["monotonic"].all()


def test_off_axis_shifts_are_pairwise_compared():
    table = _harness().off_axis_similarity()
    assert len(table) == 6
    assert (table["p_value"] > 0.05).all()
    assert table["cosine_a"].between(0.99, 1.0 + 1e-9).all()


def test_residuals_are_prediction_minus_observation():
    harness = _harness()
    res = harness.residuals(SPOT)
    pred = harness.predict(SPOT)
    obs = harness.observed.loc[res.index]
    np.testing.assert_allclose(res.to_numpy(), pred.loc[res.index].to_numpy() - obs.to_numpy())
    assert list(res.columns) == [f"gene{j}" for j in range(6)]


def test_signal_smoothness_table():
    harness = _harness()
    curves = harness.sweep_curves()
    assert list(curves.index) == [float(d) for d in range(1, 11)]
    smooth = harness.signal_smoothness(curves)
    assert list(smooth["feature"]) == [f"gene{j}" for j in range(6)]
    assert set(smooth["status"]) <= {"ok", "failed"}
    ok = smooth[smooth["status"] == "ok"]
    assert (ok["r2"] > 0.5).all()


def test_failed_spline_is_recorded_as_missing(monkeypatch, caplog):
    caplog.set_level(logging.WARNING)

    def _raise(*_args, **_kwargs):
        raise ValueError("degenerate knots")

    monkeypatch.setattr(validation, "UnivariateSpline", _raise)
    smooth = _harness().signal_smoothness()
    assert len(smooth) == 6
    assert smooth["adj_r2"].isna().all()
    assert (smooth["status"] == "failed").all()
    assert "Spline skipped" in caplog.text
    assert "gene0" in caplog.text


def test_unexpected_spline_error_propagates(monkeypatch):
    def _raise(*_args, **_kwargs):
        raise RuntimeError("unexpected")

    monkeypatch.setattr(validation, "UnivariateSpline", _raise)
    with pytest.raises(RuntimeError, match="unexpected"):
        _harness().signal_smoothness()


def test_run_produces_full_report():
    cfg = ValidationConfig(test="paired")
    report = _harness(cfg).run()
    assert len(report.rotation) == 3
    assert len(report.displacement) == 3
    assert len(report.off_axis) == 6
    assert len(report.smoothness) == 6
    assert report.sweep_curves.shape == (10, 6)
    summary = report.summary()
    assert summary["rotation_all_nonsignificant"] is True
    assert summary["displacement_monotonic"] is True
    assert report.metadata["test"] == "paired"


def test_harness_rejects_bad_inputs():
    image, coords, gex = _plateau_sample()
    spot = extract_spots(image, coords, SPOT)
    model = fit_frames({"gex": gex, "spot": spot}, config=ModelConfig(k_dim=1))
    with pytest.raises(UnknownModalityError):
        ValidationHarness(model, image, coords, gex, source="he", target="gex")
    with pytest.raises(ShapeMismatchError, match="gene5"):
        ValidationHarness(model, image, coords, gex.drop(columns=["gene5"]), geometry=SPOT)


def test_fit_smoothing_spline_on_smooth_curve():
    x = np.arange(1.0, 11.0)
    out = fit_smoothing_spline(x, np.sin(x / 3.0), degree=3, smoothing=0.1)
    assert out["r2"] > 0.85
    assert out["n_coeffs"] >= 4


def test_validation_config_rules():
    with pytest.raises(ConfigError):
        ValidationConfig(sweep=(1.0, 3.0, 2.0, 4.0, 5.0))
    with pytest.raises(ConfigError):
        ValidationConfig(sweep=(1.0, 2.0, 3.0))
    with pytest.raises(ConfigError):
        ValidationConfig(test="mwu")
    with pytest.raises(ConfigError):
        ValidationConfig(spline_smoothing=0.0)
