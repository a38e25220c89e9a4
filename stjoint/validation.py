"""Validation protocol for extraction + cross-modal transform.

The harness perturbs spot geometry (rotation, displacement, off-axis shifts,
displacement sweeps), re-extracts the same physical spots, pushes them through
a fitted model and compares residual distributions (predicted - observed).
"""

from __future__ import annotations

import itertools
import logging
import warnings
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
from scipy.interpolate import UnivariateSpline

from stjoint.core.align import common_labels
from stjoint.core.extraction import extract_spots
from stjoint.core.transform import transform_frame
from stjoint.core.types import (
    CoordinateColumns,
    ExtractionConfig,
    FittedModel,
    SpotGeometry,
    ValidationConfig,
)
from stjoint.core.utils import finite_1d
from stjoint.errors import AlignmentError, ShapeMismatchError, UnknownModalityError
from stjoint.parallel import parallel_map
from stjoint.stats import adjusted_r2, bh_fdr, compare_distributions, cosine_similarity

logger = logging.getLogger(__name__)

COMPARISON_COLUMNS: tuple[str, ...] = (
    "comparison",
    "condition_a",
    "condition_b",
    "n_spots",
    "mean_residual_a",
    "mean_residual_b",
    "mean_abs_residual_a",
    "mean_abs_residual_b",
    "cosine_a",
    "cosine_b",
    "statistic",
    "p_value",
)


def geometry_label(geometry: SpotGeometry) -> str:
    return (
        f"rot={geometry.rotation:g},dx={geometry.displacement_x:g},"
        f"dy={geometry.displacement_y:g}"
    )


def fit_smoothing_spline(
    x: np.ndarray,
    y: np.ndarray,
    degree: int = 3,
    smoothing: float = 0.1,
) -> dict[str, float]:
    """Fit a smoothing spline whose residual sum of squares is capped at ``smoothing`` x total SS.

    Fitpack warnings (e.g. unattainable smoothing) are raised as errors so the
    caller can record the fit as missing.
    """
    xs = finite_1d("x", x)
    ys = finite_1d("y", y)
    if xs.size != ys.size:
        raise ValueError("x and y must have the same length.")
    tss = float(np.sum((ys - ys.mean()) ** 2))
    with warnings.catch_warnings():
        warnings.simplefilter("error", UserWarning)
        spline = UnivariateSpline(xs, ys, k=int(degree), s=float(smoothing) * tss)
        fitted = spline(xs)
    n_coeffs = int(len(spline.get_coeffs()))
    rss = float(np.sum((ys - fitted) ** 2))
    r2 = 1.0 if tss == 0.0 else 1.0 - rss / tss
    return {
        "r2": float(r2),
        "adj_r2": adjusted_r2(ys, fitted, n_coeffs - 1),
        "n_coeffs": float(n_coeffs),
    }


def _safe_spline(payload: tuple[str, np.ndarray, np.ndarray, int, float]) -> dict[str, Any]:
    feature, x, y, degree, smoothing = payload
    try:
        out = fit_smoothing_spline(x, y, degree=degree, smoothing=smoothing)
        return {"feature": feature, **out, "status": "ok", "reason": ""}
    except (ValueError, np.linalg.LinAlgError, TypeError, UserWarning) as exc:
        logger.warning("Spline skipped: feature=%s reason=%s", feature, exc)
        return {
            "feature": feature,
            "r2": float("nan"),
            "adj_r2": float("nan"),
            "n_coeffs": float("nan"),
            "status": "failed",
            "reason": str(exc),
        }


@dataclass(frozen=True)
class ValidationReport:
    """Tables produced by ``ValidationHarness.run``."""

    rotation: pd.DataFrame
    displacement: pd.DataFrame
    off_axis: pd.DataFrame
    smoothness: pd.DataFrame
    sweep_curves: pd.DataFrame
    metadata: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        smooth = self.smoothness["adj_r2"].to_numpy(dtype=float)
        return {
            "rotation_all_nonsignificant": bool((~self.rotation["significant"]).all()),
            "displacement_monotonic": bool(self.metadata.get("displacement_monotonic", False)),
            "off_axis_all_nonsignificant": bool((~self.off_axis["significant"]).all()),
            "smoothness_median_adj_r2": (
                float(np.nanmedian(smooth)) if np.isfinite(smooth).any() else float("nan")
            ),
            "smoothness_failed": int((self.smoothness["status"] != "ok").sum()),
        }


class ValidationHarness:
    """Run the geometric validation protocol for one tissue sample.

    `observed` holds the ground-truth target modality (spots x features); its
    columns are re-ordered to the fitted vocabulary of `target`.
    """

    def __init__(
        self,
        model: FittedModel,
        image: np.ndarray,
        coordinates: pd.DataFrame,
        observed: pd.DataFrame,
        *,
        source: str = "spot",
        target: str = "gex",
        geometry: SpotGeometry = SpotGeometry(),
        extraction: ExtractionConfig = ExtractionConfig(),
        columns: CoordinateColumns = CoordinateColumns(),
        config: ValidationConfig = ValidationConfig(),
    ) -> None:
        for role, name in (("source", source), ("target", target)):
            if name not in model.modalities:
                raise UnknownModalityError(
                    f"{role} modality {name!r} is not part of the fitted topology "
                    f"{list(model.modalities)}."
                )
        expected = list(model.col_labels[target])
        obs = observed.set_axis([str(c) for c in observed.columns], axis=1)
        missing = sorted(set(expected) - set(obs.columns))
        if missing:
            raise ShapeMismatchError(
                f"observed {target!r} matrix lacks {len(missing)} fitted features "
                f"(first: {missing[:5]}); shape {observed.shape}."
            )
        obs = obs.loc[:, expected]
        obs.index = [str(i) for i in obs.index]

        self.model = model
        self.image = image
        self.coordinates = coordinates
        self.observed = obs.astype(np.float64)
        self.source = source
        self.target = target
        self.geometry = geometry
        self.extraction = extraction
        self.columns = columns
        self.config = config
        self._predictions: dict[SpotGeometry, pd.DataFrame] = {}

    def predict(self, geometry: SpotGeometry) -> pd.DataFrame:
        """Target-modality predictions for spots extracted at `geometry` (memoized)."""
        if geometry not in self._predictions:
            features = extract_spots(
                self.image, self.coordinates, geometry, self.extraction, self.columns
            )
            features.index = [str(i) for i in features.index]
            self._predictions[geometry] = transform_frame(
                self.model, self.source, self.target, features
            )
        return self._predictions[geometry]

    def residuals(self, geometry: SpotGeometry, spots: list[str] | None = None) -> pd.DataFrame:
        """``predicted - observed`` for spots present in both, sorted by label."""
        pred = self.predict(geometry)
        rows = spots if spots is not None else common_labels([pred.index, self.observed.index])
        if not rows:
            raise AlignmentError(
                f"no spots shared between predictions ({len(pred)}) and observations "
                f"({len(self.observed)}) at {geometry_label(geometry)}."
            )
        return pred.loc[rows] - self.observed.loc[rows]

    def _shared_spots(self, geometries: list[SpotGeometry]) -> list[str]:
        sets = [self.predict(g).index for g in geometries] + [self.observed.index]
        rows = common_labels(sets)
        if not rows:
            raise AlignmentError(
                "no spots survive extraction at every compared geometry: "
                + "; ".join(geometry_label(g) for g in geometries)
            )
        return rows

    def compare(self, name: str, geom_a: SpotGeometry, geom_b: SpotGeometry) -> dict[str, Any]:
        spots = self._shared_spots([geom_a, geom_b])
        res_a = self.residuals(geom_a, spots)
        res_b = self.residuals(geom_b, spots)
        obs = self.observed.loc[spots].to_numpy()
        statistic, p_value = compare_distributions(
            res_a.to_numpy().ravel(), res_b.to_numpy().ravel(), test=self.config.test
        )
        return {
            "comparison": name,
            "condition_a": geometry_label(geom_a),
            "condition_b": geometry_label(geom_b),
            "n_spots": len(spots),
            "mean_residual_a": float(res_a.to_numpy().mean()),
            "mean_residual_b": float(res_b.to_numpy().mean()),
            "mean_abs_residual_a": float(np.abs(res_a.to_numpy()).mean()),
            "mean_abs_residual_b": float(np.abs(res_b.to_numpy()).mean()),
            "cosine_a": float(np.nanmean(cosine_similarity(self.predict(geom_a).loc[spots], obs))),
            "cosine_b": float(np.nanmean(cosine_similarity(self.predict(geom_b).loc[spots], obs))),
            "statistic": statistic,
            "p_value": p_value,
        }

    def _table(self, rows: list[dict[str, Any]]) -> pd.DataFrame:
        df = pd.DataFrame(rows, columns=list(COMPARISON_COLUMNS))
        df["q_value"] = bh_fdr(df["p_value"].to_numpy(dtype=float))
        df["significant"] = df["p_value"] < float(self.config.alpha)
        return df

    def rotation_invariance(self) -> pd.DataFrame:
        """Reference rotation vs every other rotation at the base displacement."""
        angles = list(self.config.rotations)
        ref = self.geometry.rotated(angles[0])
        rows = [
            self.compare(f"rotation_{angles[0]:g}_vs_{a:g}", ref, self.geometry.rotated(a))
            for a in angles[1:]
        ]
        return self._table(rows)

    def displacement_sensitivity(self) -> pd.DataFrame:
        """Zero-displacement reference vs increasing diagonal displacements."""
        mags = list(self.config.displacements)
        ref = self.geometry.shifted(mags[0], mags[0])
        rows = [
            self.compare(f"displacement_{mags[0]:g}_vs_{d:g}", ref, self.geometry.shifted(d, d))
            for d in mags[1:]
        ]
        df = self._table(rows)
        p = df["p_value"].to_numpy(dtype=float)
        monotonic = bool(np.all(np.diff(p) <= 0.0))
        df["monotonic"] = monotonic
        if not monotonic:
            logger.info("Displacement p-values are not monotonically non-increasing: %s", p.tolist())
        return df

    def off_axis_similarity(self) -> pd.DataFrame:
        """Pairwise comparisons between equal-magnitude diagonal shifts."""
        s = float(self.config.off_axis_shift)
        dirs = [(s, s), (s, -s), (-s, s), (-s, -s)]
        geoms = {d: self.geometry.shifted(*d) for d in dirs}
        rows = [
            self.compare(f"offaxis_({a[0]:g},{a[1]:g})_vs_({b[0]:g},{b[1]:g})", geoms[a], geoms[b])
            for a, b in itertools.combinations(dirs, 2)
        ]
        return self._table(rows)

    def sweep_curves(self) -> pd.DataFrame:
        """Mean prediction per target feature at each sweep displacement."""
        sweep = list(self.config.sweep)
        if self.config.sweep_axis == "x":
            geoms = [self.geometry.shifted(d, self.geometry.displacement_y) for d in sweep]
        else:
            geoms = [self.geometry.shifted(self.geometry.displacement_x, d) for d in sweep]
        spots = self._shared_spots(geoms)
        curves = np.vstack([self.predict(g).loc[spots].to_numpy().mean(axis=0) for g in geoms])
        return pd.DataFrame(
            curves,
            index=pd.Index(sweep, name="displacement"),
            columns=list(self.model.col_labels[self.target]),
        )

    def signal_smoothness(self, curves: pd.DataFrame | None = None) -> pd.DataFrame:
        """Per-feature smoothing-spline fit quality over the displacement sweep.

        A feature whose fit fails is recorded with NaN scores and
        ``status="failed"``; the sweep continues.
        """
        curves = self.sweep_curves() if curves is None else curves
        x = curves.index.to_numpy(dtype=float)
        payloads = [
            (str(col), x, curves[col].to_numpy(dtype=float), self.config.spline_degree,
             self.config.spline_smoothing)
            for col in curves.columns
        ]
        rows = parallel_map(_safe_spline, payloads, n_jobs=self.config.n_jobs, backend="loky")
        return pd.DataFrame(rows, columns=["feature", "r2", "adj_r2", "n_coeffs", "status", "reason"])

    def run(self) -> ValidationReport:
        logger.info(
            "Validating %s -> %s on %d observed spots", self.source, self.target, len(self.observed)
        )
        rotation = self.rotation_invariance()
        displacement = self.displacement_sensitivity()
        off_axis = self.off_axis_similarity()
        curves = self.sweep_curves()
        smoothness = self.signal_smoothness(curves)
        meta = {
            "source": self.source,
            "target": self.target,
            "base_geometry": geometry_label(self.geometry),
            "test": self.config.test,
            "alpha": float(self.config.alpha),
            "displacement_monotonic": bool(displacement["monotonic"].all()) if len(displacement) else True,
        }
        report = ValidationReport(
            rotation=rotation,
            displacement=displacement,
            off_axis=off_axis,
            smoothness=smoothness,
            sweep_curves=curves,
            metadata=meta,
        )
        logger.info("Validation summary: %s", report.summary())
        return report
