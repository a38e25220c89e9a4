"""Typed configuration and result containers for stjoint core operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Sequence

import numpy as np
import pandas as pd

from stjoint.errors import ConfigError, DimensionalityError

BOUNDS_STRATEGIES: tuple[str, ...] = ("drop", "reflect", "clamp")
WINDOW_SHAPES: tuple[str, ...] = ("square", "circle")
POOLING_MODES: tuple[str, ...] = ("flatten", "channel_stats")
INIT_METHODS: tuple[str, ...] = ("random", "partial-svd")
TEST_KINDS: tuple[str, ...] = ("welch", "paired")


def _frozen_array(values: Any, name: str, ndim: int) -> np.ndarray:
    arr = np.array(values, dtype=np.float64, copy=True)
    if arr.ndim != ndim:
        raise ValueError(f"{name} must be {ndim}-dimensional, got shape {arr.shape}.")
    arr.setflags(write=False)
    return arr


def _check_choice(name: str, value: str, choices: Sequence[str]) -> None:
    if value not in choices:
        raise ConfigError(f"{name} must be one of {list(choices)}, got {value!r}.")


@dataclass(frozen=True)
class SpotGeometry:
    """Window size, rotation (degrees, counterclockwise) and displacement in pixels."""

    spot_size: int = 16
    rotation: float = 0.0
    displacement_x: float = 0.0
    displacement_y: float = 0.0

    def __post_init__(self) -> None:
        if int(self.spot_size) != self.spot_size or int(self.spot_size) <= 0:
            raise ConfigError(f"spot_size must be a positive integer, got {self.spot_size!r}.")
        for name in ("rotation", "displacement_x", "displacement_y"):
            if not np.isfinite(float(getattr(self, name))):
                raise ConfigError(f"{name} must be finite.")

    def shifted(self, dx: float, dy: float) -> "SpotGeometry":
        return SpotGeometry(
            spot_size=self.spot_size,
            rotation=self.rotation,
            displacement_x=float(dx),
            displacement_y=float(dy),
        )

    def rotated(self, angle: float) -> "SpotGeometry":
        return SpotGeometry(
            spot_size=self.spot_size,
            rotation=float(angle),
            displacement_x=self.displacement_x,
            displacement_y=self.displacement_y,
        )


@dataclass(frozen=True)
class CoordinateColumns:
    """Positional indices of the label, x and y columns of a coordinate table."""

    label: int = 0
    x: int = 1
    y: int = 2

    def __post_init__(self) -> None:
        idx = (self.label, self.x, self.y)
        if any(int(i) < 0 for i in idx):
            raise ConfigError("coordinate column indices must be non-negative.")
        if len(set(idx)) != 3:
            raise ConfigError(f"coordinate column indices must be distinct, got {idx}.")


@dataclass(frozen=True)
class ExtractionConfig:
    """How spot windows are cut, padded and pooled into feature vectors."""

    bounds: str = "drop"
    shape: str = "square"
    pooling: str = "flatten"
    grayscale: bool = False
    interpolation_order: int = 1
    n_jobs: int = 1

    def __post_init__(self) -> None:
        _check_choice("bounds", self.bounds, BOUNDS_STRATEGIES)
        _check_choice("shape", self.shape, WINDOW_SHAPES)
        _check_choice("pooling", self.pooling, POOLING_MODES)
        if not 0 <= int(self.interpolation_order) <= 5:
            raise ConfigError("interpolation_order must lie in [0, 5].")


@dataclass(frozen=True)
class ModelConfig:
    """Latent dimensionality, initialization and optimizer settings."""

    k_dim: int = 10
    i_dim: int | None = None
    j_dim: int | None = None
    init: Mapping[str, str] = field(default_factory=dict)
    default_init: str = "partial-svd"
    max_iter: int = 200
    tol: float = 1e-6
    ridge: float = 1e-3
    seed: int = 0
    weights: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if int(self.k_dim) <= 0:
            raise DimensionalityError(f"k_dim must be positive, got {self.k_dim}.")
        for name in ("i_dim", "j_dim"):
            val = getattr(self, name)
            if val is not None and int(val) < int(self.k_dim):
                raise DimensionalityError(
                    f"{name}={val} must be >= k_dim={self.k_dim}."
                )
        _check_choice("default_init", self.default_init, INIT_METHODS)
        for modality, method in self.init.items():
            _check_choice(f"init[{modality!r}]", method, INIT_METHODS)
        if int(self.max_iter) < 1:
            raise ConfigError("max_iter must be >= 1.")
        if not float(self.tol) > 0.0:
            raise ConfigError("tol must be positive.")
        if float(self.ridge) < 0.0:
            raise ConfigError("ridge must be non-negative.")
        for modality, w in self.weights.items():
            if not float(w) > 0.0:
                raise ConfigError(f"weights[{modality!r}] must be positive.")

    def init_for(self, modality: str) -> str:
        return str(self.init.get(modality, self.default_init))

    def weight_for(self, modality: str) -> float:
        return float(self.weights.get(modality, 1.0))


@dataclass(frozen=True)
class ValidationConfig:
    """Geometric perturbations and statistics used by the validation harness."""

    rotations: tuple[float, ...] = (0.0, 90.0, 180.0, 270.0)
    displacements: tuple[float, ...] = (0.0, 2.0, 4.0, 8.0)
    off_axis_shift: float = 3.0
    sweep: tuple[float, ...] = tuple(float(d) for d in range(1, 11))
    sweep_axis: str = "x"
    alpha: float = 0.05
    test: str = "welch"
    spline_degree: int = 3
    spline_smoothing: float = 0.1
    n_jobs: int = 1

    def __post_init__(self) -> None:
        _check_choice("test", self.test, TEST_KINDS)
        _check_choice("sweep_axis", self.sweep_axis, ("x", "y"))
        if len(self.rotations) < 2:
            raise ConfigError("rotations must list at least two angles.")
        if len(self.displacements) < 2:
            raise ConfigError("displacements must list at least two magnitudes.")
        if not 0.0 < float(self.alpha) < 1.0:
            raise ConfigError("alpha must lie in (0, 1).")
        if not 1 <= int(self.spline_degree) <= 5:
            raise ConfigError("spline_degree must lie in [1, 5].")
        if len(self.sweep) <= int(self.spline_degree):
            raise ConfigError("sweep must have more points than spline_degree.")
        if any(b <= a for a, b in zip(self.sweep, self.sweep[1:])):
            raise ConfigError("sweep displacements must be strictly increasing.")
        if not 0.0 < float(self.spline_smoothing) < 1.0:
            raise ConfigError("spline_smoothing must lie in (0, 1).")


@dataclass(frozen=True)
class Modality:
    """One named observation matrix with unique row and column labels."""

    name: str
    matrix: np.ndarray
    row_labels: tuple[str, ...]
    col_labels: tuple[str, ...]

    def __post_init__(self) -> None:
        mat = _frozen_array(self.matrix, f"modality {self.name!r} matrix", 2)
        rows = tuple(str(r) for r in self.row_labels)
        cols = tuple(str(c) for c in self.col_labels)
        if mat.shape != (len(rows), len(cols)):
            raise ValueError(
                f"modality {self.name!r}: matrix shape {mat.shape} does not match "
                f"{len(rows)} row labels x {len(cols)} column labels."
            )
        if len(set(rows)) != len(rows):
            raise ValueError(f"modality {self.name!r}: row labels must be unique.")
        if len(set(cols)) != len(cols):
            raise ValueError(f"modality {self.name!r}: column labels must be unique.")
        object.__setattr__(self, "matrix", mat)
        object.__setattr__(self, "row_labels", rows)
        object.__setattr__(self, "col_labels", cols)

    @property
    def shape(self) -> tuple[int, int]:
        return (len(self.row_labels), len(self.col_labels))

    @classmethod
    def from_frame(cls, name: str, frame: pd.DataFrame) -> "Modality":
        return cls(
            name=str(name),
            matrix=frame.to_numpy(dtype=np.float64),
            row_labels=tuple(str(r) for r in frame.index),
            col_labels=tuple(str(c) for c in frame.columns),
        )

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            np.array(self.matrix), index=list(self.row_labels), columns=list(self.col_labels)
        )

    def select(
        self,
        rows: Sequence[str] | None = None,
        cols: Sequence[str] | None = None,
    ) -> "Modality":
        """Return a re-ordered sub-modality; labels must exist."""
        row_idx = np.arange(len(self.row_labels))
        col_idx = np.arange(len(self.col_labels))
        if rows is not None:
            pos = {lab: i for i, lab in enumerate(self.row_labels)}
            row_idx = np.asarray([pos[str(r)] for r in rows], dtype=int)
        if cols is not None:
            pos = {lab: i for i, lab in enumerate(self.col_labels)}
            col_idx = np.asarray([pos[str(c)] for c in cols], dtype=int)
        return Modality(
            name=self.name,
            matrix=self.matrix[np.ix_(row_idx, col_idx)],
            row_labels=tuple(self.row_labels[i] for i in row_idx),
            col_labels=tuple(self.col_labels[i] for i in col_idx),
        )


@dataclass(frozen=True)
class FittedModel:
    """Immutable snapshot of a joint factorization.

    - `sample_codes` / `feature_codes` / `couplings` are keyed by parameter id.
    - `assignment[modality]` maps each parameter class to the id it uses;
      an incode id of ``"identity"`` means ``C = I``.
    - `means` / `scales` undo the per-modality standardization.
    """

    modalities: tuple[str, ...]
    row_labels: tuple[str, ...]
    col_labels: Mapping[str, tuple[str, ...]]
    sample_codes: Mapping[str, np.ndarray]
    feature_codes: Mapping[str, np.ndarray]
    couplings: Mapping[str, np.ndarray]
    assignment: Mapping[str, Mapping[str, str]]
    k_dim: int
    ridge: float
    means: Mapping[str, np.ndarray]
    scales: Mapping[str, float]
    rmse: Mapping[str, float]
    r2: Mapping[str, float]
    objective: tuple[float, ...]
    n_iter: int
    converged: bool
    seed: int
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("sample_codes", "feature_codes", "couplings", "means"):
            frozen = {
                key: arr
                if isinstance(arr, np.ndarray) and not arr.flags.writeable
                else _frozen_array(arr, key, np.asarray(arr).ndim)
                for key, arr in getattr(self, name).items()
            }
            object.__setattr__(self, name, MappingProxyType(frozen))
        object.__setattr__(
            self,
            "col_labels",
            MappingProxyType({m: tuple(c) for m, c in self.col_labels.items()}),
        )
        object.__setattr__(
            self,
            "assignment",
            MappingProxyType(
                {m: MappingProxyType(dict(a)) for m, a in self.assignment.items()}
            ),
        )
        for name in ("scales", "rmse", "r2"):
            values = {key: float(v) for key, v in getattr(self, name).items()}
            object.__setattr__(self, name, MappingProxyType(values))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def to_json_dict(self) -> dict[str, Any]:
        """Labels, assignment and scalar fit statistics as plain JSON types."""
        return {
            "modalities": list(self.modalities),
            "row_labels": list(self.row_labels),
            "col_labels": {m: list(c) for m, c in self.col_labels.items()},
            "assignment": {m: dict(a) for m, a in self.assignment.items()},
            "k_dim": self.k_dim,
            "ridge": self.ridge,
            "scales": dict(self.scales),
            "rmse": dict(self.rmse),
            "r2": dict(self.r2),
            "objective": list(self.objective),
            "n_iter": self.n_iter,
            "converged": self.converged,
            "seed": self.seed,
            "metadata": dict(self.metadata),
        }

    def sample_code(self, modality: str) -> np.ndarray:
        return self.sample_codes[self.assignment[modality]["alpha"]]

    def feature_code(self, modality: str) -> np.ndarray:
        return self.feature_codes[self.assignment[modality]["beta"]]

    def coupling(self, modality: str) -> np.ndarray:
        key = self.assignment[modality]["incode"]
        if key == "identity":
            return np.eye(self.k_dim)
        return self.couplings[key]

    def n_features(self, modality: str) -> int:
        return len(self.col_labels[modality])
