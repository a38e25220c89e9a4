"""Spot extraction: pixel windows around coordinates pooled into feature vectors.

Coordinates follow image conventions: ``x`` indexes columns, ``y`` indexes
rows, and the window origin is ``round(centre) - spot_size // 2``. Rotation is
counterclockwise in degrees; multiples of 90 use exact array rotation, other
angles are interpolated from a padded source window.
"""

from __future__ import annotations

import logging
import math
import warnings

import numpy as np
import pandas as pd
from scipy import ndimage

from stjoint.core.types import CoordinateColumns, ExtractionConfig, SpotGeometry
from stjoint.core.utils import round_half_up
from stjoint.errors import ExtractionBoundsWarning, ExtractionError
from stjoint.parallel import parallel_map

logger = logging.getLogger(__name__)

STAT_NAMES: tuple[str, ...] = ("mean", "std", "q10", "q50", "q90")
_LUMA = np.array([0.299, 0.587, 0.114], dtype=np.float64)


def as_image_array(image: np.ndarray, grayscale: bool = False) -> np.ndarray:
    """Return the image as float64 (H, W, C); alpha channels are discarded."""
    arr = np.asarray(image, dtype=np.float64)
    if arr.ndim == 2:
        arr = arr[:, :, None]
    if arr.ndim != 3 or arr.shape[0] == 0 or arr.shape[1] == 0:
        raise ExtractionError(f"image must have shape (H, W) or (H, W, C), got {arr.shape}.")
    if arr.shape[2] == 4:
        arr = arr[:, :, :3]
    if grayscale and arr.shape[2] == 3:
        arr = (arr @ _LUMA)[:, :, None]
    elif grayscale and arr.shape[2] != 1:
        arr = arr.mean(axis=2, keepdims=True)
    if not np.isfinite(arr).all():
        raise ExtractionError("image contains NaN/inf values.")
    return arr


def _normalize_angle(rotation: float) -> float:
    angle = float(rotation) % 360.0
    if math.isclose(angle, 360.0, abs_tol=1e-9):
        angle = 0.0
    return angle


def _quarter_turns(angle: float) -> int | None:
    turns = angle / 90.0
    nearest = int(round(turns))
    if math.isclose(turns, nearest, abs_tol=1e-9):
        return nearest % 4
    return None


def rotation_margin(spot_size: int, rotation: float) -> int:
    """Extra pixels needed on each side to rotate a spot window without holes."""
    angle = _normalize_angle(rotation)
    if _quarter_turns(angle) is not None:
        return 0
    rad = math.radians(angle)
    side = int(math.ceil(spot_size * (abs(math.cos(rad)) + abs(math.sin(rad))))) + 2
    side += (side - spot_size) % 2
    return (side - spot_size) // 2


def spot_feature_names(
    geometry: SpotGeometry,
    config: ExtractionConfig,
    n_channels: int,
) -> list[str]:
    s = int(geometry.spot_size)
    if config.pooling == "flatten":
        return [
            f"px_{r}_{c}_c{ch}"
            for r in range(s)
            for c in range(s)
            for ch in range(int(n_channels))
        ]
    return [f"c{ch}_{stat}" for ch in range(int(n_channels)) for stat in STAT_NAMES]


def _circle_mask(spot_size: int) -> np.ndarray:
    centre = (spot_size - 1) / 2.0
    yy, xx = np.mgrid[0:spot_size, 0:spot_size]
    return (yy - centre) ** 2 + (xx - centre) ** 2 <= (spot_size / 2.0) ** 2


def read_coordinate_columns(
    coordinates: pd.DataFrame,
    columns: CoordinateColumns,
) -> tuple[list[str], np.ndarray, np.ndarray]:
    """Pull labels, x and y out of a coordinate table by positional index."""
    n_cols = coordinates.shape[1]
    needed = max(columns.label, columns.x, columns.y)
    if needed >= n_cols:
        raise ExtractionError(
            f"coordinate table has {n_cols} columns; column index {needed} requested."
        )
    labels = [str(v) for v in coordinates.iloc[:, columns.label].tolist()]
    if len(set(labels)) != len(labels):
        raise ExtractionError("coordinate table labels must be unique.")
    try:
        x = coordinates.iloc[:, columns.x].to_numpy(dtype=np.float64)
        y = coordinates.iloc[:, columns.y].to_numpy(dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise ExtractionError(f"coordinate columns must be numeric: {exc}") from exc
    if not (np.isfinite(x).all() and np.isfinite(y).all()):
        raise ExtractionError("coordinate table contains NaN/inf positions.")
    return labels, x, y


def _pool(window: np.ndarray, config: ExtractionConfig, mask: np.ndarray | None) -> np.ndarray:
    if mask is not None:
        window = np.where(mask[:, :, None], window, 0.0)
    if config.pooling == "flatten":
        return window.reshape(-1)
    n_ch = window.shape[2]
    pixels = window[mask] if mask is not None else window.reshape(-1, n_ch)
    q = np.percentile(pixels, [10.0, 50.0, 90.0], axis=0)
    stats = np.vstack([pixels.mean(axis=0), pixels.std(axis=0), q])
    return stats.T.reshape(-1)


def _cut_window(
    image: np.ndarray,
    top: int,
    left: int,
    spot_size: int,
    margin: int,
    angle: float,
    order: int,
) -> np.ndarray:
    extent = spot_size + 2 * margin
    src = image[top : top + extent, left : left + extent, :]
    turns = _quarter_turns(angle)
    if turns is not None:
        return np.rot90(src, turns, axes=(0, 1)).copy()
    rotated = ndimage.rotate(
        src, angle, axes=(1, 0), reshape=False, order=int(order), mode="nearest"
    )
    return rotated[margin : margin + spot_size, margin : margin + spot_size, :]


def extract_spots(
    image: np.ndarray,
    coordinates: pd.DataFrame,
    geometry: SpotGeometry,
    config: ExtractionConfig = ExtractionConfig(),
    columns: CoordinateColumns = CoordinateColumns(),
) -> pd.DataFrame:
    """Extract one feature vector per coordinate row.

    Rows follow the coordinate table order. With ``bounds="drop"`` spots whose
    window leaves the image are removed (``ExtractionBoundsWarning``);
    ``reflect``/``clamp`` pad the image instead so every spot is kept.
    """
    img = as_image_array(image, grayscale=config.grayscale)
    labels, x, y = read_coordinate_columns(coordinates, columns)
    if not labels:
        raise ExtractionError("coordinate table is empty.")

    s = int(geometry.spot_size)
    angle = _normalize_angle(geometry.rotation)
    margin = rotation_margin(s, angle)
    half = s // 2
    col0 = round_half_up(x + float(geometry.displacement_x)) - half - margin
    row0 = round_half_up(y + float(geometry.displacement_y)) - half - margin
    extent = s + 2 * margin
    height, width = img.shape[:2]

    inside = (row0 >= 0) & (col0 >= 0) & (row0 + extent <= height) & (col0 + extent <= width)
    if config.bounds == "drop":
        keep = np.flatnonzero(inside)
        n_dropped = len(labels) - keep.size
        if n_dropped:
            dropped = [labels[i] for i in np.flatnonzero(~inside)]
            head = ",".join(dropped[:5])
            msg = (
                f"{n_dropped} of {len(labels)} spots fall outside the {height}x{width} image "
                f"(spot_size={s}, rotation={angle:g}); dropped: {head}"
                f"{'...' if n_dropped > 5 else ''}"
            )
            logger.warning("Spots dropped: %s", msg)
            warnings.warn(msg, ExtractionBoundsWarning, stacklevel=2)
        if keep.size == 0:
            raise ExtractionError(
                f"every spot window falls outside the {height}x{width} image."
            )
    else:
        keep = np.arange(len(labels))
        pad = int(
            max(
                0,
                -int(row0.min()),
                -int(col0.min()),
                int((row0 + extent).max()) - height,
                int((col0 + extent).max()) - width,
            )
        )
        if pad:
            mode = "reflect" if config.bounds == "reflect" else "edge"
            img = np.pad(img, ((pad, pad), (pad, pad), (0, 0)), mode=mode)
            row0 = row0 + pad
            col0 = col0 + pad

    mask = _circle_mask(s) if config.shape == "circle" else None

    def _one(i: int) -> np.ndarray:
        win = _cut_window(
            img, int(row0[i]), int(col0[i]), s, margin, angle,
            config.interpolation_order,
        )
        return _pool(win, config, mask)

    vectors = parallel_map(_one, keep.tolist(), n_jobs=config.n_jobs, backend="threading")
    names = spot_feature_names(geometry, config, img.shape[2])
    return pd.DataFrame(
        np.vstack(vectors).astype(np.float64),
        index=pd.Index([labels[i] for i in keep], name="spot"),
        columns=names,
    )
