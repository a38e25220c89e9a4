"""Pipeline I/O, logging, and model persistence helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import anndata as ad
import numpy as np
import pandas as pd
from PIL import Image

from stjoint.config import ReadOptions
from stjoint.core.types import FittedModel
from stjoint.core.extraction import read_coordinate_columns

MODEL_FORMAT_VERSION = 1
_META_KEY = "__meta__"


def ensure_dir(path: str | Path) -> None:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)


def write_json(path: str | Path, payload: dict[str, Any]) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)


def setup_logger(log_path: Path, logger_name: str) -> logging.Logger:
    ensure_dir(log_path.parent)
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    fh = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


def _require_file(path: str | Path, what: str) -> Path:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"{what} file '{p}' not found.")
    return p


def read_table(path: str | Path, options: ReadOptions = ReadOptions()) -> pd.DataFrame:
    p = _require_file(path, "Table")
    return pd.read_csv(
        p,
        sep=options.sep,
        header=0 if options.header else None,
        quotechar=options.quotechar,
    )


def read_coordinates(path: str | Path, options: ReadOptions = ReadOptions()) -> pd.DataFrame:
    """Return a ``label, x, y`` frame picked out of the table by column index."""
    table = read_table(path, options)
    labels, x, y = read_coordinate_columns(table, options.columns)
    return pd.DataFrame({"label": labels, "x": x, "y": y})


def read_expression(path: str | Path, options: ReadOptions = ReadOptions()) -> pd.DataFrame:
    """Spots x genes; the first column holds the spot label."""
    table = read_table(path, options)
    if table.shape[1] < 2:
        raise ValueError(f"Expression table '{path}' needs a label column and at least one gene.")
    frame = table.set_index(table.columns[0])
    frame.index = [str(i) for i in frame.index]
    frame.columns = [str(c) for c in frame.columns]
    if frame.index.has_duplicates:
        raise ValueError(f"Expression table '{path}' has duplicate spot labels.")
    return frame.astype(np.float64)


NATIVE_IMAGE_MODES: tuple[str, ...] = ("L", "RGB", "F", "I", "I;16", "I;16L", "I;16B", "I;16N")


def read_image(path: str | Path) -> np.ndarray:
    """Load an image as a float64 (H, W, C) array.

    Grayscale and RGB data keep their native bit depth (16-bit scans are not
    rescaled); bilevel images become 0/255 grayscale and palette or other
    multi-band modes are converted to RGB.
    """
    p = _require_file(path, "Image")
    with Image.open(p) as img:
        if img.mode in NATIVE_IMAGE_MODES:
            arr = np.asarray(img)
        elif img.mode == "1":
            arr = np.asarray(img.convert("L"))
        else:
            arr = np.asarray(img.convert("RGB"))
    arr = arr.astype(np.float64)
    if arr.ndim == 2:
        arr = arr[:, :, None]
    return arr


def write_feature_matrix(path: str | Path, frame: pd.DataFrame) -> Path:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(out, index=True, index_label="label")
    return out


def read_feature_matrix(path: str | Path) -> pd.DataFrame:
    p = _require_file(path, "Feature matrix")
    frame = pd.read_csv(p, index_col=0)
    frame.index = [str(i) for i in frame.index]
    frame.columns = [str(c) for c in frame.columns]
    return frame.astype(np.float64)


def write_predictions_h5ad(
    path: str | Path,
    frame: pd.DataFrame,
    uns: dict[str, Any] | None = None,
) -> Path:
    """Store a predicted matrix as AnnData (spots as obs, features as var)."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    adata = ad.AnnData(
        X=frame.to_numpy(dtype=np.float64),
        obs=pd.DataFrame(index=[str(i) for i in frame.index]),
        var=pd.DataFrame(index=[str(c) for c in frame.columns]),
    )
    if uns:
        adata.uns.update(uns)
    adata.write_h5ad(out)
    return out


def save_model(path: str | Path, model: FittedModel) -> Path:
    """Persist a fitted model as a compressed ``.npz`` archive.

    Arrays are stored under positional keys; a JSON member carries labels,
    parameter assignment and scalar fit statistics.
    """
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    arrays: dict[str, np.ndarray] = {}
    keys: dict[str, dict[str, str]] = {}
    for store_name, store in (
        ("sample_codes", model.sample_codes),
        ("feature_codes", model.feature_codes),
        ("couplings", model.couplings),
        ("means", model.means),
    ):
        keys[store_name] = {}
        for i, (param, arr) in enumerate(sorted(store.items())):
            key = f"{store_name}_{i}"
            arrays[key] = np.asarray(arr)
            keys[store_name][param] = key
    meta = {"format_version": MODEL_FORMAT_VERSION, "arrays": keys, **model.to_json_dict()}
    arrays[_META_KEY] = np.array(json.dumps(meta))
    with out.open("wb") as fh:
        np.savez_compressed(fh, **arrays)
    return out


def load_model(path: str | Path) -> FittedModel:
    p = _require_file(path, "Model")
    with np.load(p, allow_pickle=False) as archive:
        if _META_KEY not in archive.files:
            raise ValueError(f"'{p}' is not a stjoint model archive.")
        meta = json.loads(str(archive[_META_KEY]))
        version = int(meta.get("format_version", -1))
        if version != MODEL_FORMAT_VERSION:
            raise ValueError(
                f"Unsupported model format version {version} in '{p}' (expected {MODEL_FORMAT_VERSION})."
            )
        stores = {
            store_name: {param: np.array(archive[key]) for param, key in mapping.items()}
            for store_name, mapping in meta["arrays"].items()
        }
    return FittedModel(
        modalities=tuple(meta["modalities"]),
        row_labels=tuple(meta["row_labels"]),
        col_labels={m: tuple(c) for m, c in meta["col_labels"].items()},
        sample_codes=stores["sample_codes"],
        feature_codes=stores["feature_codes"],
        couplings=stores["couplings"],
        assignment={m: dict(a) for m, a in meta["assignment"].items()},
        k_dim=int(meta["k_dim"]),
        ridge=float(meta["ridge"]),
        means=stores["means"],
        scales={m: float(v) for m, v in meta["scales"].items()},
        rmse={m: float(v) for m, v in meta["rmse"].items()},
        r2={m: float(v) for m, v in meta["r2"].items()},
        objective=tuple(float(v) for v in meta["objective"]),
        n_iter=int(meta["n_iter"]),
        converged=bool(meta["converged"]),
        seed=int(meta["seed"]),
        metadata=dict(meta.get("metadata", {})),
    )
